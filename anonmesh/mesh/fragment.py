"""Fragmentation of frames into radio-sized writes.

A single radio write is limited by the link MTU, so every frame is split
into chunks carrying a 4-byte big-endian header::

    [index:u16][total:u16][payload...]

A frame that fits in one write is sent as chunk ``0/1``.  The link delivers
writes from one peer in order, so reassembly needs no message id: chunk 0
starts a new frame and the chunk with ``index == total - 1`` completes it.
"""

from __future__ import annotations

import struct

from loguru import logger

HEADER = struct.Struct("!HH")
HEADER_SIZE = HEADER.size
MAX_CHUNKS = 0xFFFF


class FragmentError(ValueError):
    """A chunk is malformed or arrived out of sequence."""


def fragment(frame: bytes, max_write_size: int) -> list[bytes]:
    """Split *frame* into chunks of at most *max_write_size* bytes."""
    room = max_write_size - HEADER_SIZE
    if room <= 0:
        raise ValueError(f"max_write_size {max_write_size} leaves no room for payload")
    total = max(1, -(-len(frame) // room))  # ceil div
    if total > MAX_CHUNKS:
        raise ValueError(f"frame of {len(frame)} bytes needs {total} chunks (max {MAX_CHUNKS})")
    return [
        HEADER.pack(i, total) + frame[i * room:(i + 1) * room]
        for i in range(total)
    ]


class Reassembler:
    """Rebuilds frames from one peer's ordered stream of chunks.

    Parameters
    ----------
    max_frame_size:
        Frames growing past this many bytes are discarded.
    """

    def __init__(self, max_frame_size: int = 262_144) -> None:
        self.max_frame_size = max_frame_size
        self._parts: list[bytes] = []
        self._total = 0
        self._size = 0
        self.frames_completed = 0

    @property
    def pending(self) -> bool:
        return bool(self._parts)

    def reset(self) -> None:
        self._parts = []
        self._total = 0
        self._size = 0

    def feed(self, chunk: bytes) -> bytes | None:
        """Add one chunk.  Returns the whole frame once its last chunk arrives."""
        if len(chunk) < HEADER_SIZE:
            raise FragmentError(f"chunk of {len(chunk)} bytes is shorter than its header")
        index, total = HEADER.unpack_from(chunk)
        if total == 0 or index >= total:
            raise FragmentError(f"bad chunk header {index}/{total}")

        if index == 0:
            if self._parts:
                logger.debug(
                    "[Mesh/Fragment] new frame started, dropping {}/{} partial chunks",
                    len(self._parts), self._total,
                )
            self.reset()
            self._total = total
        elif not self._parts or index != len(self._parts) or total != self._total:
            expected = f"{len(self._parts)}/{self._total}" if self._parts else "0/*"
            self.reset()
            raise FragmentError(f"chunk {index}/{total} out of sequence (expected {expected})")

        payload = chunk[HEADER_SIZE:]
        self._size += len(payload)
        if self._size > self.max_frame_size:
            self.reset()
            raise FragmentError(f"frame exceeds {self.max_frame_size} bytes")
        self._parts.append(payload)

        if len(self._parts) < self._total:
            return None
        frame = b"".join(self._parts)
        self.reset()
        self.frames_completed += 1
        return frame
