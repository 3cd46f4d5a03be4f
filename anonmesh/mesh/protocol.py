"""Wire-level protocol for mesh links.

Two layers travel over a link:

Frames
------
Every reassembled radio message is a *frame*: one kind byte followed by the
body.

- ``0x01`` HANDSHAKE — raw Noise handshake message
- ``0x02`` TRANSPORT — Noise ciphertext of an encoded packet

Packets
-------
Application packets are a closed set of tagged variants, serialised as UTF-8
JSON objects with a ``"type"`` tag::

    {"type": "message", "sender_id": "...", "text": "hi", "ts": 1700000000.0}

Binary fields (transaction payloads) are base64-encoded.  Anything that does
not decode to a known variant raises ``PacketDecodeError``.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union


class PacketDecodeError(ValueError):
    """Bytes do not decode to a known packet variant."""


class FrameError(ValueError):
    """Bytes do not form a valid wire frame."""


class PacketType(str, Enum):
    MESSAGE = "message"
    ANNOUNCE = "announce"
    TRANSACTION = "transaction"
    LEAVE = "leave"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Packet variants
# ---------------------------------------------------------------------------

@dataclass
class ChatMessage:
    """Text message between two peers (or to everyone when broadcast)."""

    type: ClassVar[PacketType] = PacketType.MESSAGE

    sender_id: str
    text: str
    recipient_id: str = ""
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sender_id": self.sender_id,
            "text": self.text,
            "recipient_id": self.recipient_id,
            "ts": self.ts,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ChatMessage":
        return cls(
            sender_id=_req_str(d, "sender_id"),
            text=_req_str(d, "text"),
            recipient_id=_opt_str(d, "recipient_id"),
            ts=_ts(d),
        )


@dataclass
class Announce:
    """Presence announcement: who we are and which static key we use."""

    type: ClassVar[PacketType] = PacketType.ANNOUNCE

    sender_id: str
    nickname: str = ""
    public_key: str = ""  # hex static public key
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sender_id": self.sender_id,
            "nickname": self.nickname,
            "public_key": self.public_key,
            "ts": self.ts,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Announce":
        return cls(
            sender_id=_req_str(d, "sender_id"),
            nickname=_opt_str(d, "nickname"),
            public_key=_opt_str(d, "public_key"),
            ts=_ts(d),
        )


@dataclass
class TransactionPacket:
    """An already-encrypted blockchain transaction handed to a relayer."""

    type: ClassVar[PacketType] = PacketType.TRANSACTION

    sender_id: str
    encrypted_transaction: bytes
    priority: Priority = Priority.NORMAL
    recipient_id: str = ""
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sender_id": self.sender_id,
            "encrypted_transaction": base64.b64encode(self.encrypted_transaction).decode("ascii"),
            "priority": Priority(self.priority).value,
            "recipient_id": self.recipient_id,
            "ts": self.ts,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TransactionPacket":
        raw = _req_str(d, "encrypted_transaction")
        try:
            tx = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise PacketDecodeError(f"encrypted_transaction is not base64: {exc}") from exc
        try:
            priority = Priority(d.get("priority", Priority.NORMAL.value))
        except ValueError as exc:
            raise PacketDecodeError(f"unknown priority {d.get('priority')!r}") from exc
        return cls(
            sender_id=_req_str(d, "sender_id"),
            encrypted_transaction=tx,
            priority=priority,
            recipient_id=_opt_str(d, "recipient_id"),
            ts=_ts(d),
        )


@dataclass
class Leave:
    """The sender is leaving the mesh."""

    type: ClassVar[PacketType] = PacketType.LEAVE

    sender_id: str
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"sender_id": self.sender_id, "ts": self.ts}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Leave":
        return cls(sender_id=_req_str(d, "sender_id"), ts=_ts(d))


Packet = Union[ChatMessage, Announce, TransactionPacket, Leave]

_VARIANTS: dict[PacketType, type] = {
    PacketType.MESSAGE: ChatMessage,
    PacketType.ANNOUNCE: Announce,
    PacketType.TRANSACTION: TransactionPacket,
    PacketType.LEAVE: Leave,
}


# -- field helpers -----------------------------------------------------------

def _req_str(d: dict[str, Any], key: str) -> str:
    value = d.get(key)
    if not isinstance(value, str):
        raise PacketDecodeError(f"field {key!r} missing or not a string")
    return value


def _opt_str(d: dict[str, Any], key: str) -> str:
    value = d.get(key, "")
    if not isinstance(value, str):
        raise PacketDecodeError(f"field {key!r} is not a string")
    return value


def _ts(d: dict[str, Any]) -> float:
    value = d.get("ts", 0.0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PacketDecodeError("field 'ts' is not a number")
    return float(value)


# ---------------------------------------------------------------------------
# Packet codec
# ---------------------------------------------------------------------------

def encode_packet(packet: Packet) -> bytes:
    """Serialise a packet variant to UTF-8 JSON bytes."""
    body = {"type": packet.type.value, **packet.to_dict()}
    return json.dumps(body, ensure_ascii=False).encode("utf-8")


def decode_packet(data: bytes) -> Packet:
    """Parse UTF-8 JSON bytes into a packet variant."""
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PacketDecodeError(f"not a JSON packet: {exc}") from exc
    if not isinstance(obj, dict):
        raise PacketDecodeError("packet must be a JSON object")
    try:
        ptype = PacketType(obj.get("type"))
    except ValueError as exc:
        raise PacketDecodeError(f"unknown packet type {obj.get('type')!r}") from exc
    return _VARIANTS[ptype].from_dict(obj)


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------

class FrameKind(int, Enum):
    HANDSHAKE = 0x01
    TRANSPORT = 0x02


@dataclass(frozen=True)
class Frame:
    kind: FrameKind
    body: bytes


def encode_frame(kind: FrameKind, body: bytes) -> bytes:
    return bytes([kind.value]) + body


def decode_frame(data: bytes) -> Frame:
    if not data:
        raise FrameError("empty frame")
    try:
        kind = FrameKind(data[0])
    except ValueError as exc:
        raise FrameError(f"unknown frame kind 0x{data[0]:02x}") from exc
    if len(data) == 1:
        raise FrameError(f"{kind.name} frame has no body")
    return Frame(kind=kind, body=bytes(data[1:]))
