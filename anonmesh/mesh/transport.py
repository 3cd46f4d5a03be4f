"""Peer transport registry for the BLE mesh.

``PeerTransport`` owns every link the radio opens.  For each connected peer
it keeps a ``PeerSession``: the link handle, a ``NoiseChannel``, a fragment
reassembler and the locks that keep that peer's traffic in order.

Flow for an outbound link::

    scan hit → connect → session(INITIATOR) → on_peer_connected
             → HANDSHAKE frame (-> e) → ... → TRANSPORT → on_peer_secured

Inbound links (a peer dialled us) get a RESPONDER channel and wait for the
peer's first handshake frame.  Once the channel is in transport mode,
``send_to_peer`` encrypts, frames and fragments packets; inbound transport
frames are decrypted, decoded and handed to the packet handlers.

Radio failures never escape the registry: they are logged and reported to
the ``on_error`` handlers.  A handshake or decryption failure closes the
offending link.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from anonmesh.config.schema import MeshConfig
from anonmesh.mesh.fragment import FragmentError, Reassembler, fragment
from anonmesh.mesh.noise import (
    KeyPair,
    NoiseChannel,
    NoiseDecryptionError,
    NoiseError,
    NoiseRole,
    NoiseRuntime,
)
from anonmesh.mesh.protocol import (
    FrameError,
    FrameKind,
    Packet,
    PacketDecodeError,
    decode_frame,
    decode_packet,
    encode_frame,
    encode_packet,
)
from anonmesh.mesh.radio import RadioDriver, RadioError, RadioPermissionError
from anonmesh.mesh.tasks import call_handler

# Handlers may be plain functions or coroutines.
PacketHandler = Callable[[str, Packet], Any]
PeerHandler = Callable[[str], Any]
SecuredHandler = Callable[[str, bytes], Any]
ErrorHandler = Callable[[Exception], Any]

_RADIO_ERRORS = (RadioError, OSError, asyncio.TimeoutError)


@dataclass
class PeerLink:
    """One open radio link."""

    peer_id: str
    handle: Any
    role: NoiseRole
    connected_at: float = field(default_factory=time.time)


@dataclass(eq=False)
class PeerSession:
    """Everything the registry keeps for one connected peer."""

    link: PeerLink
    channel: NoiseChannel
    reassembler: Reassembler
    # inbound chunks are processed one at a time, in arrival order
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # a frame's chunks must not interleave with another frame's
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def peer_id(self) -> str:
        return self.link.peer_id


@dataclass
class TransportStats:
    connected_peers: int
    peer_ids: list[str]
    scanning: bool
    advertising: bool
    packets_sent: int = 0
    packets_received: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0


class PeerTransport:
    """Registry of secure peer links on top of a ``RadioDriver``.

    Parameters
    ----------
    radio:
        Driver used for scanning, links and writes.  The registry installs
        its event hooks and points it at the configured service and
        characteristic UUIDs.
    keypair:
        This node's static Noise key pair.
    config:
        Mesh settings (timeouts, MTU, connection limit, advertising).
    runtime:
        Noise runtime for new channels; defaults to the process-wide one.
    """

    def __init__(
        self,
        radio: RadioDriver,
        keypair: KeyPair,
        config: MeshConfig | None = None,
        runtime: NoiseRuntime | None = None,
    ):
        self.radio = radio
        self.keypair = keypair
        self.config = config or MeshConfig()
        radio.service_uuid = self.config.service_uuid
        radio.characteristic_uuid = self.config.characteristic_uuid
        self._runtime = runtime
        self._sessions: dict[str, PeerSession] = {}
        self._pending: set[str] = set()
        # bumped by disconnect(); connects started before that are discarded
        self._epoch = 0
        self._scanning = False
        self._advertising = False

        self._packet_handlers: list[PacketHandler] = []
        self._connected_handlers: list[PeerHandler] = []
        self._disconnected_handlers: list[PeerHandler] = []
        self._secured_handlers: list[SecuredHandler] = []
        self._error_handlers: list[ErrorHandler] = []

        self._packets_sent = 0
        self._packets_received = 0
        self._bytes_sent = 0
        self._bytes_received = 0

        radio.on_peer_found = self._handle_peer_found
        radio.on_incoming = self._handle_incoming
        radio.on_data = self._handle_data
        radio.on_disconnect = self._handle_disconnect
        radio.on_error = self._handle_radio_error

    # -- handler registration ------------------------------------------------

    def on_packet(self, handler: PacketHandler) -> None:
        """Register ``handler(peer_id, packet)`` for every decrypted packet."""
        self._packet_handlers.append(handler)

    def on_peer_connected(self, handler: PeerHandler) -> None:
        self._connected_handlers.append(handler)

    def on_peer_disconnected(self, handler: PeerHandler) -> None:
        self._disconnected_handlers.append(handler)

    def on_peer_secured(self, handler: SecuredHandler) -> None:
        """Register ``handler(peer_id, remote_static_key)``, fired once the
        Noise handshake with that peer has completed."""
        self._secured_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    # -- discovery -----------------------------------------------------------

    async def start_discovery(self) -> None:
        """Start scanning (and advertising, when enabled and supported)."""
        if self._scanning:
            logger.debug("[Mesh/Transport] discovery already active")
            return
        self._scanning = True

        if not await self._request_permissions():
            self._scanning = False
            return

        try:
            await self.radio.start_scan()
        except _RADIO_ERRORS as exc:
            self._scanning = False
            logger.error("[Mesh/Transport] failed to start scanning: {}", exc)
            await self._report(exc)
            return
        if not self._scanning:
            # stop_discovery() ran while the scan was starting
            await self._stop_scan()
            return
        logger.info(
            "[Mesh/Transport] scanning for service {}", self.config.service_uuid
        )

        if self.config.advertise and self.radio.supports_advertising:
            try:
                await self.radio.start_advertising(self.config.local_name)
            except _RADIO_ERRORS as exc:
                logger.warning("[Mesh/Transport] failed to start advertising: {}", exc)
                await self._report(exc)
            else:
                self._advertising = True
                logger.info(
                    "[Mesh/Transport] advertising as {!r}", self.config.local_name
                )

    async def stop_discovery(self) -> None:
        """Stop scanning and advertising.  Safe to call when already stopped."""
        was_scanning, self._scanning = self._scanning, False
        if was_scanning:
            await self._stop_scan()
        if self._advertising:
            self._advertising = False
            try:
                await self.radio.stop_advertising()
            except _RADIO_ERRORS as exc:
                logger.warning("[Mesh/Transport] failed to stop advertising: {}", exc)
                await self._report(exc)
        if was_scanning:
            logger.info("[Mesh/Transport] discovery stopped")

    async def _request_permissions(self) -> bool:
        try:
            granted = await self.radio.request_permissions()
        except _RADIO_ERRORS as exc:
            logger.error("[Mesh/Transport] permission request failed: {}", exc)
            await self._report(exc)
            return False
        if not granted:
            logger.error("[Mesh/Transport] Bluetooth permissions denied, not scanning")
            await self._report(RadioPermissionError("Bluetooth permissions denied"))
        return granted

    async def _stop_scan(self) -> None:
        try:
            await self.radio.stop_scan()
        except _RADIO_ERRORS as exc:
            logger.warning("[Mesh/Transport] failed to stop scanning: {}", exc)
            await self._report(exc)

    # -- radio events --------------------------------------------------------

    async def _handle_peer_found(self, peer_id: str) -> None:
        if peer_id in self._sessions or peer_id in self._pending:
            return
        if len(self._sessions) + len(self._pending) >= self.config.max_connections:
            logger.debug(
                "[Mesh/Transport] connection limit ({}) reached, ignoring {}",
                self.config.max_connections, peer_id,
            )
            return

        logger.debug("[Mesh/Transport] discovered {}, connecting", peer_id)
        self._pending.add(peer_id)
        epoch = self._epoch
        try:
            handle = await asyncio.wait_for(
                self.radio.connect(peer_id), timeout=self.config.connect_timeout
            )
        except _RADIO_ERRORS as exc:
            logger.warning("[Mesh/Transport] connect to {} failed: {!r}", peer_id, exc)
            await self._report(exc)
            return
        finally:
            self._pending.discard(peer_id)

        if epoch != self._epoch or peer_id in self._sessions:
            logger.debug("[Mesh/Transport] discarding stale link to {}", peer_id)
            await self._close_handle(peer_id, handle)
            return

        session = await self._register(peer_id, handle, NoiseRole.INITIATOR)
        if session is None or self._sessions.get(peer_id) is not session:
            return

        try:
            message = session.channel.initiate_handshake()
        except NoiseError as exc:
            logger.error("[Mesh/Transport] cannot start handshake with {}: {}", peer_id, exc)
            await self._close_peer(peer_id, "handshake failed")
            return
        async with session.write_lock:
            await self._write_frame(session, FrameKind.HANDSHAKE, message)

    async def _handle_incoming(self, peer_id: str, handle: Any) -> None:
        if peer_id in self._sessions:
            logger.debug("[Mesh/Transport] already linked to {}, ignoring incoming", peer_id)
            return
        await self._register(peer_id, handle, NoiseRole.RESPONDER)

    async def _handle_disconnect(self, peer_id: str) -> None:
        await self._drop_peer(peer_id, "link lost")

    async def _handle_radio_error(self, exc: Exception) -> None:
        logger.error("[Mesh/Transport] radio error: {}", exc)
        await self._report(exc)

    async def _handle_data(self, peer_id: str, data: bytes) -> None:
        session = self._sessions.get(peer_id)
        if session is None:
            logger.debug("[Mesh/Transport] data from unknown peer {}, dropped", peer_id)
            return
        async with session.lock:
            if self._sessions.get(peer_id) is not session:
                return
            self._bytes_received += len(data)
            try:
                raw = session.reassembler.feed(data)
                if raw is None:
                    return
                frame = decode_frame(raw)
            except (FragmentError, FrameError) as exc:
                logger.warning("[Mesh/Transport] malformed data from {}: {}", peer_id, exc)
                return

            if frame.kind == FrameKind.HANDSHAKE:
                await self._process_handshake(session, frame.body)
            else:
                await self._process_transport(session, frame.body)

    # -- inbound frames ------------------------------------------------------

    async def _process_handshake(self, session: PeerSession, body: bytes) -> None:
        peer_id, channel = session.peer_id, session.channel
        try:
            response = channel.process_handshake_message(body)
        except NoiseError as exc:
            logger.warning("[Mesh/Transport] handshake with {} failed: {}", peer_id, exc)
            await self._close_peer(peer_id, "handshake failed")
            return

        if response is not None:
            async with session.write_lock:
                if not await self._write_frame(session, FrameKind.HANDSHAKE, response):
                    return

        if channel.is_handshake_complete():
            logger.info(
                "[Mesh/Transport] secure channel with {} (key {})",
                peer_id, channel.fingerprint(),
            )
            await self._fire(
                self._secured_handlers, "peer-secured",
                peer_id, channel.get_remote_static_key(),
            )

    async def _process_transport(self, session: PeerSession, body: bytes) -> None:
        peer_id, channel = session.peer_id, session.channel
        if not channel.is_handshake_complete():
            logger.warning(
                "[Mesh/Transport] transport frame from {} before handshake, dropped",
                peer_id,
            )
            return
        try:
            plaintext = channel.decrypt_message(body)
        except NoiseDecryptionError as exc:
            logger.warning("[Mesh/Transport] {} from {}, closing link", exc, peer_id)
            await self._close_peer(peer_id, "decryption failed")
            return
        try:
            packet = decode_packet(plaintext)
        except PacketDecodeError as exc:
            logger.warning("[Mesh/Transport] undecodable packet from {}: {}", peer_id, exc)
            return

        self._packets_received += 1
        logger.debug("[Mesh/Transport] received {} from {}", packet.type.value, peer_id)
        await self._fire(self._packet_handlers, "packet", peer_id, packet)

    # -- sending -------------------------------------------------------------

    async def send_to_peer(self, peer_id: str, packet: Packet) -> bool:
        """Encrypt and send *packet* to one peer.

        Returns ``True`` when every chunk was written, ``False`` if the peer
        is unknown, its channel is not secure yet, or the write failed.
        """
        session = self._sessions.get(peer_id)
        if session is None:
            logger.warning("[Mesh/Transport] not connected to {}, packet dropped", peer_id)
            return False
        if not session.channel.is_handshake_complete():
            logger.warning(
                "[Mesh/Transport] channel with {} not secure yet, packet dropped", peer_id
            )
            return False

        async with session.write_lock:
            if self._sessions.get(peer_id) is not session:
                return False
            try:
                ciphertext = session.channel.encrypt_message(encode_packet(packet))
            except ValueError as exc:
                logger.warning("[Mesh/Transport] cannot send to {}: {}", peer_id, exc)
                return False
            if not await self._write_frame(session, FrameKind.TRANSPORT, ciphertext):
                return False

        self._packets_sent += 1
        return True

    async def broadcast(self, packet: Packet) -> dict[str, bool]:
        """Send *packet* to every connected peer.  Returns per-peer success."""
        peer_ids = self.get_connected_peers()
        if not peer_ids:
            logger.debug("[Mesh/Transport] broadcast with no peers connected")
            return {}
        results = await asyncio.gather(
            *(self.send_to_peer(pid, packet) for pid in peer_ids),
            return_exceptions=True,
        )
        outcome: dict[str, bool] = {}
        for pid, result in zip(peer_ids, results):
            if isinstance(result, BaseException):
                logger.error("[Mesh/Transport] broadcast to {} failed: {!r}", pid, result)
                outcome[pid] = False
            else:
                outcome[pid] = result
        return outcome

    async def _write_frame(self, session: PeerSession, kind: FrameKind, body: bytes) -> bool:
        """Fragment and write one frame.  Caller holds ``session.write_lock``.

        A failed write closes the link: the peer's cipher state can no longer
        line up with ours.
        """
        peer_id = session.peer_id
        try:
            for chunk in fragment(encode_frame(kind, body), self.config.max_write_size):
                await asyncio.wait_for(
                    self.radio.write(session.link.handle, chunk),
                    timeout=self.config.write_timeout,
                )
                self._bytes_sent += len(chunk)
        except _RADIO_ERRORS as exc:
            logger.warning("[Mesh/Transport] write to {} failed: {!r}", peer_id, exc)
            await self._report(exc)
            await self._close_peer(peer_id, "write failed")
            return False
        return True

    # -- teardown ------------------------------------------------------------

    async def disconnect(self) -> None:
        """Stop discovery and close every link."""
        self._epoch += 1
        await self.stop_discovery()
        peer_ids = list(self._sessions)
        for peer_id in peer_ids:
            await self._close_peer(peer_id, "shutdown")
        await self.radio.shutdown()
        logger.info("[Mesh/Transport] disconnected ({} link(s) closed)", len(peer_ids))

    async def disconnect_peer(self, peer_id: str) -> bool:
        """Close the link to one peer.  Returns ``False`` if there was none."""
        return await self._close_peer(peer_id, "closed locally")

    async def _register(
        self, peer_id: str, handle: Any, role: NoiseRole
    ) -> PeerSession | None:
        """Open a session for a new link and fire the connected handlers.

        Returns ``None`` (and closes the link) when no channel can be set up.
        """
        try:
            session = self._open_session(peer_id, handle, role)
        except NoiseError as exc:
            logger.error("[Mesh/Transport] no secure channel for {}: {}", peer_id, exc)
            await self._close_handle(peer_id, handle)
            return None
        await self._fire(self._connected_handlers, "peer-connected", peer_id)
        return session

    def _open_session(self, peer_id: str, handle: Any, role: NoiseRole) -> PeerSession:
        channel = NoiseChannel(self.keypair, role=role, runtime=self._runtime)
        channel.initialize()
        session = PeerSession(
            link=PeerLink(peer_id=peer_id, handle=handle, role=role),
            channel=channel,
            reassembler=Reassembler(self.config.max_frame_size),
        )
        self._sessions[peer_id] = session
        logger.info("[Mesh/Transport] connected to {} ({})", peer_id, role.value)
        return session

    async def _drop_peer(self, peer_id: str, reason: str) -> PeerSession | None:
        """Forget a session.  Fires the disconnect handlers once per link."""
        session = self._sessions.pop(peer_id, None)
        if session is None:
            return None
        session.channel.destroy()
        session.reassembler.reset()
        logger.info("[Mesh/Transport] peer {} disconnected ({})", peer_id, reason)
        await self._fire(self._disconnected_handlers, "peer-disconnected", peer_id)
        return session

    async def _close_peer(self, peer_id: str, reason: str) -> bool:
        session = await self._drop_peer(peer_id, reason)
        if session is None:
            return False
        await self._close_handle(peer_id, session.link.handle)
        return True

    async def _close_handle(self, peer_id: str, handle: Any) -> None:
        try:
            await self.radio.close(handle)
        except _RADIO_ERRORS as exc:
            logger.warning("[Mesh/Transport] error closing link to {}: {}", peer_id, exc)

    # -- queries -------------------------------------------------------------

    def get_connected_peers(self) -> list[str]:
        return list(self._sessions)

    def is_connected(self, peer_id: str) -> bool:
        return peer_id in self._sessions

    def get_channel(self, peer_id: str) -> NoiseChannel | None:
        session = self._sessions.get(peer_id)
        return session.channel if session else None

    def get_stats(self) -> TransportStats:
        return TransportStats(
            connected_peers=len(self._sessions),
            peer_ids=self.get_connected_peers(),
            scanning=self._scanning,
            advertising=self._advertising,
            packets_sent=self._packets_sent,
            packets_received=self._packets_received,
            bytes_sent=self._bytes_sent,
            bytes_received=self._bytes_received,
        )

    # -- internals -----------------------------------------------------------

    async def _fire(self, handlers: list, kind: str, *args: Any) -> None:
        for handler in list(handlers):
            try:
                await call_handler(handler, *args)
            except Exception as exc:
                logger.error("[Mesh/Transport] {} handler error: {}", kind, exc)

    async def _report(self, exc: Exception) -> None:
        await self._fire(self._error_handlers, "error", exc)
