"""Mesh node: one process's presence on the BLE mesh.

Wires the pieces together the way an application uses them:

- ``PeerTransport`` for discovery, secure links and packet delivery
- presence: an ``Announce`` goes to every peer once its channel is secure,
  and received announcements are kept in ``peers``
- chat: ``send_chat`` / ``broadcast_chat`` and ``on_message`` handlers
- relay: incoming ``TransactionPacket``s go through the ``RelayPipeline``
  (when one is configured and ``relay.enabled``), with this node as
  relayer; results go to ``on_relay_result`` handlers
"""

from __future__ import annotations

import socket
from typing import Any, Callable

from loguru import logger

from anonmesh.config.schema import Config
from anonmesh.mesh.noise import KeyPair, NoiseRuntime
from anonmesh.mesh.protocol import (
    Announce,
    ChatMessage,
    Leave,
    Packet,
    TransactionPacket,
)
from anonmesh.mesh.radio import RadioDriver
from anonmesh.mesh.relay import RelayPipeline, RelayRequest, RelayResponse
from anonmesh.mesh.tasks import TaskSet, call_handler
from anonmesh.mesh.transport import PeerTransport

ChatHandler = Callable[[str, ChatMessage], Any]
RelayResultHandler = Callable[[str, RelayResponse], Any]


class MeshNode:
    """A mesh participant built from a ``Config``.

    Parameters
    ----------
    config:
        Root configuration (``mesh`` and ``relay`` sections are used).
    radio:
        Radio driver, e.g. ``BleakRadio()`` or ``StubRadio()``.
    keypair:
        Static Noise key pair.  When omitted an ephemeral one is generated,
        so peers will see a new identity on every run.
    relay:
        Pipeline used for transactions received from peers.
    runtime:
        Noise runtime override (defaults to the process-wide one).
    """

    def __init__(
        self,
        config: Config,
        radio: RadioDriver,
        keypair: KeyPair | None = None,
        relay: RelayPipeline | None = None,
        runtime: NoiseRuntime | None = None,
    ):
        self.config = config
        self.node_id = config.mesh.node_id or _default_node_id()
        if keypair is None:
            logger.warning("[Mesh/Node] no static key supplied, using an ephemeral one")
            keypair = KeyPair.generate()
        self.keypair = keypair
        self.relay = relay
        self.transport = PeerTransport(radio, keypair, config.mesh, runtime=runtime)
        # peer_id -> latest Announce from that peer
        self.peers: dict[str, Announce] = {}
        self._chat_handlers: list[ChatHandler] = []
        self._relay_handlers: list[RelayResultHandler] = []
        self._tasks = TaskSet("relay")
        self._running = False

        self.transport.on_packet(self._on_packet)
        self.transport.on_peer_secured(self._on_peer_secured)
        self.transport.on_peer_disconnected(self._on_peer_disconnected)

    # -- handler registration ------------------------------------------------

    def on_message(self, handler: ChatHandler) -> None:
        self._chat_handlers.append(handler)

    def on_relay_result(self, handler: RelayResultHandler) -> None:
        self._relay_handlers.append(handler)

    # -- lifecycle -----------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        await self.transport.start_discovery()
        logger.info("[Mesh/Node] {} started", self.node_id)

    async def stop(self) -> None:
        """Say goodbye to connected peers, then close everything."""
        self._running = False
        if self.transport.get_connected_peers():
            await self.transport.broadcast(Leave(sender_id=self.node_id))
        await self.transport.disconnect()
        await self._tasks.cancel_all()
        self.peers.clear()
        logger.info("[Mesh/Node] {} stopped", self.node_id)

    # -- sending -------------------------------------------------------------

    def _announcement(self) -> Announce:
        return Announce(
            sender_id=self.node_id,
            nickname=self.config.mesh.local_name,
            public_key=self.keypair.public.hex(),
        )

    async def announce(self) -> dict[str, bool]:
        return await self.transport.broadcast(self._announcement())

    async def send_chat(self, peer_id: str, text: str) -> bool:
        msg = ChatMessage(sender_id=self.node_id, text=text, recipient_id=peer_id)
        ok = await self.transport.send_to_peer(peer_id, msg)
        if not ok:
            logger.warning("[Mesh/Node] could not deliver message to {}", peer_id)
        return ok

    async def broadcast_chat(self, text: str) -> dict[str, bool]:
        return await self.transport.broadcast(ChatMessage(sender_id=self.node_id, text=text))

    # -- inbound handling ----------------------------------------------------

    async def _on_peer_secured(self, peer_id: str, remote_key: bytes) -> None:
        await self.transport.send_to_peer(peer_id, self._announcement())

    async def _on_peer_disconnected(self, peer_id: str) -> None:
        self.peers.pop(peer_id, None)

    async def _on_packet(self, peer_id: str, packet: Packet) -> None:
        if isinstance(packet, ChatMessage):
            for handler in list(self._chat_handlers):
                try:
                    await call_handler(handler, peer_id, packet)
                except Exception as exc:
                    logger.error("[Mesh/Node] message handler error: {}", exc)
        elif isinstance(packet, Announce):
            self._record_announce(peer_id, packet)
        elif isinstance(packet, TransactionPacket):
            self._accept_transaction(peer_id, packet)
        elif isinstance(packet, Leave):
            logger.info("[Mesh/Node] {} ({}) is leaving", packet.sender_id, peer_id)
            await self.transport.disconnect_peer(peer_id)

    def _record_announce(self, peer_id: str, packet: Announce) -> None:
        channel = self.transport.get_channel(peer_id)
        remote = channel.get_remote_static_key() if channel else None
        if packet.public_key and remote is not None and packet.public_key != remote.hex():
            # the announced key must be the one the handshake authenticated
            logger.warning(
                "[Mesh/Node] {} announced a key that does not match its channel, ignored",
                peer_id,
            )
            return
        self.peers[peer_id] = packet
        logger.info(
            "[Mesh/Node] peer {} is {!r} ({})", peer_id, packet.nickname, packet.sender_id
        )

    def _accept_transaction(self, peer_id: str, packet: TransactionPacket) -> None:
        if self.relay is None or not self.config.relay.enabled:
            logger.debug("[Mesh/Node] relay disabled, ignoring transaction from {}", peer_id)
            return
        request = RelayRequest.from_packet(packet, relayer_id=self.node_id)
        self._tasks.spawn(self._relay(peer_id, request), name=f"relay-{peer_id}")

    async def _relay(self, peer_id: str, request: RelayRequest) -> None:
        response = await self.relay.execute(request)
        for handler in list(self._relay_handlers):
            try:
                await call_handler(handler, peer_id, response)
            except Exception as exc:
                logger.error("[Mesh/Node] relay result handler error: {}", exc)


def _default_node_id() -> str:
    """Generate a default node ID from the machine's hostname."""
    return f"anonmesh-{socket.gethostname()}"
