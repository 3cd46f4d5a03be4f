"""Noise XX channel for one mesh link.

Each connected peer gets its own ``NoiseChannel``.  The channel drives the
three-message ``Noise_XX_25519_ChaChaPoly_SHA256`` handshake and then
encrypts/decrypts application frames for that peer.  It knows nothing about
the radio; the transport registry feeds it bytes and writes out whatever it
returns.

Handshake
---------
::

    -> e                 initiator: initiate_handshake()
    <- e, ee, s, es      responder: process_handshake_message(msg1)
    -> s, se             initiator: process_handshake_message(msg2)
                         responder: process_handshake_message(msg3) -> None

Completion is decided by the handshake engine, never by counting messages.

State machine
-------------
``INIT → HANDSHAKE_IN_PROGRESS → TRANSPORT``.  A channel that fails is
destroyed and replaced, never reset.

Engine runtime
--------------
The Noise primitives come from the ``noiseprotocol`` package, wrapped in
``NoiseEngine`` behind the ``HandshakeEngine`` contract.  Engines are created
through a single process-wide ``NoiseRuntime`` that is initialised lazily on
first use and torn down explicitly with ``reset_runtime()``.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)
from loguru import logger
from noise.connection import Keypair, NoiseConnection

PROTOCOL_NAME = b"Noise_XX_25519_ChaChaPoly_SHA256"

# Noise caps every transport message at 65535 bytes, 16 of which are the tag.
MAX_MESSAGE_LEN = 65535
MAX_PLAINTEXT_LEN = MAX_MESSAGE_LEN - 16


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class NoiseError(Exception):
    """Base class for Noise channel failures."""


class NoiseStateError(NoiseError):
    """Operation invoked in the wrong state or role, or on a destroyed channel."""


class NoiseHandshakeError(NoiseError):
    """The engine rejected a handshake message."""


class NoiseDecryptionError(NoiseError):
    """Transport message failed authentication (tampered, replayed or corrupt)."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class NoiseState(str, Enum):
    INIT = "init"
    HANDSHAKE_IN_PROGRESS = "handshake"
    TRANSPORT = "transport"


class NoiseRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


@dataclass(frozen=True)
class KeyPair:
    """A static Curve25519 key pair (raw 32-byte keys)."""

    public: bytes
    private: bytes

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls.from_private_bytes(
            X25519PrivateKey.generate().private_bytes(
                Encoding.Raw, PrivateFormat.Raw, NoEncryption()
            )
        )

    @classmethod
    def from_private_bytes(cls, private: bytes) -> "KeyPair":
        """Rebuild a key pair from its raw private half."""
        key = X25519PrivateKey.from_private_bytes(private)
        public = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return cls(public=public, private=bytes(private))


# ---------------------------------------------------------------------------
# Handshake engine contract
# ---------------------------------------------------------------------------

class HandshakeEngine(abc.ABC):
    """What a Noise channel needs from the underlying protocol engine.

    Before ``handshake_done`` the read/write calls process handshake
    messages; afterwards they encrypt and decrypt transport messages.
    """

    @abc.abstractmethod
    def write_message(self, payload: bytes = b"") -> bytes:
        """Produce the next outbound message carrying *payload*."""

    @abc.abstractmethod
    def read_message(self, data: bytes) -> bytes:
        """Consume one inbound message and return its payload."""

    @property
    @abc.abstractmethod
    def handshake_done(self) -> bool:
        """``True`` once the handshake has completed."""

    @abc.abstractmethod
    def get_remote_public_key(self) -> bytes | None:
        """Return the peer's static public key, once it has been received."""


class NoiseEngine(HandshakeEngine):
    """``HandshakeEngine`` backed by ``noise.connection.NoiseConnection``."""

    def __init__(
        self,
        role: NoiseRole,
        protocol_name: bytes,
        private_key: bytes,
    ) -> None:
        self._conn = NoiseConnection.from_name(protocol_name)
        if role == NoiseRole.INITIATOR:
            self._conn.set_as_initiator()
        else:
            self._conn.set_as_responder()
        self._conn.set_keypair_from_private_bytes(Keypair.STATIC, private_key)
        self._conn.start_handshake()
        # The connection drops its handshake state (and with it the peer's
        # static key) as soon as the handshake finishes.
        self._handshake = self._conn.noise_protocol.handshake_state

    def write_message(self, payload: bytes = b"") -> bytes:
        if self._conn.handshake_finished:
            return bytes(self._conn.encrypt(payload))
        return bytes(self._conn.write_message(payload))

    def read_message(self, data: bytes) -> bytes:
        if self._conn.handshake_finished:
            return bytes(self._conn.decrypt(data))
        return bytes(self._conn.read_message(data))

    @property
    def handshake_done(self) -> bool:
        return bool(self._conn.handshake_finished)

    def get_remote_public_key(self) -> bytes | None:
        # ``rs`` is a placeholder until the "s" token has been read
        remote = getattr(self._handshake.rs, "public_bytes", None)
        if not remote:
            return None
        return bytes(remote)


EngineFactory = Callable[[NoiseRole, bytes, bytes], HandshakeEngine]


# ---------------------------------------------------------------------------
# Process-wide runtime
# ---------------------------------------------------------------------------

class NoiseRuntime:
    """Shared engine factory with an init-once / teardown lifecycle.

    Parameters
    ----------
    factory:
        Callable ``(role, protocol_name, private_key) -> HandshakeEngine``.
        Defaults to ``NoiseEngine``.
    protocol_name:
        Noise protocol name every engine is created with.
    """

    def __init__(
        self,
        factory: EngineFactory | None = None,
        protocol_name: bytes = PROTOCOL_NAME,
    ) -> None:
        self._factory: EngineFactory = factory or NoiseEngine
        self.protocol_name = protocol_name
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    def ensure_ready(self) -> None:
        """Validate the protocol against the backend.  Runs once."""
        if self._ready:
            return
        # Raises if the backend does not support the pattern/primitives.
        NoiseConnection.from_name(self.protocol_name)
        self._ready = True
        logger.debug(
            "[Mesh/Noise] runtime ready ({})", self.protocol_name.decode()
        )

    def create_engine(self, role: NoiseRole, private_key: bytes) -> HandshakeEngine:
        self.ensure_ready()
        return self._factory(role, self.protocol_name, private_key)

    def shutdown(self) -> None:
        self._ready = False
        logger.debug("[Mesh/Noise] runtime shut down")


_runtime: NoiseRuntime | None = None


def get_runtime() -> NoiseRuntime:
    """Return the process-wide runtime, creating it on first use."""
    global _runtime
    if _runtime is None:
        _runtime = NoiseRuntime()
    return _runtime


def set_runtime(runtime: NoiseRuntime) -> None:
    """Install *runtime* as the process-wide runtime (replacing any other)."""
    global _runtime
    if _runtime is not None and _runtime is not runtime:
        _runtime.shutdown()
    _runtime = runtime


def reset_runtime() -> None:
    """Tear down the process-wide runtime; the next use re-creates it."""
    global _runtime
    if _runtime is not None:
        _runtime.shutdown()
    _runtime = None


# ---------------------------------------------------------------------------
# NoiseChannel
# ---------------------------------------------------------------------------

class NoiseChannel:
    """Handshake + transport state machine for one peer.

    Parameters
    ----------
    static_keypair:
        This node's static key pair.  Borrowed, never modified.
    role:
        ``NoiseRole.INITIATOR`` for the side that dialled out.
    runtime:
        Engine runtime; defaults to the process-wide one.
    """

    def __init__(
        self,
        static_keypair: KeyPair,
        role: NoiseRole = NoiseRole.RESPONDER,
        runtime: NoiseRuntime | None = None,
    ) -> None:
        self.static_keypair = static_keypair
        self.role = role
        self._runtime = runtime
        self._state = NoiseState.INIT
        self._engine: HandshakeEngine | None = None
        self._remote_static_key: bytes | None = None
        self._initialized = False
        self._destroyed = False

    # -- lifecycle -----------------------------------------------------------

    def initialize(self) -> None:
        """Bind the channel to a fresh handshake engine.  Call exactly once."""
        self._check_alive()
        if self._initialized:
            raise NoiseStateError("channel already initialized")
        runtime = self._runtime or get_runtime()
        try:
            self._engine = runtime.create_engine(self.role, self.static_keypair.private)
        except Exception as exc:
            raise NoiseError(f"cannot create handshake engine: {exc}") from exc
        self._initialized = True
        logger.debug("[Mesh/Noise] initialized session as {}", self.role.value)

    def destroy(self) -> None:
        """Release the engine.  Every later operation raises ``NoiseStateError``."""
        self._engine = None
        self._destroyed = True

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    # -- handshake -----------------------------------------------------------

    def initiate_handshake(self) -> bytes:
        """Write handshake message 1 (``-> e``)."""
        engine = self._require_engine()
        if self.role != NoiseRole.INITIATOR:
            raise NoiseStateError("only the initiator can initiate the handshake")
        if self._state != NoiseState.INIT:
            raise NoiseStateError(f"handshake already started (state={self._state.value})")
        try:
            message = engine.write_message(b"")
        except Exception as exc:
            self.destroy()
            raise NoiseHandshakeError(f"failed to write handshake message: {exc}") from exc
        self._state = NoiseState.HANDSHAKE_IN_PROGRESS
        logger.debug("[Mesh/Noise] sent handshake message 1 (-> e)")
        return message

    def process_handshake_message(self, message: bytes) -> bytes | None:
        """Consume one handshake message.

        Returns the next outbound handshake message, or ``None`` when the
        handshake completed on this read and nothing more must be sent.
        """
        engine = self._require_engine()
        if self._state == NoiseState.TRANSPORT:
            raise NoiseStateError("handshake already complete")
        try:
            engine.read_message(message)
            if engine.handshake_done:
                self._complete(engine)
                return None
            response = engine.write_message(b"")
        except NoiseError:
            raise
        except Exception as exc:
            self.destroy()
            raise NoiseHandshakeError(f"handshake failed: {exc}") from exc

        if engine.handshake_done:
            # Initiator's final "s, se" message completes its side.
            self._complete(engine)
        else:
            self._state = NoiseState.HANDSHAKE_IN_PROGRESS
        return response

    def _complete(self, engine: HandshakeEngine) -> None:
        remote = engine.get_remote_public_key()
        if remote is None:
            self.destroy()
            raise NoiseHandshakeError("handshake finished without a remote static key")
        self._remote_static_key = bytes(remote)
        self._state = NoiseState.TRANSPORT
        logger.debug(
            "[Mesh/Noise] handshake complete, remote key {}...",
            self._remote_static_key.hex()[:16],
        )

    # -- transport -----------------------------------------------------------

    def encrypt_message(self, plaintext: bytes) -> bytes:
        engine = self._require_transport()
        if len(plaintext) > MAX_PLAINTEXT_LEN:
            raise ValueError(
                f"plaintext of {len(plaintext)} bytes exceeds {MAX_PLAINTEXT_LEN}"
            )
        return engine.write_message(plaintext)

    def decrypt_message(self, ciphertext: bytes) -> bytes:
        """Decrypt one transport message.

        Raises ``NoiseDecryptionError`` on any authentication failure.  The
        channel cannot resynchronise afterwards; the caller must discard it.
        """
        engine = self._require_transport()
        try:
            return engine.read_message(ciphertext)
        except Exception as exc:
            raise NoiseDecryptionError(f"decryption failed: {exc}") from exc

    # -- accessors -----------------------------------------------------------

    def get_state(self) -> NoiseState:
        return self._state

    def get_remote_static_key(self) -> bytes | None:
        return self._remote_static_key

    def get_static_public_key(self) -> bytes:
        return self.static_keypair.public

    def is_handshake_complete(self) -> bool:
        return self._state == NoiseState.TRANSPORT

    def fingerprint(self) -> str | None:
        """First 8 bytes of the remote static key as upper-case hex."""
        if self._remote_static_key is None:
            return None
        return self._remote_static_key[:8].hex().upper()

    # -- guards --------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._destroyed:
            raise NoiseStateError("channel has been destroyed")

    def _require_engine(self) -> HandshakeEngine:
        self._check_alive()
        if self._engine is None:
            raise NoiseStateError("channel not initialized")
        return self._engine

    def _require_transport(self) -> HandshakeEngine:
        engine = self._require_engine()
        if self._state != NoiseState.TRANSPORT:
            raise NoiseStateError(f"not in transport mode (state={self._state.value})")
        return engine
