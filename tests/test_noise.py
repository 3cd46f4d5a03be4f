"""Tests for anonmesh.mesh.noise — Noise XX channel and engine runtime."""

from __future__ import annotations

import pytest

from anonmesh.mesh import noise
from anonmesh.mesh.noise import (
    MAX_PLAINTEXT_LEN,
    PROTOCOL_NAME,
    HandshakeEngine,
    KeyPair,
    NoiseChannel,
    NoiseDecryptionError,
    NoiseEngine,
    NoiseHandshakeError,
    NoiseRole,
    NoiseRuntime,
    NoiseState,
    NoiseStateError,
    get_runtime,
    reset_runtime,
    set_runtime,
)


@pytest.fixture(autouse=True)
def _fresh_runtime():
    reset_runtime()
    yield
    reset_runtime()


def _pair() -> tuple[NoiseChannel, NoiseChannel, KeyPair, KeyPair]:
    ka, kb = KeyPair.generate(), KeyPair.generate()
    a = NoiseChannel(ka, role=NoiseRole.INITIATOR)
    b = NoiseChannel(kb, role=NoiseRole.RESPONDER)
    a.initialize()
    b.initialize()
    return a, b, ka, kb


def _handshake(a: NoiseChannel, b: NoiseChannel) -> None:
    m1 = a.initiate_handshake()
    m2 = b.process_handshake_message(m1)
    m3 = a.process_handshake_message(m2)
    assert b.process_handshake_message(m3) is None


class ScriptedEngine(HandshakeEngine):
    """Engine that reports completion after a fixed number of reads."""

    def __init__(self, done_after_reads: int = 1, remote: bytes | None = b"\x07" * 32):
        self.done_after_reads = done_after_reads
        self.remote = remote
        self.reads = 0
        self.writes = 0

    def write_message(self, payload: bytes = b"") -> bytes:
        self.writes += 1
        return b"msg-%d" % self.writes

    def read_message(self, data: bytes) -> bytes:
        self.reads += 1
        return b""

    @property
    def handshake_done(self) -> bool:
        return self.reads >= self.done_after_reads

    def get_remote_public_key(self) -> bytes | None:
        return self.remote if self.handshake_done else None


def _scripted_runtime(engine: HandshakeEngine) -> NoiseRuntime:
    return NoiseRuntime(factory=lambda role, name, key: engine)


# ---------------------------------------------------------------------------
# KeyPair
# ---------------------------------------------------------------------------

class TestKeyPair:
    def test_generate(self):
        kp = KeyPair.generate()
        assert len(kp.public) == 32
        assert len(kp.private) == 32
        assert kp.public != kp.private

    def test_from_private_bytes_restores_public(self):
        kp = KeyPair.generate()
        again = KeyPair.from_private_bytes(kp.private)
        assert again == kp

    def test_generate_is_random(self):
        assert KeyPair.generate().public != KeyPair.generate().public


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

class TestHandshake:
    def test_full_xx_handshake(self):
        a, b, ka, kb = _pair()
        assert a.get_state() == NoiseState.INIT

        m1 = a.initiate_handshake()
        assert a.get_state() == NoiseState.HANDSHAKE_IN_PROGRESS

        m2 = b.process_handshake_message(m1)
        assert m2
        assert b.get_state() == NoiseState.HANDSHAKE_IN_PROGRESS

        # Writing "s, se" completes the initiator's side.
        m3 = a.process_handshake_message(m2)
        assert m3
        assert a.get_state() == NoiseState.TRANSPORT

        assert b.process_handshake_message(m3) is None
        assert b.get_state() == NoiseState.TRANSPORT

        assert a.get_remote_static_key() == kb.public
        assert b.get_remote_static_key() == ka.public
        assert a.is_handshake_complete() and b.is_handshake_complete()

    def test_remote_key_absent_before_completion(self):
        a, b, _, _ = _pair()
        b.process_handshake_message(a.initiate_handshake())
        assert a.get_remote_static_key() is None
        assert a.fingerprint() is None

    def test_static_public_key(self):
        a, _, ka, _ = _pair()
        assert a.get_static_public_key() == ka.public

    def test_fingerprint(self):
        a, b, _, kb = _pair()
        _handshake(a, b)
        fp = a.fingerprint()
        assert fp == kb.public[:8].hex().upper()
        assert len(fp) == 16

    def test_responder_cannot_initiate(self):
        _, b, _, _ = _pair()
        with pytest.raises(NoiseStateError):
            b.initiate_handshake()

    def test_initiate_twice(self):
        a, _, _, _ = _pair()
        a.initiate_handshake()
        with pytest.raises(NoiseStateError):
            a.initiate_handshake()

    def test_process_after_completion(self):
        a, b, _, _ = _pair()
        _handshake(a, b)
        with pytest.raises(NoiseStateError):
            b.process_handshake_message(b"\x00" * 48)

    def test_garbage_message_destroys_channel(self):
        a, b, _, _ = _pair()
        b.process_handshake_message(a.initiate_handshake())
        with pytest.raises(NoiseHandshakeError):
            a.process_handshake_message(b"\xff" * 96)
        assert a.destroyed
        with pytest.raises(NoiseStateError):
            a.encrypt_message(b"x")

    def test_completion_comes_from_engine(self):
        engine = ScriptedEngine(done_after_reads=1)
        ch = NoiseChannel(KeyPair.generate(), runtime=_scripted_runtime(engine))
        ch.initialize()
        assert ch.process_handshake_message(b"anything") is None
        assert ch.get_state() == NoiseState.TRANSPORT
        assert ch.get_remote_static_key() == b"\x07" * 32
        assert engine.writes == 0

    def test_not_complete_keeps_going(self):
        engine = ScriptedEngine(done_after_reads=3)
        ch = NoiseChannel(KeyPair.generate(), runtime=_scripted_runtime(engine))
        ch.initialize()
        assert ch.process_handshake_message(b"one") == b"msg-1"
        assert ch.process_handshake_message(b"two") == b"msg-2"
        assert ch.get_state() == NoiseState.HANDSHAKE_IN_PROGRESS
        assert ch.get_remote_static_key() is None

    def test_completion_without_remote_key(self):
        engine = ScriptedEngine(done_after_reads=1, remote=None)
        ch = NoiseChannel(KeyPair.generate(), runtime=_scripted_runtime(engine))
        ch.initialize()
        with pytest.raises(NoiseHandshakeError):
            ch.process_handshake_message(b"x")
        assert ch.destroyed


class TestNoiseEngine:
    """The noiseprotocol-backed engine on its own, no channel on top."""

    def test_remote_key_survives_handshake_completion(self):
        ka, kb = KeyPair.generate(), KeyPair.generate()
        init = NoiseEngine(NoiseRole.INITIATOR, PROTOCOL_NAME, ka.private)
        resp = NoiseEngine(NoiseRole.RESPONDER, PROTOCOL_NAME, kb.private)
        assert init.get_remote_public_key() is None
        assert resp.get_remote_public_key() is None

        resp.read_message(init.write_message())
        assert resp.get_remote_public_key() is None
        init.read_message(resp.write_message())
        assert init.get_remote_public_key() == kb.public
        assert not init.handshake_done

        resp.read_message(init.write_message())
        assert init.handshake_done and resp.handshake_done
        assert init.get_remote_public_key() == kb.public
        assert resp.get_remote_public_key() == ka.public

    def test_transport_after_handshake(self):
        ka, kb = KeyPair.generate(), KeyPair.generate()
        init = NoiseEngine(NoiseRole.INITIATOR, PROTOCOL_NAME, ka.private)
        resp = NoiseEngine(NoiseRole.RESPONDER, PROTOCOL_NAME, kb.private)
        resp.read_message(init.write_message())
        init.read_message(resp.write_message())
        resp.read_message(init.write_message())
        assert resp.read_message(init.write_message(b"gm")) == b"gm"
        assert init.read_message(resp.write_message(b"gn")) == b"gn"


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class TestTransport:
    def test_round_trip_both_directions(self):
        a, b, _, _ = _pair()
        _handshake(a, b)
        assert b.decrypt_message(a.encrypt_message(b"hello bob")) == b"hello bob"
        assert a.decrypt_message(b.encrypt_message(b"hello alice")) == b"hello alice"

    def test_empty_payload(self):
        a, b, _, _ = _pair()
        _handshake(a, b)
        ct = a.encrypt_message(b"")
        assert len(ct) == 16  # tag only
        assert b.decrypt_message(ct) == b""

    def test_16k_payload(self):
        a, b, _, _ = _pair()
        _handshake(a, b)
        payload = bytes(range(256)) * 64
        assert b.decrypt_message(a.encrypt_message(payload)) == payload

    def test_sequence_of_messages(self):
        a, b, _, _ = _pair()
        _handshake(a, b)
        for i in range(20):
            msg = f"message {i}".encode()
            assert b.decrypt_message(a.encrypt_message(msg)) == msg

    def test_encrypt_before_transport(self):
        a, _, _, _ = _pair()
        with pytest.raises(NoiseStateError):
            a.encrypt_message(b"too early")

    def test_decrypt_before_transport(self):
        a, b, _, _ = _pair()
        b.process_handshake_message(a.initiate_handshake())
        with pytest.raises(NoiseStateError):
            b.decrypt_message(b"\x00" * 32)

    def test_bit_flip_detected(self):
        a, b, _, _ = _pair()
        _handshake(a, b)
        ct = bytearray(a.encrypt_message(b"transfer 5 SOL"))
        ct[3] ^= 0x01
        with pytest.raises(NoiseDecryptionError):
            b.decrypt_message(bytes(ct))

    def test_replay_detected(self):
        a, b, _, _ = _pair()
        _handshake(a, b)
        ct = a.encrypt_message(b"once")
        assert b.decrypt_message(ct) == b"once"
        with pytest.raises(NoiseDecryptionError):
            b.decrypt_message(ct)

    def test_plaintext_too_large(self):
        a, b, _, _ = _pair()
        _handshake(a, b)
        with pytest.raises(ValueError):
            a.encrypt_message(b"\x00" * (MAX_PLAINTEXT_LEN + 1))


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_initialize_twice(self):
        ch = NoiseChannel(KeyPair.generate())
        ch.initialize()
        with pytest.raises(NoiseStateError):
            ch.initialize()

    def test_uninitialized(self):
        ch = NoiseChannel(KeyPair.generate(), role=NoiseRole.INITIATOR)
        with pytest.raises(NoiseStateError):
            ch.initiate_handshake()

    def test_destroy_is_idempotent(self):
        a, b, _, _ = _pair()
        _handshake(a, b)
        a.destroy()
        a.destroy()
        assert a.destroyed
        with pytest.raises(NoiseStateError):
            a.encrypt_message(b"x")
        with pytest.raises(NoiseStateError):
            a.decrypt_message(b"x")

    def test_destroyed_cannot_initialize(self):
        ch = NoiseChannel(KeyPair.generate())
        ch.destroy()
        with pytest.raises(NoiseStateError):
            ch.initialize()


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------

class TestRuntime:
    def test_shared_instance(self):
        assert get_runtime() is get_runtime()

    def test_lazy_initialisation(self):
        rt = get_runtime()
        assert not rt.ready
        NoiseChannel(KeyPair.generate()).initialize()
        assert rt.ready

    def test_reset_creates_new_runtime(self):
        first = get_runtime()
        first.ensure_ready()
        reset_runtime()
        assert not first.ready
        assert get_runtime() is not first

    def test_set_runtime_replaces_and_shuts_down(self):
        old = get_runtime()
        old.ensure_ready()
        custom = NoiseRuntime()
        set_runtime(custom)
        assert get_runtime() is custom
        assert not old.ready

    def test_channel_uses_explicit_runtime(self):
        engine = ScriptedEngine()
        rt = _scripted_runtime(engine)
        ch = NoiseChannel(KeyPair.generate(), runtime=rt)
        ch.initialize()
        assert rt.ready
        # the process-wide runtime was never touched
        assert noise._runtime is None
