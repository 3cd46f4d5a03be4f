"""Tests for anonmesh.mesh.radio — driver contract, bleak driver, stub driver."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bleak.exc import BleakError

from anonmesh.mesh.radio import (
    MESH_CHARACTERISTIC_UUID,
    MESH_SERVICE_UUID,
    BleakRadio,
    RadioDriver,
    RadioError,
    RadioPermissionError,
    StubLink,
    StubRadio,
)


async def _drain():
    for _ in range(5):
        await asyncio.sleep(0)


def _mock_client() -> MagicMock:
    client = MagicMock()
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.start_notify = AsyncMock()
    client.write_gatt_char = AsyncMock()
    return client


class TestConstants:
    def test_uuids(self):
        assert MESH_SERVICE_UUID == "0000fff0-0000-1000-8000-00805f9b34fb"
        assert MESH_CHARACTERISTIC_UUID == "0000fff1-0000-1000-8000-00805f9b34fb"

    def test_permission_error_is_radio_error(self):
        assert issubclass(RadioPermissionError, RadioError)

    def test_abstract(self):
        with pytest.raises(TypeError):
            RadioDriver()


# ---------------------------------------------------------------------------
# StubRadio
# ---------------------------------------------------------------------------

class TestStubRadio:
    @pytest.mark.asyncio
    async def test_scan_and_advertise_flags(self):
        radio = StubRadio()
        await radio.start_scan()
        await radio.start_advertising("anon0mesh")
        assert radio.scanning and radio.advertising
        assert radio.advertised_name == "anon0mesh"
        await radio.stop_scan()
        await radio.stop_advertising()
        assert not radio.scanning and not radio.advertising

    @pytest.mark.asyncio
    async def test_permissions(self):
        assert await StubRadio().request_permissions() is True
        assert await StubRadio(permissions_granted=False).request_permissions() is False

    @pytest.mark.asyncio
    async def test_connect_write_close(self):
        radio = StubRadio()
        link = await radio.connect("peer-1")
        await radio.write(link, b"abc")
        await radio.close(link)
        assert radio.connect_calls == ["peer-1"]
        assert radio.writes == {"peer-1": [b"abc"]}
        assert radio.closed == ["peer-1"]
        with pytest.raises(RadioError):
            await radio.write(link, b"after close")

    @pytest.mark.asyncio
    async def test_injected_failures(self):
        radio = StubRadio()
        radio.fail_connect.add("bad")
        with pytest.raises(RadioError):
            await radio.connect("bad")
        radio.fail_scan = True
        with pytest.raises(RadioError):
            await radio.start_scan()

    @pytest.mark.asyncio
    async def test_events_reach_hooks(self):
        radio = StubRadio()
        radio.on_peer_found = AsyncMock()
        radio.on_incoming = AsyncMock()
        radio.on_data = AsyncMock()
        radio.on_disconnect = AsyncMock()
        radio.on_error = AsyncMock()

        await radio.discover("p")
        handle = await radio.accept("q")
        await radio.deliver("q", b"data")
        await radio.drop("q")
        err = RadioError("boom")
        await radio.raise_error(err)

        radio.on_peer_found.assert_awaited_once_with("p")
        radio.on_incoming.assert_awaited_once_with("q", handle)
        assert isinstance(handle, StubLink)
        radio.on_data.assert_awaited_once_with("q", b"data")
        radio.on_disconnect.assert_awaited_once_with("q")
        radio.on_error.assert_awaited_once_with(err)

    @pytest.mark.asyncio
    async def test_events_without_hooks(self):
        radio = StubRadio()
        await radio.discover("p")
        await radio.deliver("p", b"x")
        await radio.drop("p")


# ---------------------------------------------------------------------------
# BleakRadio
# ---------------------------------------------------------------------------

class TestBleakRadio:
    def test_cannot_advertise(self):
        assert BleakRadio.supports_advertising is False

    @pytest.mark.asyncio
    async def test_advertising_raises(self):
        with pytest.raises(RadioError):
            await BleakRadio().start_advertising("anon0mesh")

    @pytest.mark.asyncio
    async def test_scan_filters_on_service(self):
        scanner = MagicMock(start=AsyncMock(), stop=AsyncMock())
        with patch("anonmesh.mesh.radio.BleakScanner", return_value=scanner) as cls:
            radio = BleakRadio()
            await radio.start_scan()
            await radio.start_scan()  # already scanning
            assert cls.call_count == 1
            assert cls.call_args.kwargs["service_uuids"] == [MESH_SERVICE_UUID]
            scanner.start.assert_awaited_once()
            await radio.stop_scan()
            await radio.stop_scan()
            scanner.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scan_failure(self):
        scanner = MagicMock(start=AsyncMock(side_effect=BleakError("adapter off")))
        with patch("anonmesh.mesh.radio.BleakScanner", return_value=scanner):
            radio = BleakRadio()
            with pytest.raises(RadioError, match="adapter off"):
                await radio.start_scan()

    @pytest.mark.asyncio
    async def test_detection_reports_peer(self):
        radio = BleakRadio()
        radio.on_peer_found = AsyncMock()
        device = MagicMock(address="AA:BB:CC:DD:EE:FF")
        radio._on_detection(device, MagicMock())
        await _drain()
        radio.on_peer_found.assert_awaited_once_with("AA:BB:CC:DD:EE:FF")

    @pytest.mark.asyncio
    async def test_connect_subscribes_to_notifications(self):
        client = _mock_client()
        with patch("anonmesh.mesh.radio.BleakClient", return_value=client):
            radio = BleakRadio()
            radio.on_data = AsyncMock()
            handle = await radio.connect("AA:BB")
        assert handle is client
        client.connect.assert_awaited_once()
        char, callback = client.start_notify.call_args.args
        assert char == MESH_CHARACTERISTIC_UUID

        callback(MagicMock(), bytearray(b"chunk"))
        await _drain()
        radio.on_data.assert_awaited_once_with("AA:BB", b"chunk")

    @pytest.mark.asyncio
    async def test_connect_uses_scanned_device(self):
        client = _mock_client()
        device = MagicMock(address="AA:BB")
        with patch("anonmesh.mesh.radio.BleakClient", return_value=client) as cls:
            radio = BleakRadio()
            radio._on_detection(device, MagicMock())
            await radio.connect("AA:BB")
        assert cls.call_args.args[0] is device

    @pytest.mark.asyncio
    async def test_disconnect_callback(self):
        client = _mock_client()
        with patch("anonmesh.mesh.radio.BleakClient", return_value=client) as cls:
            radio = BleakRadio()
            radio.on_disconnect = AsyncMock()
            await radio.connect("AA:BB")
        cls.call_args.kwargs["disconnected_callback"](client)
        await _drain()
        radio.on_disconnect.assert_awaited_once_with("AA:BB")

    @pytest.mark.asyncio
    async def test_connect_failure_cleans_up(self):
        client = _mock_client()
        client.connect.side_effect = BleakError("out of range")
        with patch("anonmesh.mesh.radio.BleakClient", return_value=client):
            with pytest.raises(RadioError, match="out of range"):
                await BleakRadio().connect("AA:BB")
        client.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_write_with_response(self):
        client = _mock_client()
        await BleakRadio().write(client, b"\x00\x00\x00\x01x")
        client.write_gatt_char.assert_awaited_once_with(
            MESH_CHARACTERISTIC_UUID, b"\x00\x00\x00\x01x", response=True
        )

    @pytest.mark.asyncio
    async def test_write_failure(self):
        client = _mock_client()
        client.write_gatt_char.side_effect = BleakError("not connected")
        with pytest.raises(RadioError):
            await BleakRadio().write(client, b"x")

    @pytest.mark.asyncio
    async def test_close(self):
        client = _mock_client()
        await BleakRadio().close(client)
        client.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_timeout_disconnects_client(self):
        client = _mock_client()
        stalled = asyncio.Event()

        async def never_subscribes(*args):
            await stalled.wait()

        client.start_notify.side_effect = never_subscribes
        with patch("anonmesh.mesh.radio.BleakClient", return_value=client):
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(BleakRadio().connect("AA:BB"), timeout=0.05)
        client.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_scan_keeps_link_events(self):
        scanner = MagicMock(start=AsyncMock(), stop=AsyncMock())
        with patch("anonmesh.mesh.radio.BleakScanner", return_value=scanner):
            radio = BleakRadio()
            radio.on_peer_found = AsyncMock()
            radio.on_data = AsyncMock()
            radio.on_disconnect = AsyncMock()
            await radio.start_scan()

            radio._on_detection(MagicMock(address="CC:DD"), MagicMock())
            radio._on_notify("AA:BB", bytearray(b"chunk"))
            radio._on_client_disconnected("AA:BB")
            await radio.stop_scan()
            await _drain()

        radio.on_peer_found.assert_not_awaited()
        radio.on_data.assert_awaited_once_with("AA:BB", b"chunk")
        radio.on_disconnect.assert_awaited_once_with("AA:BB")

    @pytest.mark.asyncio
    async def test_shutdown_drops_pending_events(self):
        radio = BleakRadio()
        radio.on_data = AsyncMock()
        radio.on_disconnect = AsyncMock()
        radio._on_notify("AA:BB", bytearray(b"chunk"))
        radio._on_client_disconnected("AA:BB")
        await radio.shutdown()
        await _drain()
        radio.on_data.assert_not_awaited()
        radio.on_disconnect.assert_not_awaited()
