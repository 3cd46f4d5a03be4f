"""Radio driver boundary for the BLE mesh.

The transport registry never talks to Bluetooth directly.  It drives a
``RadioDriver`` (scan, advertise, connect, write, close) and receives its
events through hooks the registry installs on the driver.

Key classes
-----------
- ``RadioDriver`` — Abstract driver interface plus event hooks.
- ``BleakRadio``  — Central-role driver using the ``bleak`` library.
- ``StubRadio``   — In-memory driver for tests and dry runs.

Event hooks
-----------
All hooks are async callables, ``None`` until the registry installs them:

- ``on_peer_found(peer_id)``          a mesh device showed up in a scan
- ``on_incoming(peer_id, handle)``    a peer connected to us (peripheral role)
- ``on_data(peer_id, data)``          one write/notification from a peer
- ``on_disconnect(peer_id)``          link dropped, for whatever reason
- ``on_error(exc)``                   non-fatal radio error
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError
from loguru import logger

from anonmesh.mesh.tasks import TaskSet

# Shared by every mesh participant: the service filters scans, the
# characteristic carries frames in both directions (write + notify).
MESH_SERVICE_UUID = "0000fff0-0000-1000-8000-00805f9b34fb"
MESH_CHARACTERISTIC_UUID = "0000fff1-0000-1000-8000-00805f9b34fb"


class RadioError(Exception):
    """A radio operation failed (scan, connect, write, ...)."""


class RadioPermissionError(RadioError):
    """The platform refused the Bluetooth/location permissions."""


PeerFoundHook = Callable[[str], Awaitable[None]]
IncomingHook = Callable[[str, Any], Awaitable[None]]
DataHook = Callable[[str, bytes], Awaitable[None]]
DisconnectHook = Callable[[str], Awaitable[None]]
ErrorHook = Callable[[Exception], Awaitable[None]]


# ---------------------------------------------------------------------------
# Driver interface
# ---------------------------------------------------------------------------

class RadioDriver(abc.ABC):
    """Abstract short-range radio used by the transport registry."""

    supports_advertising: bool = False

    def __init__(
        self,
        service_uuid: str = MESH_SERVICE_UUID,
        characteristic_uuid: str = MESH_CHARACTERISTIC_UUID,
    ) -> None:
        self.service_uuid = service_uuid
        self.characteristic_uuid = characteristic_uuid
        self.on_peer_found: PeerFoundHook | None = None
        self.on_incoming: IncomingHook | None = None
        self.on_data: DataHook | None = None
        self.on_disconnect: DisconnectHook | None = None
        self.on_error: ErrorHook | None = None

    async def request_permissions(self) -> bool:
        """Obtain platform permissions.  Platforms without any return ``True``."""
        return True

    @abc.abstractmethod
    async def start_scan(self) -> None:
        """Scan for devices advertising ``service_uuid``."""

    @abc.abstractmethod
    async def stop_scan(self) -> None:
        """Stop scanning (no-op when not scanning)."""

    async def start_advertising(self, local_name: str) -> None:
        raise RadioError(f"{type(self).__name__} cannot advertise")

    async def stop_advertising(self) -> None:
        """Stop advertising (no-op when not advertising)."""

    async def shutdown(self) -> None:
        """Drop pending driver events once every link has been closed."""

    @abc.abstractmethod
    async def connect(self, peer_id: str) -> Any:
        """Open a link to *peer_id* and return the driver's handle for it."""

    @abc.abstractmethod
    async def write(self, handle: Any, data: bytes) -> None:
        """Write one chunk (at most one MTU) on the link."""

    @abc.abstractmethod
    async def close(self, handle: Any) -> None:
        """Close the link behind *handle*."""


# ---------------------------------------------------------------------------
# Bleak-based driver (real hardware)
# ---------------------------------------------------------------------------

class BleakRadio(RadioDriver):
    """Central-role driver on top of ``bleak``.

    bleak has no GATT server, so this driver can scan and connect but not
    advertise; ``supports_advertising`` is ``False``.  On Linux it needs
    BlueZ.
    """

    supports_advertising = False

    def __init__(
        self,
        service_uuid: str = MESH_SERVICE_UUID,
        characteristic_uuid: str = MESH_CHARACTERISTIC_UUID,
    ) -> None:
        super().__init__(service_uuid, characteristic_uuid)
        self._scanner: BleakScanner | None = None
        # address → BLEDevice from the latest scan
        self._devices: dict[str, Any] = {}
        self._clients: dict[str, BleakClient] = {}
        # scan hits die with the scan; link events outlive it
        self._scan_tasks = TaskSet("radio-scan")
        self._link_tasks = TaskSet("radio-links")

    # -- scanning ------------------------------------------------------------

    async def start_scan(self) -> None:
        if self._scanner is not None:
            return
        scanner = BleakScanner(
            detection_callback=self._on_detection,
            service_uuids=[self.service_uuid],
        )
        try:
            await scanner.start()
        except (BleakError, OSError) as exc:
            raise RadioError(f"scan failed to start: {exc}") from exc
        self._scanner = scanner
        logger.info("[Mesh/Radio] scanning for service {}", self.service_uuid)

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except (BleakError, OSError) as exc:
            raise RadioError(f"scan failed to stop: {exc}") from exc
        await self._scan_tasks.cancel_all()
        logger.info("[Mesh/Radio] scan stopped")

    def _on_detection(self, device: Any, advertisement_data: Any) -> None:
        self._devices[device.address] = device
        if self.on_peer_found is not None:
            self._scan_tasks.spawn(self.on_peer_found(device.address), name=f"found-{device.address}")

    # -- links ---------------------------------------------------------------

    async def connect(self, peer_id: str) -> BleakClient:
        client = BleakClient(
            self._devices.get(peer_id, peer_id),
            disconnected_callback=lambda _c: self._on_client_disconnected(peer_id),
        )
        try:
            await client.connect()
            await client.start_notify(
                self.characteristic_uuid,
                lambda _sender, data: self._on_notify(peer_id, data),
            )
        except (BleakError, OSError) as exc:
            await self._discard(peer_id, client)
            raise RadioError(f"connect to {peer_id} failed: {exc}") from exc
        except BaseException:
            # cancelled, e.g. by the caller's connect timeout
            await self._discard(peer_id, client)
            raise
        self._clients[peer_id] = client
        return client

    async def _discard(self, peer_id: str, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError) as exc:
            logger.debug("[Mesh/Radio] cleanup of {} failed: {}", peer_id, exc)

    async def write(self, handle: BleakClient, data: bytes) -> None:
        try:
            await handle.write_gatt_char(self.characteristic_uuid, data, response=True)
        except (BleakError, OSError) as exc:
            raise RadioError(f"write failed: {exc}") from exc

    async def close(self, handle: BleakClient) -> None:
        try:
            await handle.disconnect()
        except (BleakError, OSError) as exc:
            raise RadioError(f"disconnect failed: {exc}") from exc

    def _on_notify(self, peer_id: str, data: bytearray) -> None:
        if self.on_data is not None:
            self._link_tasks.spawn(self.on_data(peer_id, bytes(data)), name=f"data-{peer_id}")

    def _on_client_disconnected(self, peer_id: str) -> None:
        self._clients.pop(peer_id, None)
        if self.on_disconnect is not None:
            self._link_tasks.spawn(self.on_disconnect(peer_id), name=f"lost-{peer_id}")

    async def shutdown(self) -> None:
        await self._scan_tasks.cancel_all()
        await self._link_tasks.cancel_all()


# ---------------------------------------------------------------------------
# Stub driver (testing)
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class StubLink:
    """Handle returned by ``StubRadio.connect``."""

    peer_id: str
    open: bool = True


class StubRadio(RadioDriver):
    """In-memory radio.  Records operations; events are injected by the caller."""

    supports_advertising = True

    def __init__(self, permissions_granted: bool = True) -> None:
        super().__init__()
        self.permissions_granted = permissions_granted
        self.scanning = False
        self.advertising = False
        self.advertised_name = ""
        self.connect_calls: list[str] = []
        self.writes: dict[str, list[bytes]] = {}
        self.closed: list[str] = []
        self.fail_scan = False
        self.fail_connect: set[str] = set()
        self.fail_write: set[str] = set()
        self.fail_close: set[str] = set()

    async def request_permissions(self) -> bool:
        return self.permissions_granted

    async def start_scan(self) -> None:
        if self.fail_scan:
            raise RadioError("scan failed")
        self.scanning = True

    async def stop_scan(self) -> None:
        self.scanning = False

    async def start_advertising(self, local_name: str) -> None:
        self.advertising = True
        self.advertised_name = local_name

    async def stop_advertising(self) -> None:
        self.advertising = False

    async def connect(self, peer_id: str) -> StubLink:
        self.connect_calls.append(peer_id)
        if peer_id in self.fail_connect:
            raise RadioError(f"connect to {peer_id} failed")
        return StubLink(peer_id)

    async def write(self, handle: StubLink, data: bytes) -> None:
        if handle.peer_id in self.fail_write or not handle.open:
            raise RadioError(f"write to {handle.peer_id} failed")
        self.writes.setdefault(handle.peer_id, []).append(bytes(data))

    async def close(self, handle: StubLink) -> None:
        self.closed.append(handle.peer_id)
        handle.open = False
        if handle.peer_id in self.fail_close:
            raise RadioError(f"close of {handle.peer_id} failed")

    # -- event injection -----------------------------------------------------

    async def discover(self, peer_id: str) -> None:
        if self.on_peer_found is not None:
            await self.on_peer_found(peer_id)

    async def accept(self, peer_id: str) -> StubLink:
        """Simulate *peer_id* connecting to us."""
        handle = StubLink(peer_id)
        if self.on_incoming is not None:
            await self.on_incoming(peer_id, handle)
        return handle

    async def deliver(self, peer_id: str, data: bytes) -> None:
        if self.on_data is not None:
            await self.on_data(peer_id, data)

    async def drop(self, peer_id: str) -> None:
        if self.on_disconnect is not None:
            await self.on_disconnect(peer_id)

    async def raise_error(self, exc: Exception) -> None:
        if self.on_error is not None:
            await self.on_error(exc)
