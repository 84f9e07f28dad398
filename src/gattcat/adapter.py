"""Bluetooth adapter facade over bleak and the BlueZ D-Bus API.

bleak covers the GATT client role (scanning, connecting, services,
notify and write). What bleak does not cover is done on D-Bus with
dbus_next: looking an adapter up by address, powering it on, forgetting
a device record, watching for the adapter to disappear and for
peripheral-role peers to disconnect.

Requirements:
    - Linux with BlueZ 5.x
    - bluetoothd running
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError
from dbus_next import BusType, Variant
from dbus_next.aio import MessageBus
from dbus_next.errors import DBusError

from .config import ATT_HEADER_SIZE, MIN_ATT_PAYLOAD, Address, AddressType
from .endpoint import QueueReader
from .exceptions import (
    AdapterNotFound,
    CapabilityUnsupported,
    ConfigError,
    ConnectFailure,
    RemoteIoFailure,
)

logger = logging.getLogger(__name__)

# BlueZ D-Bus constants
BLUEZ_SERVICE = "org.bluez"
BLUEZ_ADAPTER_INTERFACE = "org.bluez.Adapter1"
BLUEZ_DEVICE_INTERFACE = "org.bluez.Device1"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
DBUS_SERVICE = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"


@dataclass
class DeviceAdded:
    """A device showed up during discovery."""

    address: Address


@dataclass
class DeviceRemoved:
    """A device record was dropped by the adapter."""

    address: Address


@dataclass
class PropertyChanged:
    """A property of an already discovered device changed."""

    address: Address
    name: str
    value: Any


AdapterEvent = DeviceAdded | DeviceRemoved | PropertyChanged


@dataclass
class AdapterInfo:
    """A local adapter as registered with BlueZ."""

    name: str
    path: str
    address: Address
    powered: bool = False


def _unwrap(value: Any) -> Any:
    """Return the payload of a dbus_next Variant, or value itself."""
    return value.value if isinstance(value, Variant) else value


def select_adapter(managed_objects: dict[str, dict[str, Any]], bind: Address | None) -> AdapterInfo:
    """Pick the adapter to use from the BlueZ object tree.

    Args:
        managed_objects: Result of ObjectManager.GetManagedObjects
        bind: Address of the adapter to use, or None for the first one

    Raises:
        AdapterNotFound: If no adapter (or none with address bind) exists
    """
    adapters = []
    for path in sorted(managed_objects):
        props = managed_objects[path].get(BLUEZ_ADAPTER_INTERFACE)
        if props is None:
            continue
        address = Address.parse(_unwrap(props["Address"]))
        adapters.append(
            AdapterInfo(
                name=path.rsplit("/", 1)[-1],
                path=path,
                address=address,
                powered=bool(_unwrap(props.get("Powered", False))),
            )
        )

    if bind is not None:
        for info in adapters:
            if info.address == bind:
                return info
        raise AdapterNotFound("specified Bluetooth adapter not present")

    if not adapters:
        raise AdapterNotFound("no Bluetooth adapter present")
    return adapters[0]


async def _object_manager(bus: MessageBus):
    introspection = await bus.introspect(BLUEZ_SERVICE, "/")
    proxy = bus.get_proxy_object(BLUEZ_SERVICE, "/", introspection)
    return proxy.get_interface(OBJECT_MANAGER_INTERFACE)


async def resolve_adapter(bind: Address | None = None) -> AdapterInfo:
    """Find the adapter to use and make sure it is powered on.

    Raises:
        AdapterNotFound: If bluetoothd is unreachable or the adapter is missing
    """
    try:
        bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
    except OSError as e:
        raise AdapterNotFound(f"Cannot connect to the system bus: {e}") from e

    try:
        object_manager = await _object_manager(bus)
        managed_objects = await object_manager.call_get_managed_objects()
        info = select_adapter(managed_objects, bind)

        if not info.powered:
            logger.info(f"Powering on {info.name}")
            introspection = await bus.introspect(BLUEZ_SERVICE, info.path)
            proxy = bus.get_proxy_object(BLUEZ_SERVICE, info.path, introspection)
            properties = proxy.get_interface(PROPERTIES_INTERFACE)
            await properties.call_set(BLUEZ_ADAPTER_INTERFACE, "Powered", Variant("b", True))
            info.powered = True
    except DBusError as e:
        raise AdapterNotFound(f"Cannot query bluetoothd: {e}") from e
    finally:
        bus.disconnect()

    logger.info(f"Using adapter {info.name} ({info.address})")
    return info


def _usable_mtu(client: BleakClient) -> int:
    """Payload size of one ATT transfer on this connection."""
    try:
        mtu = client.mtu_size
    except (AttributeError, BleakError):
        return MIN_ATT_PAYLOAD
    return max(mtu - ATT_HEADER_SIZE, MIN_ATT_PAYLOAD)


class NotifyReader(QueueReader):
    """RemoteReader over characteristic notifications."""

    def __init__(self, client: BleakClient, characteristic: BleakGATTCharacteristic, mtu: int):
        super().__init__(mtu)
        self._client = client
        self._characteristic = characteristic
        self._subscribed = False

    async def subscribe(self) -> None:
        def notification_handler(sender, data: bytearray):
            self.feed(bytes(data))

        try:
            await self._client.start_notify(self._characteristic, notification_handler)
        except (BleakError, OSError) as e:
            raise RemoteIoFailure(f"Cannot subscribe to {self._characteristic.uuid}: {e}") from e
        self._subscribed = True

    async def unsubscribe(self) -> None:
        if not self._subscribed:
            return
        self._subscribed = False
        if not self._client.is_connected:
            return
        try:
            await self._client.stop_notify(self._characteristic)
        except (BleakError, OSError) as e:
            logger.debug(f"stop_notify failed: {e}")


class CharacteristicWriter:
    """RemoteWriter over characteristic writes."""

    def __init__(self, client: BleakClient, characteristic: BleakGATTCharacteristic, mtu: int):
        self.mtu = mtu
        self._client = client
        self._characteristic = characteristic
        # Write without response when possible, it does not wait for the peer
        self._response = "write-without-response" not in characteristic.properties
        self._closed = asyncio.Event()

    async def write(self, data: bytes) -> None:
        if self._closed.is_set():
            raise RemoteIoFailure("Writer is closed")
        try:
            await self._client.write_gatt_char(self._characteristic, data, response=self._response)
        except (BleakError, OSError) as e:
            raise RemoteIoFailure(f"Write to {self._characteristic.uuid} failed: {e}") from e

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def close(self) -> None:
        self._closed.set()


class BleakCharacteristic:
    """Remote characteristic of a connected device."""

    def __init__(self, device: "BleakDevice", characteristic: BleakGATTCharacteristic):
        self._device = device
        self._characteristic = characteristic

    def uuid(self) -> str:
        return self._characteristic.uuid

    def flags(self) -> list[str]:
        return list(self._characteristic.properties)

    async def read(self) -> bytes:
        try:
            return bytes(await self._device.client.read_gatt_char(self._characteristic))
        except (BleakError, OSError) as e:
            raise RemoteIoFailure(f"Read of {self.uuid()} failed: {e}") from e

    async def notify(self) -> NotifyReader:
        """Subscribe and return the stream of notification values."""
        return await self.notify_io()

    def descriptors(self) -> list["BleakDescriptor"]:
        return [BleakDescriptor(self._device, d) for d in self._characteristic.descriptors]

    async def notify_io(self) -> NotifyReader:
        props = self._characteristic.properties
        if "notify" not in props and "indicate" not in props:
            raise CapabilityUnsupported(f"{self.uuid()} does not support notify")

        reader = NotifyReader(self._device.client, self._characteristic, _usable_mtu(self._device.client))
        await reader.subscribe()
        self._device.track_reader(reader)
        return reader

    async def write_io(self) -> CharacteristicWriter:
        props = self._characteristic.properties
        if "write" not in props and "write-without-response" not in props:
            raise CapabilityUnsupported(f"{self.uuid()} does not support write")

        mtu = _usable_mtu(self._device.client)
        max_size = getattr(self._characteristic, "max_write_without_response_size", None)
        if "write" not in props and isinstance(max_size, int) and max_size > 0:
            mtu = max_size
        return CharacteristicWriter(self._device.client, self._characteristic, mtu)


class BleakDescriptor:
    def __init__(self, device: "BleakDevice", descriptor):
        self._device = device
        self._descriptor = descriptor

    def uuid(self) -> str:
        return self._descriptor.uuid

    async def read(self) -> bytes:
        try:
            return bytes(await self._device.client.read_gatt_descriptor(self._descriptor.handle))
        except (BleakError, OSError) as e:
            raise RemoteIoFailure(f"Read of descriptor {self.uuid()} failed: {e}") from e


class BleakService:
    def __init__(self, device: "BleakDevice", service):
        self._device = device
        self._service = service

    def uuid(self) -> str:
        return self._service.uuid

    def primary(self) -> bool:
        # bleak only resolves primary services
        return True

    def includes(self) -> list[str]:
        return []

    def characteristics(self) -> list[BleakCharacteristic]:
        return [BleakCharacteristic(self._device, c) for c in self._service.characteristics]


class BleakDevice:
    """A remote device as seen through one adapter."""

    def __init__(
        self,
        adapter_name: str,
        address: Address,
        ble_device: BLEDevice | None = None,
        advertisement: AdvertisementData | None = None,
    ):
        self.address = address
        self._ble_device = ble_device
        self._advertisement = advertisement
        self._readers: list[NotifyReader] = []
        self.client = BleakClient(
            ble_device or str(address),
            disconnected_callback=self._on_disconnect,
            adapter=adapter_name,
        )

    def _on_disconnect(self, client: BleakClient) -> None:
        logger.info(f"Disconnected from {self.address}")
        for reader in self._readers:
            reader.feed_eof()
        self._readers.clear()

    def track_reader(self, reader: NotifyReader) -> None:
        """End reader when the connection drops, unsubscribe it on disconnect."""
        self._readers.append(reader)

    def update(self, ble_device: BLEDevice, advertisement: AdvertisementData) -> None:
        self._ble_device = ble_device
        self._advertisement = advertisement

    async def connect(self) -> None:
        """Connect and resolve services.

        Raises:
            ConnectFailure: If the connection or service resolution fails
        """
        try:
            await self.client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise ConnectFailure(f"Connect to {self.address} failed: {e}") from e
        logger.info(f"Connected to {self.address}")

    async def disconnect(self) -> None:
        for reader in list(self._readers):
            await reader.unsubscribe()
        try:
            await self.client.disconnect()
        except (BleakError, OSError) as e:
            logger.debug(f"Disconnect from {self.address} failed: {e}")

    def is_connected(self) -> bool:
        return self.client.is_connected

    def services(self) -> list[BleakService]:
        return [BleakService(self, s) for s in self.client.services]

    def rssi(self) -> int | None:
        return self._advertisement.rssi if self._advertisement else None

    def address_type(self) -> AddressType:
        details = getattr(self._ble_device, "details", None)
        if isinstance(details, dict):
            kind = details.get("props", {}).get("AddressType")
            if kind == AddressType.RANDOM.value:
                return AddressType.RANDOM
        return AddressType.PUBLIC

    def name(self) -> str | None:
        if self._advertisement and self._advertisement.local_name:
            return self._advertisement.local_name
        return self._ble_device.name if self._ble_device else None

    def tx_power(self) -> int | None:
        return self._advertisement.tx_power if self._advertisement else None

    def service_data(self) -> dict[str, bytes]:
        return dict(self._advertisement.service_data) if self._advertisement else {}

    def manufacturer_data(self) -> dict[int, bytes]:
        return dict(self._advertisement.manufacturer_data) if self._advertisement else {}


class DiscoveryStream:
    """Async iterator of adapter events while a scan is running."""

    def __init__(self, adapter: "BleakAdapter"):
        self._adapter = adapter
        self._queue: asyncio.Queue[AdapterEvent] = asyncio.Queue()
        self._scanner: BleakScanner | None = None

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        try:
            address = Address.parse(device.address)
        except ConfigError:
            logger.debug(f"Ignoring device with unusable address {device.address}")
            return

        known = self._adapter.known(address)
        previous_rssi = known.rssi() if known else None
        self._adapter.remember(address, device, advertisement)
        if known is None:
            self._queue.put_nowait(DeviceAdded(address))
        elif previous_rssi != advertisement.rssi:
            self._queue.put_nowait(PropertyChanged(address, "rssi", advertisement.rssi))

    async def __aenter__(self) -> "DiscoveryStream":
        self._scanner = BleakScanner(detection_callback=self._on_detection, adapter=self._adapter.name)
        try:
            await self._scanner.start()
        except (BleakError, OSError) as e:
            raise AdapterNotFound(f"Cannot start discovery on {self._adapter.name}: {e}") from e
        logger.debug(f"Discovery started on {self._adapter.name}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._scanner is not None:
            try:
                await self._scanner.stop()
            except (BleakError, OSError) as e:
                logger.debug(f"Stopping discovery failed: {e}")
            self._scanner = None
            logger.debug("Discovery stopped")

    def __aiter__(self) -> "DiscoveryStream":
        return self

    async def __anext__(self) -> AdapterEvent:
        return await self._queue.get()


class BleakAdapter:
    """A local adapter used in the GATT client role."""

    def __init__(self, info: AdapterInfo):
        self.info = info
        self._devices: dict[Address, BleakDevice] = {}

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def address(self) -> Address:
        return self.info.address

    def discover_devices(self) -> DiscoveryStream:
        return DiscoveryStream(self)

    def known(self, address: Address) -> BleakDevice | None:
        return self._devices.get(address)

    def remember(self, address: Address, ble_device: BLEDevice, advertisement: AdvertisementData) -> None:
        device = self._devices.get(address)
        if device is None:
            device = BleakDevice(self.name, address, ble_device, advertisement)
            self._devices[address] = device
        else:
            device.update(ble_device, advertisement)
        device.address = Address(address.value, device.address_type())

    def device(self, address: Address) -> BleakDevice:
        device = self._devices.get(address)
        if device is None:
            device = BleakDevice(self.name, address)
            self._devices[address] = device
        return device

    async def remove_device(self, address: Address) -> None:
        """Forget the BlueZ record of a device so it can be rediscovered cleanly."""
        self._devices.pop(address, None)
        path = f"{self.info.path}/{address.dbus_suffix()}"
        try:
            bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        except OSError as e:
            logger.debug(f"Cannot connect to the system bus: {e}")
            return

        try:
            introspection = await bus.introspect(BLUEZ_SERVICE, self.info.path)
            proxy = bus.get_proxy_object(BLUEZ_SERVICE, self.info.path, introspection)
            adapter = proxy.get_interface(BLUEZ_ADAPTER_INTERFACE)
            await adapter.call_remove_device(path)
            logger.debug(f"Removed device record {path}")
        except DBusError as e:
            logger.debug(f"RemoveDevice {path} failed: {e}")
        finally:
            bus.disconnect()


class AdapterWatcher:
    """Reports when an adapter disappears or bluetoothd goes away.

    Example:
        watcher = AdapterWatcher(info.path, on_lost)
        await watcher.start()
        # ... on_lost() is called at most once ...
        await watcher.stop()
    """

    def __init__(self, adapter_path: str, on_lost: Callable[[], None]):
        self._adapter_path = adapter_path
        self._on_lost = on_lost
        self._bus: MessageBus | None = None
        self._lost = False

    @property
    def lost(self) -> bool:
        return self._lost

    def handle_interfaces_removed(self, path: str, interfaces: list[str]) -> None:
        if path == self._adapter_path and BLUEZ_ADAPTER_INTERFACE in interfaces:
            logger.debug(f"Adapter {path} removed")
            self._report()

    def handle_name_owner_changed(self, name: str, old_owner: str, new_owner: str) -> None:
        if name == BLUEZ_SERVICE and not new_owner:
            logger.debug("bluetoothd left the bus")
            self._report()

    def _report(self) -> None:
        if not self._lost:
            self._lost = True
            self._on_lost()

    async def start(self) -> None:
        try:
            self._bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
            object_manager = await _object_manager(self._bus)
            object_manager.on_interfaces_removed(self.handle_interfaces_removed)

            introspection = await self._bus.introspect(DBUS_SERVICE, DBUS_PATH)
            proxy = self._bus.get_proxy_object(DBUS_SERVICE, DBUS_PATH, introspection)
            proxy.get_interface(DBUS_SERVICE).on_name_owner_changed(self.handle_name_owner_changed)
        except (DBusError, OSError) as e:
            await self.stop()
            raise AdapterNotFound(f"Cannot watch adapter {self._adapter_path}: {e}") from e
        logger.debug(f"Watching adapter {self._adapter_path}")

    async def stop(self) -> None:
        if self._bus is not None:
            self._bus.disconnect()
            self._bus = None


class PeerWatcher:
    """Reports remote devices of an adapter dropping their connection.

    bless only notices a peer through its notify subscription. A peer that
    writes and leaves without subscribing is caught here, through the
    Connected property of its org.bluez.Device1 object.
    """

    def __init__(self, on_disconnect: Callable[[str], None], adapter_path: str | None = None):
        self._on_disconnect = on_disconnect
        self._prefix = f"{adapter_path}/" if adapter_path else "/org/bluez/"
        self._bus: MessageBus | None = None
        self._watched: set[str] = set()
        self._pending: set[asyncio.Task] = set()

    def _is_ours(self, path: str, interfaces) -> bool:
        return BLUEZ_DEVICE_INTERFACE in interfaces and path.startswith(self._prefix)

    def handle_properties_changed(
        self, path: str, interface: str, changed: dict[str, Any], invalidated: list[str]
    ) -> None:
        if interface != BLUEZ_DEVICE_INTERFACE or "Connected" not in changed:
            return
        if not _unwrap(changed["Connected"]):
            logger.debug(f"Device {path} disconnected")
            self._on_disconnect(path)

    def handle_interfaces_removed(self, path: str, interfaces: list[str]) -> None:
        if self._is_ours(path, interfaces):
            logger.debug(f"Device {path} removed")
            self._watched.discard(path)
            self._on_disconnect(path)

    def handle_interfaces_added(self, path: str, interfaces: dict[str, Any]) -> None:
        if self._is_ours(path, interfaces):
            task = asyncio.ensure_future(self._watch(path))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _watch(self, path: str) -> None:
        if self._bus is None or path in self._watched:
            return
        self._watched.add(path)
        try:
            introspection = await self._bus.introspect(BLUEZ_SERVICE, path)
            proxy = self._bus.get_proxy_object(BLUEZ_SERVICE, path, introspection)
            proxy.get_interface(PROPERTIES_INTERFACE).on_properties_changed(
                lambda interface, changed, invalidated: self.handle_properties_changed(
                    path, interface, changed, invalidated
                )
            )
        except DBusError as e:
            # The device can vanish before it is introspected
            self._watched.discard(path)
            logger.debug(f"Cannot watch {path}: {e}")

    async def start(self) -> None:
        try:
            self._bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
            object_manager = await _object_manager(self._bus)
            object_manager.on_interfaces_added(self.handle_interfaces_added)
            object_manager.on_interfaces_removed(self.handle_interfaces_removed)
            managed_objects = await object_manager.call_get_managed_objects()
        except (DBusError, OSError) as e:
            await self.stop()
            raise AdapterNotFound(f"Cannot watch peer connections: {e}") from e

        for path, interfaces in managed_objects.items():
            if self._is_ours(path, interfaces):
                await self._watch(path)
        logger.debug(f"Watching {len(self._watched)} devices for disconnects")

    async def stop(self) -> None:
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
        self._watched.clear()
        if self._bus is not None:
            self._bus.disconnect()
            self._bus = None
