"""Local GATT server publishing the relay characteristic, using bless."""

import asyncio
import logging
from typing import Any, Callable

from bless import (
    BlessServer,
    BlessGATTCharacteristic,
    GATTCharacteristicProperties,
    GATTAttributePermissions,
)

from .adapter import PeerWatcher
from .config import DEFAULT_SERVER_MTU, DEFAULT_SERVER_NAME, same_uuid
from .connection_monitor import ConnectionMonitor
from .control import ControlChannel, NotifySubscribe, WriteRequest
from .endpoint import QueueReader
from .exceptions import GattcatError, RemoteIoFailure

logger = logging.getLogger(__name__)

CHARACTERISTIC_PROPERTIES = (
    GATTCharacteristicProperties.write
    | GATTCharacteristicProperties.write_without_response
    | GATTCharacteristicProperties.notify
)
CHARACTERISTIC_PERMISSIONS = GATTAttributePermissions.readable | GATTAttributePermissions.writeable


def _request_mtu(options: dict[str, Any]) -> int:
    """Payload size a peer can use, from the options BlueZ passes along."""
    mtu = options.get("mtu")
    if isinstance(mtu, int) and mtu > 3:
        return max(mtu - 3, DEFAULT_SERVER_MTU)
    return DEFAULT_SERVER_MTU


def _request_device(options: dict[str, Any]) -> str | None:
    """D-Bus object path of the writing device, when BlueZ names it."""
    device = options.get("device")
    device = getattr(device, "value", device)
    return device if isinstance(device, str) else None


class NotifyWriter:
    """RemoteWriter sending notifications to the subscribed peer."""

    def __init__(self, server: BlessServer, service: str, characteristic: str, mtu: int):
        self.mtu = mtu
        self._server = server
        self._service = service
        self._characteristic = characteristic
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def write(self, data: bytes) -> None:
        if self._closed.is_set():
            raise RemoteIoFailure("Peer is no longer subscribed")

        char = self._server.get_characteristic(self._characteristic)
        if char is None:
            raise RemoteIoFailure(f"Characteristic {self._characteristic} not published")

        char.value = bytearray(data)
        try:
            result = self._server.update_value(self._service, self._characteristic)
            # Handle both sync (BlueZ) and async (CoreBluetooth) backends
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            raise RemoteIoFailure(f"Notification failed: {e}") from e

        if result is False:
            raise RemoteIoFailure("Notification was not sent")

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def close(self) -> None:
        self._closed.set()


class PublishedCharacteristic:
    """A service with one characteristic registered on the local adapter.

    Peer activity is reported on `control`: the first write of a peer
    yields a WriteRequest whose reader receives that write and every
    following one; a subscription yields a NotifySubscribe. A disconnect
    ends the reader and closes the writer. Disconnects are seen both by
    polling the subscription state and through BlueZ device signals, so a
    peer that only writes is noticed too.

    Use as an async context manager; leaving it unpublishes the service
    and closes the control channel.
    """

    def __init__(
        self,
        service: str,
        characteristic: str,
        name: str = DEFAULT_SERVER_NAME,
        advertise: bool = True,
        server_factory: Callable[..., BlessServer] = BlessServer,
        poll_interval: float = 0.25,
        adapter_path: str | None = None,
        peer_watcher_factory: Callable[..., PeerWatcher] = PeerWatcher,
    ):
        self.service = service
        self.characteristic = characteristic
        self.name = name
        self.advertise = advertise
        self.control = ControlChannel()
        self.server: BlessServer | None = None
        self._server_factory = server_factory
        self._poll_interval = poll_interval
        self.adapter_path = adapter_path
        self._peer_watcher_factory = peer_watcher_factory
        self._peer_watcher: PeerWatcher | None = None
        self._peer_path: str | None = None
        self._reader: QueueReader | None = None
        self._writer: NotifyWriter | None = None
        self._monitor: ConnectionMonitor | None = None

    async def start(self) -> None:
        """Register the service and characteristic and start the server."""
        logger.info(f"Publishing service {self.service}, characteristic {self.characteristic}")

        self.server = self._server_factory(name=self.name, loop=asyncio.get_running_loop())

        # Set callbacks explicitly for BlueZ backend compatibility
        self.server.read_request_func = self._handle_read
        self.server.write_request_func = self._handle_write

        try:
            await self.server.add_new_service(self.service)
            await self.server.add_new_characteristic(
                self.service,
                self.characteristic,
                CHARACTERISTIC_PROPERTIES,
                None,
                CHARACTERISTIC_PERMISSIONS,
            )
            await self.server.start()
        except Exception as e:
            raise RemoteIoFailure(f"Cannot publish characteristic: {e}") from e

        if not self.advertise:
            await self._stop_advertising()

        self._monitor = ConnectionMonitor(
            server=self.server,
            on_disconnect=self._on_peer_disconnect,
            on_connect=self._on_peer_connect,
            poll_interval=self._poll_interval,
        )
        await self._monitor.start()

        self._peer_watcher = self._peer_watcher_factory(self._on_device_disconnect, self.adapter_path)
        try:
            await self._peer_watcher.start()
        except GattcatError as e:
            raise RemoteIoFailure(f"Cannot publish characteristic: {e}") from e
        logger.info(f"GATT server '{self.name}' started")

    async def stop(self) -> None:
        """Unpublish and end every stream handed out."""
        if self._monitor:
            await self._monitor.stop()
            self._monitor = None
        if self._peer_watcher:
            await self._peer_watcher.stop()
            self._peer_watcher = None

        self._end_peer_streams()
        self.control.close()

        if self.server:
            try:
                await self.server.stop()
            except Exception as e:
                logger.warning(f"Error stopping GATT server: {e}")
            self.server = None
            logger.info("GATT server stopped")

    async def __aenter__(self) -> "PublishedCharacteristic":
        try:
            await self.start()
        except BaseException:
            await self.stop()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def _stop_advertising(self) -> None:
        # bless has no public switch; the BlueZ backend exposes its application
        app = getattr(self.server, "app", None)
        adapter = getattr(self.server, "adapter", None)
        if app is None or adapter is None or not hasattr(app, "stop_advertising"):
            logger.warning("Backend cannot stop advertising, characteristic stays advertised")
            return
        await app.stop_advertising(adapter)
        logger.info("Advertising disabled")

    def _is_ours(self, characteristic: BlessGATTCharacteristic) -> bool:
        return same_uuid(str(characteristic.uuid), self.characteristic)

    def _handle_read(self, characteristic: BlessGATTCharacteristic, **kwargs: Any) -> bytearray:
        logger.debug(f"Read request for {characteristic.uuid}")
        return characteristic.value or bytearray()

    def _handle_write(
        self,
        characteristic: BlessGATTCharacteristic,
        value: Any,
        **kwargs: Any,
    ) -> None:
        if not self._is_ours(characteristic):
            logger.warning(f"Write to unknown characteristic: {characteristic.uuid}")
            return

        data = bytes(value) if value else b""
        characteristic.value = bytearray(data)
        logger.debug(f"Received write ({len(data)} bytes)")

        if self._reader is None:
            mtu = _request_mtu(kwargs)
            reader = QueueReader(mtu)
            self._reader = reader
            self._peer_path = _request_device(kwargs)
            reader.feed(data)
            self.control.put(WriteRequest(mtu=mtu, accept=lambda: reader))
        else:
            self._reader.feed(data)

    def _on_peer_connect(self) -> None:
        if self.server is None:
            return
        writer = NotifyWriter(self.server, self.service, self.characteristic, DEFAULT_SERVER_MTU)
        if self._writer is not None:
            self._writer.close()
        self._writer = writer
        self.control.put(NotifySubscribe(mtu=writer.mtu, writer=writer))

    def _on_peer_disconnect(self) -> None:
        self._end_peer_streams()

    def _on_device_disconnect(self, path: str) -> None:
        if self._peer_path is not None and path != self._peer_path:
            return
        if self._reader is not None or self._writer is not None:
            logger.info(f"Peer {path} disconnected")
        self._end_peer_streams()

    def _end_peer_streams(self) -> None:
        self._peer_path = None
        if self._reader is not None:
            self._reader.feed_eof()
            self._reader = None
        if self._writer is not None:
            self._writer.close()
            self._writer = None


class CharacteristicPublisher:
    """Creates a fresh published characteristic per session."""

    def __init__(
        self,
        name: str = DEFAULT_SERVER_NAME,
        advertise: bool = True,
        server_factory: Callable[..., BlessServer] = BlessServer,
        adapter_path: str | None = None,
        peer_watcher_factory: Callable[..., PeerWatcher] = PeerWatcher,
    ):
        self.name = name
        self.advertise = advertise
        self.adapter_path = adapter_path
        self._server_factory = server_factory
        self._peer_watcher_factory = peer_watcher_factory

    def publish(self, service: str, characteristic: str) -> PublishedCharacteristic:
        return PublishedCharacteristic(
            service,
            characteristic,
            name=self.name,
            advertise=self.advertise,
            server_factory=self._server_factory,
            adapter_path=self.adapter_path,
            peer_watcher_factory=self._peer_watcher_factory,
        )
