"""GATT client side: find a remote characteristic and relay stdio to it."""

import asyncio
import logging
import os

from .adapter import DeviceAdded
from .config import DEFAULT_CONNECT_RETRIES, DEFAULT_DISCOVERY_TIMEOUT, Address, ConnectConfig, same_uuid
from .endpoint import negotiate
from .exceptions import CharacteristicNotFound, ConnectFailure, DiscoveryTimeout, GattcatError
from .local_io import STDIN_FILENO, open_stdio, raw_terminal
from .relay import io_loop

logger = logging.getLogger(__name__)

NOT_FOUND = "device, service or characteristic not found"


async def connect_with_retries(device, retries: int = DEFAULT_CONNECT_RETRIES) -> None:
    """Connect to device unless already connected, retrying on failure.

    Attempts are strictly sequential; retries=2 means 3 attempts in total.

    Raises:
        ConnectFailure: If every attempt failed; `attempts` holds the count
    """
    if device.is_connected():
        return

    attempts = 0
    while True:
        attempts += 1
        try:
            await device.connect()
            return
        except ConnectFailure as e:
            if attempts > retries:
                raise ConnectFailure(f"{e} (after {attempts} attempts)", attempts=attempts) from e
            logger.debug(f"Connect attempt {attempts} failed: {e}")


class ConnectionMatcher:
    """Waits for a device and locates a characteristic on it.

    The whole search is bounded by one absolute deadline. A device that
    cannot be connected, or lacks the characteristic, is disconnected and
    forgotten so a later sighting retries from a clean state.
    """

    def __init__(
        self,
        adapter,
        address: Address,
        service: str,
        characteristic: str,
        timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
        retries: int = DEFAULT_CONNECT_RETRIES,
    ):
        self.adapter = adapter
        self.address = address
        self.service = service
        self.characteristic = characteristic
        self.timeout = timeout
        self.retries = retries
        self.device = None
        self._failure: GattcatError | None = None

    async def find(self):
        """Return the matching characteristic of the connected device.

        Raises:
            ConnectFailure: Target seen, but connecting failed until the deadline
            CharacteristicNotFound: Target connected, but lacks the characteristic
            DiscoveryTimeout: Target never seen before the deadline
        """
        logger.info(f"Searching for {self.address} (timeout {self.timeout:g} s)")
        try:
            return await asyncio.wait_for(self._scan(), self.timeout)
        except asyncio.TimeoutError:
            raise self._not_found() from None

    async def _scan(self):
        async with self.adapter.discover_devices() as events:
            async for event in events:
                if not isinstance(event, DeviceAdded) or event.address != self.address:
                    continue

                device = self.adapter.device(event.address)
                characteristic = await self._try_device(device)
                if characteristic is not None:
                    self.device = device
                    return characteristic

        raise self._not_found()

    async def _try_device(self, device):
        try:
            await connect_with_retries(device, self.retries)
        except ConnectFailure as e:
            logger.info(f"{e}, waiting for the device to show up again")
            self._failure = e
            await self._release(device)
            return None

        characteristic = self._find_characteristic(device)
        if characteristic is None:
            logger.info(f"{self.address} has no characteristic {self.characteristic} in service {self.service}")
            self._failure = CharacteristicNotFound(
                f"{NOT_FOUND}: {self.address} has no characteristic "
                f"{self.characteristic} in service {self.service}"
            )
            await self._release(device)
        return characteristic

    def _find_characteristic(self, device):
        for service in device.services():
            if not same_uuid(service.uuid(), self.service):
                continue
            for characteristic in service.characteristics():
                if same_uuid(characteristic.uuid(), self.characteristic):
                    return characteristic
        return None

    async def _release(self, device) -> None:
        await device.disconnect()
        await self.adapter.remove_device(device.address)

    def _not_found(self) -> GattcatError:
        if isinstance(self._failure, ConnectFailure):
            return ConnectFailure(f"{NOT_FOUND}: {self._failure}", attempts=self._failure.attempts)
        if isinstance(self._failure, CharacteristicNotFound):
            return self._failure
        return DiscoveryTimeout(f"{NOT_FOUND}: {self.address} not seen within {self.timeout:g} s")


async def connect(config: ConnectConfig, adapter) -> None:
    """Relay standard input and output through a remote characteristic."""
    matcher = ConnectionMatcher(
        adapter,
        config.address,
        config.service,
        config.characteristic,
        timeout=config.timeout,
        retries=config.retries,
    )
    characteristic = await matcher.find()

    try:
        endpoint = await negotiate(characteristic)
        is_tty = os.isatty(STDIN_FILENO)
        local_in, local_out = await open_stdio()
        with raw_terminal(config.raw):
            await io_loop(
                endpoint.reader,
                endpoint.writer,
                local_in,
                local_out,
                reader_required=is_tty,
                input_required=True,
            )
    finally:
        await matcher.device.disconnect()
