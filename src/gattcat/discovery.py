"""Discovery sweep: list nearby devices and what they offer."""

import asyncio
import logging
import sys
from typing import Awaitable, Callable, TextIO

from .adapter import DeviceAdded, PropertyChanged
from .config import Address, AddressType, DiscoverConfig
from .exceptions import GattcatError
from .inventory import describe_device

logger = logging.getLogger(__name__)

DeviceHandler = Callable[..., Awaitable[None]]


class DiscoverySweep:
    """Describes each discovered device once.

    The timeout is an idle timeout: it restarts on every event that leads
    to handling a device or waiting for its RSSI. With an address filter
    the sweep ends as soon as every listed device has been handled.
    """

    def __init__(
        self,
        adapter,
        config: DiscoverConfig,
        handler: DeviceHandler = describe_device,
        out: TextIO = sys.stdout,
    ):
        self.adapter = adapter
        self.config = config
        self.handler = handler
        self.out = out
        self.handled: list[Address] = []

    async def run(self) -> list[Address]:
        """Sweep until idle or until every filtered address was handled.

        Returns:
            Addresses of the handled devices, in handling order
        """
        pending = set(self.config.addresses)
        filtered = bool(pending)
        done: set[Address] = set()
        loop = asyncio.get_running_loop()

        async with self.adapter.discover_devices() as events:
            events = events.__aiter__()
            deadline = loop.time() + self.config.timeout
            while not (filtered and not pending):
                try:
                    event = await asyncio.wait_for(events.__anext__(), deadline - loop.time())
                except (asyncio.TimeoutError, StopAsyncIteration):
                    break

                if isinstance(event, DeviceAdded):
                    address = event.address
                elif isinstance(event, PropertyChanged) and event.name == "rssi":
                    address = event.address
                else:
                    continue

                if (filtered and address not in pending) or address in done:
                    continue

                device = self.adapter.device(address)
                if self.config.public_only and device.address_type() == AddressType.RANDOM:
                    continue

                if device.rssi() is not None:
                    await self._handle(device)
                    pending.discard(address)
                    done.add(address)
                    self.handled.append(address)
                else:
                    # Possibly a cached record, wait until it is actually heard
                    logger.debug(f"{address} has no RSSI yet")

                deadline = loop.time() + self.config.timeout

        logger.debug(f"Discovery finished, {len(self.handled)} devices")
        return self.handled

    async def _handle(self, device) -> None:
        try:
            await self.handler(device, self.config.no_connect, self.config.retries, out=self.out)
        except GattcatError as e:
            print(f"  Error: {e}", file=self.out)
        await device.disconnect()
        print(file=self.out)
