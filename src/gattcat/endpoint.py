"""Characteristic endpoints: the remote half of a relay session.

A characteristic endpoint is a pair of optional capabilities, a byte
source (notifications or peer writes) and a byte sink (writes or
notifications to the peer). Each side reports the MTU that bounds every
single transfer through it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from .exceptions import CapabilityUnsupported, GattcatError

logger = logging.getLogger(__name__)


class RemoteReader(Protocol):
    """Byte source backed by a characteristic."""

    mtu: int

    async def read(self, size: int) -> bytes:
        """Return up to size bytes, or b"" once the peer closed the stream."""
        ...

    def close(self) -> None:
        ...


class RemoteWriter(Protocol):
    """Byte sink backed by a characteristic."""

    mtu: int

    async def write(self, data: bytes) -> None:
        """Send at most mtu bytes in one transfer."""
        ...

    async def wait_closed(self) -> None:
        """Return once the peer stopped accepting data."""
        ...

    def close(self) -> None:
        ...


class QueueReader:
    """RemoteReader fed from callbacks (notifications, peer writes).

    Callbacks run on the event loop and push with feed()/feed_eof();
    read() is cancellation-safe, an abandoned read never loses data.
    """

    def __init__(self, mtu: int):
        self.mtu = mtu
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._pending = b""
        self._eof = False

    def feed(self, data: bytes) -> None:
        if data:
            self._queue.put_nowait(bytes(data))

    def feed_eof(self) -> None:
        self._queue.put_nowait(None)

    async def read(self, size: int) -> bytes:
        if not self._pending:
            if self._eof:
                return b""
            item = await self._queue.get()
            if item is None:
                self._eof = True
                return b""
            self._pending = item
        data, self._pending = self._pending[:size], self._pending[size:]
        return data

    def close(self) -> None:
        self._eof = True
        self._pending = b""


@dataclass
class CharacteristicEndpoint:
    """Reader/writer pair obtained for one accepted connection."""

    reader: RemoteReader | None = None
    writer: RemoteWriter | None = None

    def require_capability(self) -> None:
        """Raise CapabilityUnsupported unless at least one side is present."""
        if self.reader is None and self.writer is None:
            raise CapabilityUnsupported("neither writing nor notify are supported")

    @property
    def mtu(self) -> int | None:
        if self.reader is not None:
            return self.reader.mtu
        if self.writer is not None:
            return self.writer.mtu
        return None


async def negotiate(characteristic) -> CharacteristicEndpoint:
    """Obtain notify and write streams from a located characteristic.

    Either side may be unavailable; both missing is fatal.

    Raises:
        CapabilityUnsupported: If neither notify nor write can be obtained
    """
    try:
        reader = await characteristic.notify_io()
    except GattcatError as e:
        logger.debug(f"Notify not available: {e}")
        reader = None

    try:
        writer = await characteristic.write_io()
    except GattcatError as e:
        logger.debug(f"Write not available: {e}")
        writer = None

    endpoint = CharacteristicEndpoint(reader=reader, writer=writer)
    endpoint.require_capability()
    logger.info(
        f"Endpoint ready: notify={'yes' if reader else 'no'} "
        f"write={'yes' if writer else 'no'} mtu={endpoint.mtu}"
    )
    return endpoint


def chunked(data: bytes, mtu: int):
    """Split data into pieces of at most mtu bytes."""
    if mtu <= 0:
        raise ValueError(f"MTU must be positive, got {mtu}")
    for offset in range(0, len(data), mtu):
        yield data[offset:offset + mtu]
