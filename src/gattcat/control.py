"""Control channel of a published characteristic.

The local GATT server reports peer activity as control events: a peer
that starts writing yields a WriteRequest, a peer that subscribes to
notifications yields a NotifySubscribe. Events arrive in no guaranteed
order; the channel is exhausted once the published application is gone.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from .endpoint import RemoteReader, RemoteWriter

logger = logging.getLogger(__name__)


@dataclass
class WriteRequest:
    """A peer started writing to the characteristic.

    Attributes:
        mtu: Largest write the peer can issue
        accept: Turns the request into a reader of the peer's writes
    """

    mtu: int
    accept: Callable[[], RemoteReader]


@dataclass
class NotifySubscribe:
    """A peer subscribed to notifications of the characteristic.

    Attributes:
        mtu: Largest notification the peer can receive
        writer: Sink whose writes are notified to the peer
    """

    mtu: int
    writer: RemoteWriter


ControlEvent = WriteRequest | NotifySubscribe


class ControlChannel:
    """Queue of control events with an end-of-channel marker."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ControlEvent | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: ControlEvent) -> None:
        if self._closed:
            logger.debug(f"Dropping {type(event).__name__} on closed control channel")
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def next(self) -> ControlEvent | None:
        """Return the next event, or None once the channel is closed."""
        event = await self._queue.get()
        if event is None:
            # Keep the marker for later callers
            self._queue.put_nowait(None)
        return event
