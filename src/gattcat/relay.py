"""Bidirectional relay between a local stream pair and a characteristic.

The relay owns four optional slots: remote reader, remote writer, local
input and local output. Each turn races the pending operations of the
present slots and handles exactly one completed operation. I/O failures
never propagate; they close and drop the affected slots (half-close).

Operations that lose a race stay pending into the next turn and are only
cancelled when their slot is dropped or the relay ends, so no data is
read and then thrown away.
"""

import asyncio
import logging
from functools import partial
from typing import Awaitable, Callable

from .config import FALLBACK_BUFFER_SIZE
from .control import NotifySubscribe, WriteRequest
from .endpoint import RemoteReader, RemoteWriter, chunked
from .exceptions import CapabilityUnsupported, GattcatError
from .local_io import LocalInput, LocalOutput

logger = logging.getLogger(__name__)

CONTROL = "control"
REMOTE_READ = "remote-read"
LOCAL_READ = "local-read"
WRITER_CLOSED = "writer-closed"

# Order in which simultaneously completed operations are handled
ARM_ORDER = (CONTROL, REMOTE_READ, LOCAL_READ, WRITER_CLOSED)


class _Arms:
    """Named pending operations raced against each other."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tasks

    def __bool__(self) -> bool:
        return bool(self._tasks)

    def ensure(self, name: str, start: Callable[[], Awaitable]) -> None:
        """Start the operation unless one is already pending under name."""
        if name not in self._tasks:
            self._tasks[name] = asyncio.ensure_future(start())

    def drop(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None:
            _discard(task)

    def cancel_all(self) -> None:
        for task in self._tasks.values():
            _discard(task)
        self._tasks.clear()

    async def next(self) -> tuple[str, asyncio.Task]:
        """Wait until an operation completes and hand out exactly one."""
        await asyncio.wait(self._tasks.values(), return_when=asyncio.FIRST_COMPLETED)
        for name in ARM_ORDER:
            task = self._tasks.get(name)
            if task is not None and task.done():
                del self._tasks[name]
                return name, task
        raise RuntimeError("no completed operation")


def _discard(task: asyncio.Task) -> None:
    if task.done():
        if not task.cancelled():
            task.exception()
    else:
        task.cancel()


def _outcome(task: asyncio.Task, what: str) -> bytes | None:
    """Result of a read, or None if it raised."""
    exc = task.exception()
    if exc is not None:
        logger.debug(f"{what} raised: {exc!r}")
        return None
    return task.result()


class RelaySession:
    """Slot state of one relay run and its transition rules."""

    def __init__(
        self,
        reader: RemoteReader | None,
        writer: RemoteWriter | None,
        local_in: LocalInput | None,
        local_out: LocalOutput | None,
        fallback_size: int = FALLBACK_BUFFER_SIZE,
        server: bool = False,
    ):
        self.reader = reader
        self.writer = writer
        self.local_in = local_in
        self.local_out = local_out
        self.fallback_size = fallback_size
        self.server = server
        self.reader_closed = False
        self.writer_closed = False
        self.arms = _Arms()

    def buffer_size(self) -> int:
        if self.reader is not None:
            return self.reader.mtu
        if self.writer is not None:
            return self.writer.mtu
        return self.fallback_size

    # Slot management

    def replace_reader(self, reader: RemoteReader) -> None:
        self.arms.drop(REMOTE_READ)
        if self.reader is not None:
            self.reader.close()
        self.reader = reader

    def replace_writer(self, writer: RemoteWriter) -> None:
        self.arms.drop(WRITER_CLOSED)
        if self.writer is not None:
            self.writer.close()
        self.writer = writer

    def drop_reader(self) -> None:
        self.arms.drop(REMOTE_READ)
        if self.reader is not None:
            self.reader.close()
        self.reader = None
        self.reader_closed = True

    def drop_writer(self) -> None:
        self.arms.drop(WRITER_CLOSED)
        if self.writer is not None:
            self.writer.close()
        self.writer = None

    def drop_local_in(self) -> None:
        self.arms.drop(LOCAL_READ)
        if self.local_in is not None:
            self.local_in.close()
        self.local_in = None

    def drop_local_out(self) -> None:
        if self.local_out is not None:
            self.local_out.close()
        self.local_out = None

    def close(self) -> None:
        self.arms.cancel_all()
        if self.reader is not None:
            self.reader.close()
        if self.writer is not None:
            self.writer.close()
        self.drop_local_in()
        self.drop_local_out()

    # Arms

    def arm_remote_read(self) -> None:
        if self.reader is not None:
            self.arms.ensure(REMOTE_READ, partial(self.reader.read, self.buffer_size()))

    def arm_local_read(self) -> None:
        if self.local_in is not None:
            self.arms.ensure(LOCAL_READ, partial(self.local_in.read, self.buffer_size()))

    # Transitions

    async def on_remote_read(self, task: asyncio.Task) -> None:
        data = _outcome(task, "remote read")
        if not data:
            logger.debug("remote read failed")
            self.drop_reader()
            self.drop_local_out()
            return

        if self.local_out is None:
            logger.debug("local output already closed")
            self.drop_reader()
            return
        try:
            await self.local_out.write(data)
        except GattcatError as e:
            logger.debug(f"local output failed: {e}")
            self.drop_reader()

    async def on_local_read(self, task: asyncio.Task) -> None:
        data = _outcome(task, "local read")
        if not data:
            logger.debug("local input failed")
            self.drop_writer()
            self.drop_local_in()
            return

        if self.writer is None:
            logger.debug(f"no remote writer, discarding {len(data)} bytes")
            return
        try:
            for chunk in chunked(data, self.writer.mtu):
                await self.writer.write(chunk)
        except (GattcatError, OSError) as e:
            logger.debug(f"remote write failed: {e}")
            if self.server:
                self.drop_writer()
            self.drop_local_in()

    def on_writer_closed(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"remote writer wait raised: {task.exception()!r}")
        logger.debug("remote writer closed")
        self.drop_writer()
        self.writer_closed = True


async def io_loop(
    reader: RemoteReader | None,
    writer: RemoteWriter | None,
    local_in: LocalInput | None,
    local_out: LocalOutput | None,
    reader_required: bool = False,
    input_required: bool = False,
    fallback_size: int = FALLBACK_BUFFER_SIZE,
) -> None:
    """Relay between a connected characteristic and local streams.

    Runs while a remote reader or the local input is present. Stops early
    once a side flagged as required has gone away.

    Args:
        reader: Notification stream of the characteristic
        writer: Write stream of the characteristic
        local_in: Local byte source forwarded to writer
        local_out: Local byte sink receiving what reader yields
        reader_required: Stop as soon as the remote reader is gone
        input_required: Stop as soon as the local input is gone
        fallback_size: Read size when no endpoint reports an MTU

    Raises:
        CapabilityUnsupported: If neither reader nor writer is given
    """
    if reader is None and writer is None:
        raise CapabilityUnsupported("neither writing nor notify are supported")

    session = RelaySession(reader, writer, local_in, local_out, fallback_size)
    try:
        while session.reader is not None or session.local_in is not None:
            if reader_required and session.reader is None:
                break
            if input_required and session.local_in is None:
                break

            session.arm_remote_read()
            session.arm_local_read()

            name, task = await session.arms.next()
            if name == REMOTE_READ:
                await session.on_remote_read(task)
            elif name == LOCAL_READ:
                await session.on_local_read(task)
    finally:
        session.close()
    logger.debug("relay finished")


async def io_loop_serve(
    control,
    reader: RemoteReader | None,
    writer: RemoteWriter | None,
    local_in: LocalInput | None,
    local_out: LocalOutput | None,
    reader_required: bool = True,
    input_required: bool = False,
    fallback_size: int = FALLBACK_BUFFER_SIZE,
) -> None:
    """Relay for a published characteristic.

    Besides the two reads this races the control channel, which hands in
    new remote readers (peer writes) and writers (peer subscriptions), and
    the writer's closed notification. Local input is only read while a
    remote writer exists.

    A remote reader that went away is closed for good; when it is
    required the loop ends, so each call serves one duplex session.

    Args:
        control: Control channel; next() yields WriteRequest,
            NotifySubscribe or None once the application is gone
        reader_required: End once the remote reader has closed
        input_required: End once the local input has closed
    """
    session = RelaySession(reader, writer, local_in, local_out, fallback_size, server=True)
    try:
        while not session.reader_closed or session.local_in is not None:
            if reader_required and session.reader_closed:
                break
            if input_required and session.local_in is None:
                break
            if session.writer_closed:
                break

            session.arms.ensure(CONTROL, control.next)
            session.arm_remote_read()
            if session.writer is not None:
                session.arm_local_read()
                session.arms.ensure(WRITER_CLOSED, session.writer.wait_closed)

            name, task = await session.arms.next()
            if name == CONTROL:
                event = task.result()
                if event is None:
                    logger.debug("control channel closed")
                    break
                if isinstance(event, WriteRequest):
                    logger.debug(f"peer writes with MTU {event.mtu}")
                    session.replace_reader(event.accept())
                elif isinstance(event, NotifySubscribe):
                    logger.debug(f"peer subscribed with MTU {event.mtu}")
                    session.replace_writer(event.writer)
            elif name == REMOTE_READ:
                await session.on_remote_read(task)
            elif name == LOCAL_READ:
                await session.on_local_read(task)
            elif name == WRITER_CLOSED:
                session.on_writer_closed(task)
    finally:
        session.close()
    logger.debug("relay finished")
