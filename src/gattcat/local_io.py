"""Local side of a relay session: standard streams, pipes and PTYs.

Every local stream exposes the same two operations the relay needs,
read/write and close. close() is the half-close signal: closing the
output propagates EOF to whoever consumes it (a downstream pipeline or a
child's standard input).
"""

import asyncio
import fcntl
import logging
import os
import pty
import stat
import sys
import termios
import tty
from contextlib import contextmanager
from typing import Callable, Protocol

from .exceptions import ChildSpawnFailure, LocalIoFailure

logger = logging.getLogger(__name__)

STDIN_FILENO = 0
STDOUT_FILENO = 1


class LocalInput(Protocol):
    async def read(self, size: int) -> bytes:
        ...

    def close(self) -> None:
        ...


class LocalOutput(Protocol):
    async def write(self, data: bytes) -> None:
        """Write all of data and flush it."""
        ...

    def close(self) -> None:
        ...


class StreamInput:
    """LocalInput over an asyncio StreamReader."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        transport: asyncio.BaseTransport | None = None,
        on_close: Callable[[], None] | None = None,
    ):
        self._reader = reader
        self._transport = transport
        self._on_close = on_close
        self._closed = False

    async def read(self, size: int) -> bytes:
        try:
            return await self._reader.read(size)
        except OSError as e:
            raise LocalIoFailure(f"Local read failed: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._transport is not None:
            self._transport.close()
        if self._on_close is not None:
            self._on_close()


class StreamOutput:
    """LocalOutput over an asyncio StreamWriter."""

    def __init__(self, writer: asyncio.StreamWriter, on_close: Callable[[], None] | None = None):
        self._writer = writer
        self._on_close = on_close
        self._closed = False

    async def write(self, data: bytes) -> None:
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, RuntimeError) as e:
            # RuntimeError: write on a transport that is already closing
            raise LocalIoFailure(f"Local write failed: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        if self._on_close is not None:
            self._on_close()


class FileInput:
    """LocalInput over a regular file or device, read in the default executor.

    epoll cannot watch these, so `gattcat connect X < file` and
    `< /dev/null` take this path.
    """

    def __init__(self, fd: int, on_close: Callable[[], None] | None = None):
        self._fd = fd
        self._on_close = on_close
        self._closed = False

    async def read(self, size: int) -> bytes:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, os.read, self._fd, size)
        except OSError as e:
            raise LocalIoFailure(f"Local read failed: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        os.close(self._fd)
        if self._on_close is not None:
            self._on_close()


class FileOutput:
    """LocalOutput over a regular file or device, written in the default executor."""

    def __init__(self, fd: int, on_close: Callable[[], None] | None = None):
        self._fd = fd
        self._on_close = on_close
        self._closed = False

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self._fd, view)
            view = view[written:]

    async def write(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write_all, data)
        except OSError as e:
            raise LocalIoFailure(f"Local write failed: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        os.close(self._fd)
        if self._on_close is not None:
            self._on_close()


def _is_pollable(fd: int) -> bool:
    """True for descriptors the event loop can watch: pipes, sockets and TTYs.

    Regular files and devices such as /dev/null are always ready and are
    rejected by epoll, so they are read and written directly.
    """
    mode = os.fstat(fd).st_mode
    return stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode) or os.isatty(fd)


async def open_input(fd: int, on_close: Callable[[], None] | None = None) -> LocalInput:
    """Wrap a readable descriptor; the returned stream owns fd."""
    if not _is_pollable(fd):
        return FileInput(fd, on_close)

    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    pipe = os.fdopen(fd, "rb", buffering=0)
    transport, _ = await loop.connect_read_pipe(lambda: protocol, pipe)
    return StreamInput(reader, transport, on_close)


async def open_output(fd: int, on_close: Callable[[], None] | None = None) -> LocalOutput:
    """Wrap a writable descriptor; the returned stream owns fd."""
    if not _is_pollable(fd):
        return FileOutput(fd, on_close)

    loop = asyncio.get_running_loop()
    pipe = os.fdopen(fd, "wb", buffering=0)
    transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, pipe)
    writer = asyncio.StreamWriter(transport, protocol, None, loop)
    return StreamOutput(writer, on_close)


def _release_std_fd(std_fd: int) -> None:
    """Point a standard descriptor at /dev/null.

    The relay works on duplicates of fd 0 and 1; once the duplicate is
    closed this drops the last reference so the peer of the pipe sees EOF,
    while the descriptor number stays valid for the interpreter.
    """
    devnull = os.open(os.devnull, os.O_RDWR)
    try:
        os.dup2(devnull, std_fd)
    finally:
        os.close(devnull)


async def open_stdio() -> tuple[LocalInput, LocalOutput]:
    """Attach standard input and output for relaying."""
    sys.stdout.flush()
    local_in = await open_input(
        os.dup(STDIN_FILENO), on_close=lambda: _release_std_fd(STDIN_FILENO)
    )
    local_out = await open_output(
        os.dup(STDOUT_FILENO), on_close=lambda: _release_std_fd(STDOUT_FILENO)
    )
    return local_in, local_out


@contextmanager
def raw_terminal(enabled: bool, fd: int = STDIN_FILENO):
    """Switch the terminal on fd into raw mode for the duration of the block.

    Yields True when raw mode was actually enabled (fd is a TTY).
    """
    if not enabled or not os.isatty(fd):
        yield False
        return

    # fd 0 may be released during the session, restore through a duplicate
    restore_fd = os.dup(fd)
    saved = termios.tcgetattr(restore_fd)
    tty.setraw(restore_fd)
    logger.debug("Terminal switched to raw mode")
    try:
        yield True
    finally:
        termios.tcsetattr(restore_fd, termios.TCSADRAIN, saved)
        os.close(restore_fd)
        logger.debug("Terminal restored")


class ChildProcess:
    """A spawned command wired up as the local side of a session.

    local_in reads what the command writes, local_out feeds its input.
    close() is the handle's teardown: it kills the command if it is
    still running, reaps it and releases the streams.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        local_in: LocalInput,
        local_out: LocalOutput,
        on_close: Callable[[], None] | None = None,
    ):
        self.process = process
        self.local_in = local_in
        self.local_out = local_out
        self._on_close = on_close

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    async def wait(self) -> int:
        return await self.process.wait()

    async def close(self) -> None:
        if self.process.returncode is None:
            logger.debug(f"Killing process {self.pid}")
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
        await self.process.wait()
        self.local_in.close()
        self.local_out.close()
        if self._on_close is not None:
            self._on_close()

    async def __aenter__(self) -> "ChildProcess":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def spawn_piped(command: str, args: list[str]) -> ChildProcess:
    """Run command with its standard input and output connected to pipes.

    Raises:
        ChildSpawnFailure: If the command cannot be executed
    """
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ChildSpawnFailure(f"Cannot execute {command}: {e}") from e

    logger.info(f"Started {command} (pid {process.pid})")
    return ChildProcess(process, StreamInput(process.stdout), StreamOutput(process.stdin))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is already the PTY slave
    fcntl.ioctl(STDIN_FILENO, termios.TIOCSCTTY, 0)


async def spawn_pty(command: str, args: list[str]) -> ChildProcess:
    """Run command on a freshly allocated pseudo-terminal in raw mode.

    The relay reads and writes the master side through two separate
    descriptors, so half-closing one direction leaves the other intact.

    Raises:
        ChildSpawnFailure: If the PTY cannot be allocated or the command
            cannot be executed
    """
    try:
        master_fd, slave_fd = pty.openpty()
    except OSError as e:
        raise ChildSpawnFailure(f"Cannot allocate PTY: {e}") from e

    try:
        tty.setraw(slave_fd)
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
        )
    except (OSError, termios.error) as e:
        os.close(master_fd)
        raise ChildSpawnFailure(f"Cannot execute {command}: {e}") from e
    finally:
        os.close(slave_fd)

    logger.info(f"Started {command} on a PTY (pid {process.pid})")
    local_in = await open_input(master_fd)
    local_out = await open_output(os.dup(master_fd))
    return ChildProcess(process, local_in, local_out)
