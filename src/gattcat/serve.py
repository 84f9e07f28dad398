"""Server side commands: listen on stdio and serve a command per peer."""

import asyncio
import logging
import sys
from typing import Awaitable, Callable

from .config import ListenConfig, ServeConfig
from .control import NotifySubscribe, WriteRequest
from .endpoint import RemoteReader, RemoteWriter
from .exceptions import ChildSpawnFailure
from .local_io import ChildProcess, open_stdio, raw_terminal, spawn_piped, spawn_pty
from .relay import io_loop_serve

logger = logging.getLogger(__name__)

Spawner = Callable[[str, list[str]], Awaitable[ChildProcess]]


def _endpoint_from(event) -> tuple[RemoteReader | None, RemoteWriter | None]:
    if isinstance(event, WriteRequest):
        return event.accept(), None
    if isinstance(event, NotifySubscribe):
        return None, event.writer
    raise TypeError(f"Unexpected control event: {event!r}")


async def _race_child(published, reader, writer, child: ChildProcess, verbose: bool = False) -> None:
    """Relay until either the session ends or the command exits."""
    relay = asyncio.ensure_future(
        io_loop_serve(
            published.control,
            reader,
            writer,
            child.local_in,
            child.local_out,
            reader_required=True,
            input_required=False,
        )
    )
    exited = asyncio.ensure_future(child.wait())

    done, pending = await asyncio.wait({relay, exited}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    if exited in done:
        logger.info(f"Process {child.pid} exited with status {exited.result()}")
        if verbose:
            print("Process exited", file=sys.stderr)
    if relay in done:
        relay.result()
        if verbose:
            print("Connection terminated", file=sys.stderr)


async def serve(config: ServeConfig, publisher, spawn: Spawner | None = None) -> int:
    """Serve config.command to every peer that connects.

    Each session publishes the characteristic, waits for the first peer
    event, starts the command and relays until the session or the
    command ends, whichever comes first. The other one is abandoned.

    Args:
        config: Serve options
        publisher: Object whose publish(service, characteristic) returns
            an async context manager exposing `control`
        spawn: Command launcher; defaults to pipes or a PTY per config

    Returns:
        Number of sessions served
    """
    if spawn is None:
        spawn = spawn_pty if config.pty else spawn_piped

    sessions = 0
    while True:
        async with publisher.publish(config.service, config.characteristic) as published:
            event = await published.control.next()
            if event is None:
                logger.info("GATT application closed, no more sessions")
                break

            reader, writer = _endpoint_from(event)
            if config.verbose:
                print(f"Connected with MTU {event.mtu} bytes", file=sys.stderr)

            try:
                child = await spawn(config.command, config.args)
            except ChildSpawnFailure as e:
                print(e, file=sys.stderr)
                continue

            async with child:
                await _race_child(published, reader, writer, child, config.verbose)

        sessions += 1
        logger.info(f"Session {sessions} finished")
        if config.one_shot:
            break

    return sessions


async def listen(config: ListenConfig, publisher) -> None:
    """Relay standard input and output through a published characteristic."""
    async with publisher.publish(config.service, config.characteristic) as published:
        local_in, local_out = await open_stdio()
        with raw_terminal(config.raw):
            await io_loop_serve(
                published.control,
                None,
                None,
                local_in,
                local_out,
                reader_required=True,
                input_required=True,
            )
