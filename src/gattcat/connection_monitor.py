"""Connection monitor for detecting peers of the local GATT server."""

import asyncio
import logging
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class GattServer(Protocol):
    """Protocol for GATT servers that support connection checking."""

    async def is_connected(self) -> bool:
        """Check if any peers are connected."""
        ...


class ConnectionMonitor:
    """Polls a GATT server and triggers callbacks on connect and disconnect."""

    def __init__(
        self,
        server: GattServer,
        on_disconnect: Callable[[], None],
        on_connect: Callable[[], None] | None = None,
        poll_interval: float = 0.25,
    ):
        """Initialize the connection monitor.

        Args:
            server: GATT server instance with is_connected() method
            on_disconnect: Callback to invoke when the peer disconnects
            on_connect: Callback to invoke when a peer connects
            poll_interval: How often to check connection status (seconds)
        """
        self._server = server
        self._on_disconnect = on_disconnect
        self._on_connect = on_connect
        self._poll_interval = poll_interval
        self._task: asyncio.Task | None = None
        self._running = False
        self._was_connected = False

    @property
    def connected(self) -> bool:
        return self._was_connected

    async def start(self) -> None:
        """Start monitoring."""
        if self._task:
            await self.stop()

        self._running = True
        self._was_connected = False
        self._task = asyncio.create_task(self._monitor_loop())
        logger.debug("Connection monitor started")

    async def stop(self) -> None:
        """Stop monitoring."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.debug("Connection monitor stopped")

    async def poll(self) -> None:
        """Check the connection status once and fire callbacks on changes."""
        is_connected = await self._server.is_connected()

        if not self._was_connected and is_connected:
            logger.info("Peer connected")
            self._was_connected = True
            if self._on_connect:
                self._on_connect()

        elif self._was_connected and not is_connected:
            logger.info("Peer disconnected")
            self._was_connected = False
            self._on_disconnect()

    async def _monitor_loop(self) -> None:
        """Main monitoring loop that checks connection status."""
        while self._running:
            await asyncio.sleep(self._poll_interval)

            try:
                await self.poll()
            except Exception as e:
                logger.error(f"Error checking connection status: {e}")
