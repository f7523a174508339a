import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional
from ..models import ConnectionState, ConnectionStatus, Locator, RemoteProgress, SendResult

logger = logging.getLogger(__name__)

class BackendClient(ABC):
    """A remote store that can hold a book's position.

    Connectivity is probed by check_connection() and cached, so callers read
    connection_status without touching the network on every write.
    """

    name = "backend"

    def __init__(self):
        self.connection_status = ConnectionStatus()
        self._connection_listeners: List[Callable[[], Any]] = []
        self._check_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.connection_status.is_connected

    def add_connection_listener(self, callback: Callable[[], Any]):
        """Called whenever the backend transitions to connected."""
        self._connection_listeners.append(callback)

    async def set_connection_status(self, status: ConnectionStatus):
        was_connected = self.connection_status.is_connected
        if status != self.connection_status:
            logger.info(f"[{self.name}] connection {self.connection_status.state.value} -> {status.state.value}"
                        + (f" ({status.message})" if status.message else ""))
        self.connection_status = status

        if status.is_connected and not was_connected:
            for callback in list(self._connection_listeners):
                try:
                    result = callback()
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"[{self.name}] connection listener failed: {e}", exc_info=True)

    async def check_connection(self, force: bool = False) -> ConnectionStatus:
        # Only one probe at a time
        async with self._check_lock:
            if not force and self.is_connected:
                return self.connection_status
            if not self.is_connected:
                await self.set_connection_status(ConnectionStatus(state=ConnectionState.CONNECTING))
            status = await self._probe()
            await self.set_connection_status(status)
            return status

    async def monitor(self, interval: float):
        logger.info(f"[{self.name}] connectivity monitor started (every {interval}s)")
        while True:
            try:
                await self.check_connection(force=True)
            except Exception as e:
                logger.error(f"[{self.name}] connectivity check failed: {e}", exc_info=True)
                await self.set_connection_status(ConnectionStatus.error(str(e)))
            await asyncio.sleep(interval)

    @abstractmethod
    async def _probe(self) -> ConnectionStatus:
        """Contact the remote and report its reachability."""

    @abstractmethod
    async def send_progress(self, book_id: str, locator: Locator, timestamp: int) -> SendResult:
        """Overwrite the stored position for a book. Must be idempotent."""

    @abstractmethod
    async def fetch_all_progress(self) -> Optional[Dict[str, RemoteProgress]]:
        """Every stored position, or None when the fetch failed."""

    async def aclose(self):
        pass
