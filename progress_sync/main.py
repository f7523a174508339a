import asyncio
import logging
import signal
import sys
import time
import uvicorn

from .config import settings
from .state import HistoryStore, QueueStore
from .clients.primary_client import PrimaryClient
from .clients.cloud_client import CloudClient
from .engine import ProgressSyncEngine
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class SyncService:
    def __init__(self):
        self.running = True
        self.primary = PrimaryClient()
        self.cloud = CloudClient()
        self.engine = ProgressSyncEngine(
            QueueStore(settings.QUEUE_PATH),
            HistoryStore(settings.HISTORY_PATH),
            self.primary,
            self.cloud,
        )
        self._drain_tasks = set()

        # Link engine to server module
        server.engine = self.engine

    def _on_connection_restored(self):
        # Drain in the background so the connectivity monitor is not held up
        logger.info("Connection restored, syncing pending progress queue")
        task = asyncio.create_task(self.drain_queue())
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

    async def setup(self):
        self.primary.add_connection_listener(self._on_connection_restored)
        self.cloud.add_connection_listener(self._on_connection_restored)
        await self.primary.check_connection()
        if settings.SECONDARY_SYNC_ENABLED:
            await self.cloud.check_connection()
        self.engine.register_sync_notification_callback(self._log_sync_summary)

    def _log_sync_summary(self, synced: int, failed: int):
        logger.info(f"Pending progress sync finished: {synced} synced, {failed} failed")

    async def drain_queue(self):
        synced, failed = await self.engine.sync_pending_queue()
        server.last_queue_drain = time.time()
        return synced, failed

    async def queue_retry_loop(self):
        """Periodic retry of anything left in the offline queue"""
        while self.running:
            try:
                await self.drain_queue()
            except Exception as e:
                logger.error(f"Error in queue retry loop: {e}", exc_info=True)
            await asyncio.sleep(settings.QUEUE_RETRY_INTERVAL_SECONDS)

    async def library_refresh_loop(self):
        """Pull positions from the library server, then merge with the cloud store"""
        logger.info("Library refresh started")
        while self.running:
            try:
                if self.primary.is_connected:
                    positions = await self.primary.fetch_all_progress()
                    if positions:
                        await self.engine.update_server_positions(positions)
                await self.engine.reconcile_with_secondary()
            except Exception as e:
                logger.error(f"Error in library refresh: {e}", exc_info=True)

            await asyncio.sleep(settings.LIBRARY_REFRESH_INTERVAL_SECONDS)

    async def start(self):
        await self.setup()

        interval = settings.CONNECTION_CHECK_INTERVAL_SECONDS
        tasks = [
            asyncio.create_task(self.primary.monitor(interval)),
            asyncio.create_task(self.queue_retry_loop()),
            asyncio.create_task(self.library_refresh_loop())
        ]
        if settings.SECONDARY_SYNC_ENABLED:
            tasks.append(asyncio.create_task(self.cloud.monitor(interval)))

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False
            await self.engine.shutdown()
            await self.primary.aclose()
            await self.cloud.aclose()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

def run():
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")

if __name__ == "__main__":
    run()
