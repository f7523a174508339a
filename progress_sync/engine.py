import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
from .clients.base import BackendClient
from .config import settings
from .models import (
    KnownPosition,
    Locator,
    PendingSyncEntry,
    PositionSource,
    RemoteProgress,
    SendResult,
    SyncHistoryEntry,
    SyncHistoryResult,
    SyncReason,
    SyncResult,
)
from .observers import ObserverRegistry
from .state import HistoryStore, QueueStore

logger = logging.getLogger(__name__)

def now_ms() -> int:
    return int(time.time() * 1000)

class ProgressSyncEngine:
    """Single owner of reading progress state.

    Every read-modify-write of the pending queue, known positions and history
    happens while holding self._lock. Backend calls are bounded by
    REQUEST_TIMEOUT_SECONDS; a call that times out is reported as NO_CONNECTION
    but left running, since a late write is harmless to an idempotent remote.
    """

    def __init__(
        self,
        queue_store: QueueStore,
        history_store: HistoryStore,
        primary: BackendClient,
        secondary: Optional[BackendClient] = None,
        is_local_only: Optional[Callable[[str], bool]] = None,
    ):
        self.queue_store = queue_store
        self.history = history_store
        self.primary = primary
        self.secondary = secondary
        self._is_local_only = is_local_only or (lambda book_id: book_id in settings.LOCAL_ONLY_BOOK_IDS)

        self._queue: Dict[str, PendingSyncEntry] = {}  # insertion ordered
        self._queue_loaded = False
        self._known: Dict[str, KnownPosition] = {}

        self._lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._observers = ObserverRegistry()
        self._sync_notification_callback: Optional[Callable[[int, int], Any]] = None
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def secondary_enabled(self) -> bool:
        return settings.SECONDARY_SYNC_ENABLED and self.secondary is not None

    # Primary API

    async def sync_progress(
        self,
        book_id: str,
        locator: Locator,
        timestamp: int,
        reason: SyncReason,
        *,
        source_identifier: Optional[str] = None,
        location_description: Optional[str] = None,
    ) -> SyncResult:
        if not book_id or locator is None:
            logger.warning(f"Ignoring sync request with missing book id or locator (reason={reason})")
            return SyncResult.FAILED

        async with self._lock:
            result, changed = await self._sync_progress_locked(
                book_id, locator, int(timestamp), reason, source_identifier, location_description
            )
        if changed:
            await self._notify()
        return result

    async def _sync_progress_locked(self, book_id, locator, timestamp, reason, source_identifier, location_description):
        self._ensure_queue_loaded()
        logger.info(f"syncProgress {book_id}: reason={reason.value}, timestamp={timestamp}")

        if self._should_dedupe(book_id, locator):
            logger.info(f"Deduplicated update for {book_id}, position unchanged")
            return SyncResult.SUCCESS, False

        if self._is_local_only(book_id):
            logger.info(f"{book_id} is local-only, updating state without remote sync")
            self._set_known(book_id, locator, timestamp, PositionSource.LOCAL_ONLY)
            if self._queue.pop(book_id, None) is not None:
                self._save_queue()
            return SyncResult.SUCCESS, True

        secondary_enabled = self.secondary_enabled
        send_primary = self.primary.is_connected
        send_secondary = secondary_enabled and self.secondary.is_connected
        logger.debug(f"Destinations for {book_id}: primary={send_primary}, secondary={send_secondary} "
                     f"(enabled={secondary_enabled})")

        primary_result, secondary_result = await self._send_to_backends(
            book_id, locator, timestamp, send_primary, send_secondary
        )
        synced_primary = primary_result == SendResult.SUCCESS
        synced_secondary = secondary_result == SendResult.SUCCESS
        history = dict(reason=reason, source_identifier=source_identifier,
                       location_description=location_description)

        if synced_primary and (synced_secondary or not secondary_enabled):
            logger.info(f"{book_id} synced to all destinations")
            if self._queue.pop(book_id, None) is not None:
                self._save_queue()
            self._set_known(book_id, locator, timestamp, PositionSource.SERVER)
            self._record(book_id, locator, timestamp, result=SyncHistoryResult.SERVER_CONFIRMED, **history)
            return SyncResult.SUCCESS, True

        logger.info(f"Partial sync for {book_id}, queueing "
                    f"(primary={primary_result}, secondary={secondary_result})")
        # Replaces, and moves to the back of the queue, any older entry for this book
        self._queue.pop(book_id, None)
        self._queue[book_id] = PendingSyncEntry(
            book_id=book_id,
            locator=locator,
            timestamp=timestamp,
            queued_at=now_ms(),
            attempt_count=1 if (send_primary or send_secondary) else 0,
            synced_to_primary=synced_primary,
            synced_to_secondary=synced_secondary,
        )
        self._save_queue()

        if synced_primary or synced_secondary:
            self._set_known(book_id, locator, timestamp, PositionSource.SERVER)
        result = SyncHistoryResult.SENT_TO_SERVER if synced_primary else SyncHistoryResult.PERSISTED
        self._record(book_id, locator, timestamp, result=result, **history)
        return SyncResult.QUEUED, True

    async def restore_position(self, book_id: str, locator: Locator, location_description: Optional[str] = None) -> SyncResult:
        """Re-apply a position picked from the sync history as a fresh update."""
        logger.info(f"Restoring {book_id} to {location_description or locator.summary()}")
        return await self.sync_progress(
            book_id,
            locator,
            now_ms(),
            SyncReason.USER_RESTORED_FROM_HISTORY,
            location_description=location_description,
        )

    # Queue Management

    async def sync_pending_queue(self, reason: SyncReason = SyncReason.CONNECTION_RESTORED) -> Tuple[int, int]:
        if self._drain_lock.locked():
            logger.info("Queue drain already running, skipping")
            return 0, 0

        async with self._drain_lock:
            self._ensure_queue_loaded()
            logger.info(f"syncPendingQueue: starting with {len(self._queue)} items")
            if not self._queue:
                return 0, 0

            synced = failed = 0
            for book_id in list(self._queue):
                async with self._lock:
                    entry = self._queue.get(book_id)
                    if entry is None:
                        continue
                    outcome = await self._retry_entry(entry, reason)
                if outcome == "synced":
                    synced += 1
                elif outcome == "failed":
                    failed += 1

            async with self._lock:
                self._save_queue()

        logger.info(f"syncPendingQueue: complete - synced={synced}, failed={failed}, remaining={len(self._queue)}")
        if synced or failed:
            await self._notify()
            if self._sync_notification_callback:
                try:
                    result = self._sync_notification_callback(synced, failed)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Sync notification callback failed: {e}", exc_info=True)
        return synced, failed

    async def _retry_entry(self, entry: PendingSyncEntry, reason: SyncReason) -> Optional[str]:
        book_id = entry.book_id
        if self._is_local_only(book_id):
            logger.info(f"{book_id} is local-only, removing from queue")
            del self._queue[book_id]
            return "synced"

        secondary_enabled = self.secondary_enabled
        send_primary = not entry.synced_to_primary and self.primary.is_connected
        send_secondary = secondary_enabled and not entry.synced_to_secondary and self.secondary.is_connected
        if send_primary or send_secondary:
            entry.attempt_count += 1

        primary_result, secondary_result = await self._send_to_backends(
            book_id, entry.locator, entry.timestamp, send_primary, send_secondary
        )

        rejected = []
        if primary_result == SendResult.SUCCESS:
            entry.synced_to_primary = True
        elif primary_result == SendResult.FAILURE:
            rejected.append(self.primary.name)
        if secondary_result == SendResult.SUCCESS:
            entry.synced_to_secondary = True
        elif secondary_result == SendResult.FAILURE:
            rejected.append(self.secondary.name)

        if SendResult.SUCCESS in (primary_result, secondary_result):
            self._set_known(book_id, entry.locator, entry.timestamp, PositionSource.SERVER, only_if_newer=True)

        if rejected:
            first_rejection = entry.last_error is None
            entry.last_error = f"rejected by {', '.join(rejected)}"
            if settings.DISCARD_REJECTED_UPDATES:
                logger.warning(f"{book_id} {entry.last_error}, giving up on this update")
                if primary_result == SendResult.FAILURE:
                    entry.synced_to_primary = True
                if secondary_result == SendResult.FAILURE:
                    entry.synced_to_secondary = True
            else:
                logger.warning(f"{book_id} {entry.last_error}, keeping it queued for manual resolution")
            if settings.DISCARD_REJECTED_UPDATES or first_rejection:
                self._record(book_id, entry.locator, entry.timestamp, reason, SyncHistoryResult.FAILED)

        if entry.is_fully_synced(secondary_enabled):
            del self._queue[book_id]
            if rejected:
                return "failed"
            logger.info(f"{book_id} fully synced, removed from queue")
            self._record(book_id, entry.locator, entry.timestamp, reason, SyncHistoryResult.SERVER_CONFIRMED)
            return "synced"
        return "failed" if rejected else None

    def get_pending_syncs(self) -> List[PendingSyncEntry]:
        self._ensure_queue_loaded()
        return [entry.model_copy() for entry in self._queue.values()]

    def has_pending_sync(self, book_id: str) -> bool:
        self._ensure_queue_loaded()
        return book_id in self._queue

    # Reconciliation

    async def reconcile_with_secondary(self, reason: SyncReason = SyncReason.INITIAL_LOAD) -> Tuple[int, int]:
        """Last-writer-wins merge between known (primary) positions and the secondary store.

        Returns (healed_to_primary, healed_to_secondary).
        """
        if not self.secondary_enabled:
            logger.debug("reconcile: secondary sync disabled, skipping")
            return 0, 0
        if not self.secondary.is_connected:
            logger.debug("reconcile: secondary not connected, skipping")
            return 0, 0

        remote = await self._bounded(self.secondary.fetch_all_progress(), default=None,
                                     what=f"{self.secondary.name} fetch_all_progress")
        if remote is None:
            logger.warning("reconcile: failed to fetch secondary positions")
            return 0, 0
        logger.info(f"reconcile: found {len(remote)} secondary positions")

        healed_primary = healed_secondary = 0
        changed = False
        book_ids = list(dict.fromkeys(list(self._known) + list(remote)))
        for book_id in book_ids:
            async with self._lock:
                known = self._known.get(book_id)
                cloud = remote.get(book_id)
                if self._is_local_only(book_id) or (known and known.source != PositionSource.SERVER):
                    continue

                if known and (cloud is None or known.timestamp > cloud.timestamp):
                    logger.info(f"reconcile: {book_id} primary is newer, healing secondary")
                    result = await self._bounded(
                        self.secondary.send_progress(book_id, known.locator, known.timestamp),
                        default=SendResult.NO_CONNECTION, what=f"{self.secondary.name} send {book_id}"
                    )
                    if result == SendResult.SUCCESS:
                        healed_secondary += 1

                elif cloud and (known is None or cloud.timestamp > known.timestamp):
                    logger.info(f"reconcile: {book_id} secondary is newer, adopting")
                    self._set_known(book_id, cloud.locator, cloud.timestamp, PositionSource.SERVER)
                    self._record(book_id, cloud.locator, cloud.timestamp, reason,
                                 SyncHistoryResult.SERVER_INCOMING_ACCEPTED,
                                 source_identifier=f"Cloud ({cloud.device_id or 'unknown'})")
                    changed = True
                    if self.primary.is_connected:
                        result = await self._bounded(
                            self.primary.send_progress(book_id, cloud.locator, cloud.timestamp),
                            default=SendResult.NO_CONNECTION, what=f"{self.primary.name} send {book_id}"
                        )
                        if result == SendResult.SUCCESS:
                            healed_primary += 1

        logger.info(f"reconcile: complete - healed_to_primary={healed_primary}, healed_to_secondary={healed_secondary}")
        if changed or healed_primary or healed_secondary:
            await self._notify()
        return healed_primary, healed_secondary

    async def update_server_positions(self, positions: Dict[str, RemoteProgress],
                                      reason: SyncReason = SyncReason.INITIAL_LOAD) -> int:
        """Take in positions read from the primary library. Returns how many were accepted."""
        accepted = 0
        async with self._lock:
            self._ensure_queue_loaded()
            queue_changed = False
            for book_id, incoming in positions.items():
                known = self._known.get(book_id)
                pending = self._queue.get(book_id)
                if known and known.source == PositionSource.LOCAL_ONLY:
                    continue
                if known and known.timestamp == incoming.timestamp and known.locator.same_position(incoming.locator):
                    continue

                newest_local = max(
                    [p.timestamp for p in (known, pending) if p is not None],
                    default=None
                )
                if newest_local is not None and newest_local >= incoming.timestamp:
                    logger.info(f"Incoming server position for {book_id} is older than local state, ignoring")
                    self._record(book_id, incoming.locator, incoming.timestamp, reason,
                                 SyncHistoryResult.SERVER_INCOMING_REJECTED, source_identifier="Server")
                    continue

                self._set_known(book_id, incoming.locator, incoming.timestamp, PositionSource.SERVER)
                if pending is not None:
                    logger.info(f"Pending update for {book_id} superseded by newer server position")
                    del self._queue[book_id]
                    queue_changed = True
                self._record(book_id, incoming.locator, incoming.timestamp, reason,
                             SyncHistoryResult.SERVER_INCOMING_ACCEPTED, source_identifier="Server")
                accepted += 1
            if queue_changed:
                self._save_queue()

        logger.info(f"update_server_positions: accepted {accepted}/{len(positions)}")
        if accepted:
            await self._notify()
        return accepted

    # Progress source of truth

    def get_book_progress(self, book_id: str) -> Optional[KnownPosition]:
        self._ensure_queue_loaded()
        pending = self._queue.get(book_id)
        if pending is not None:
            return KnownPosition(book_id=book_id, locator=pending.locator,
                                 timestamp=pending.timestamp, source=PositionSource.PENDING_SYNC)
        return self._known.get(book_id)

    def get_all_book_progress(self) -> Dict[str, KnownPosition]:
        self._ensure_queue_loaded()
        result = dict(self._known)
        for book_id in self._queue:
            result[book_id] = self.get_book_progress(book_id)
        return result

    # Sync history

    def get_sync_history(self, book_id: str) -> List[SyncHistoryEntry]:
        return self.history.entries(book_id)

    def clear_sync_history(self, book_id: str):
        logger.info(f"Clearing sync history for {book_id}")
        self.history.clear(book_id)
        self.history.save()

    # Observers

    def add_observer(self, callback: Callable[[], Any]):
        return self._observers.add(callback)

    def remove_observer(self, handle):
        self._observers.remove(handle)

    def register_sync_notification_callback(self, callback: Callable[[int, int], Any]):
        self._sync_notification_callback = callback

    async def _notify(self):
        await self._observers.notify()

    # Lifecycle

    async def shutdown(self):
        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight sends")
            await asyncio.wait(set(self._in_flight), timeout=settings.REQUEST_TIMEOUT_SECONDS)
        async with self._lock:
            if self._queue_loaded:
                self._save_queue()
            self.history.save()

    # Private helpers

    def _ensure_queue_loaded(self):
        if self._queue_loaded:
            return
        self._queue = {entry.book_id: entry for entry in self.queue_store.load()}
        self._queue_loaded = True

    def _save_queue(self):
        self.queue_store.save(list(self._queue.values()))

    def _should_dedupe(self, book_id: str, locator: Locator) -> bool:
        known = self._known.get(book_id)
        if known is None or not locator.same_position(known.locator):
            return False
        # A different pending position would otherwise win over this one later
        pending = self._queue.get(book_id)
        return pending is None or locator.same_position(pending.locator)

    def _set_known(self, book_id: str, locator: Locator, timestamp: int, source: PositionSource,
                   only_if_newer: bool = False):
        current = self._known.get(book_id)
        if only_if_newer and current is not None and current.timestamp > timestamp:
            return
        self._known[book_id] = KnownPosition(book_id=book_id, locator=locator, timestamp=timestamp, source=source)

    def _record(self, book_id: str, locator: Locator, timestamp: int, reason: SyncReason,
                result: SyncHistoryResult, source_identifier: Optional[str] = None,
                location_description: Optional[str] = None):
        entry = SyncHistoryEntry(
            timestamp=timestamp,
            arrived_at=now_ms(),
            source_identifier=source_identifier or settings.DEVICE_NAME,
            location_description=location_description or locator.describe(),
            reason=reason,
            result=result,
            locator_summary=locator.summary(),
            locator=locator,
        )
        self.history.append(book_id, entry)
        self.history.save()

    async def _bounded(self, coro: Awaitable, default, what: str):
        """Await a backend call for at most REQUEST_TIMEOUT_SECONDS without cancelling it."""
        task = asyncio.ensure_future(coro)
        self._in_flight.add(task)
        task.add_done_callback(self._forget)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=settings.REQUEST_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"{what} timed out after {settings.REQUEST_TIMEOUT_SECONDS}s, treating as no connection")
            return default
        except Exception as e:
            logger.error(f"{what} raised {e!r}", exc_info=True)
            return default

    def _forget(self, task: asyncio.Task):
        self._in_flight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Background backend call finished with {task.exception()!r}")

    async def _send_to_backends(self, book_id: str, locator: Locator, timestamp: int,
                                send_primary: bool, send_secondary: bool):
        async def send(backend: BackendClient, enabled: bool) -> Optional[SendResult]:
            if not enabled:
                return None
            result = await self._bounded(
                backend.send_progress(book_id, locator, timestamp),
                default=SendResult.NO_CONNECTION, what=f"{backend.name} send {book_id}"
            )
            logger.debug(f"{backend.name} send {book_id}: {result}")
            return result

        # One backend failing never stops the other
        return await asyncio.gather(
            send(self.primary, send_primary),
            send(self.secondary, send_secondary),
        )
