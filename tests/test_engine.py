import asyncio
import tempfile
import unittest
from fakes import FakeBackend, make_locator, reset_settings
from progress_sync.config import settings
from progress_sync.engine import ProgressSyncEngine
from progress_sync.models import (
    PositionSource,
    RemoteProgress,
    SendResult,
    SyncHistoryResult,
    SyncReason,
    SyncResult,
)
from progress_sync.state import HistoryStore, QueueStore

class TestProgressSyncEngine(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        reset_settings(self.tmp.name)
        self.primary = FakeBackend("primary")
        self.cloud = FakeBackend("cloud")
        self.engine = self.make_engine()

    def tearDown(self):
        self.tmp.cleanup()

    def make_engine(self):
        return ProgressSyncEngine(
            QueueStore(settings.QUEUE_PATH),
            HistoryStore(settings.HISTORY_PATH),
            self.primary,
            self.cloud
        )

    def go_offline(self):
        self.primary.set_connected(False)
        self.cloud.set_connected(False)

    def go_online(self):
        self.primary.set_connected(True)
        self.cloud.set_connected(True)

    async def sync(self, book_id="book-1", locator=None, timestamp=1000, reason=SyncReason.USER_FLIPPED_PAGE):
        return await self.engine.sync_progress(book_id, locator or make_locator(), timestamp, reason)

    def last_history(self, book_id="book-1"):
        return self.engine.get_sync_history(book_id)[-1]

    async def test_sync_reaches_both_backends(self):
        result = await self.sync()

        self.assertEqual(result, SyncResult.SUCCESS)
        self.assertEqual(len(self.primary.calls), 1)
        self.assertEqual(len(self.cloud.calls), 1)
        self.assertFalse(self.engine.has_pending_sync("book-1"))
        progress = self.engine.get_book_progress("book-1")
        self.assertEqual(progress.source, PositionSource.SERVER)
        self.assertEqual(progress.timestamp, 1000)
        self.assertEqual(self.last_history().result, SyncHistoryResult.SERVER_CONFIRMED)

    async def test_secondary_disabled_only_needs_primary(self):
        settings.SECONDARY_SYNC_ENABLED = False

        result = await self.sync()

        self.assertEqual(result, SyncResult.SUCCESS)
        self.assertEqual(len(self.cloud.calls), 0)

    async def test_same_position_is_deduplicated(self):
        await self.sync(timestamp=1000)
        result = await self.sync(timestamp=2000)

        self.assertEqual(result, SyncResult.SUCCESS)
        self.assertEqual(len(self.primary.calls), 1)
        self.assertEqual(len(self.engine.get_sync_history("book-1")), 1)

    async def test_different_fragment_is_not_deduplicated(self):
        await self.sync(locator=make_locator(fragment="p1"))
        await self.sync(locator=make_locator(fragment="p2"), timestamp=2000)

        self.assertEqual(len(self.primary.calls), 2)

    async def test_missing_book_id_fails(self):
        result = await self.engine.sync_progress("", make_locator(), 1000, SyncReason.USER_FLIPPED_PAGE)
        self.assertEqual(result, SyncResult.FAILED)
        self.assertEqual(self.primary.calls, [])

    async def test_offline_update_is_queued(self):
        self.go_offline()

        result = await self.sync(timestamp=1000)

        self.assertEqual(result, SyncResult.QUEUED)
        progress = self.engine.get_book_progress("book-1")
        self.assertEqual(progress.source, PositionSource.PENDING_SYNC)
        pending = self.engine.get_pending_syncs()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].attempt_count, 0)
        self.assertEqual(self.last_history().result, SyncHistoryResult.PERSISTED)
        # Persisted before returning
        self.assertEqual(len(QueueStore(settings.QUEUE_PATH).load()), 1)

    async def test_at_most_one_pending_entry_per_book(self):
        self.go_offline()

        for i, progression in enumerate([0.1, 0.2, 0.3]):
            await self.sync(locator=make_locator(progression=progression, fragment=f"p{i}"), timestamp=1000 + i)

        pending = self.engine.get_pending_syncs()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].timestamp, 1002)
        self.assertEqual(pending[0].locator.fragments, ["p2"])

    async def test_stale_pending_entry_is_not_masked_by_dedupe(self):
        await self.sync(locator=make_locator(fragment="a"), timestamp=1000)
        self.go_offline()
        await self.sync(locator=make_locator(fragment="b"), timestamp=2000)

        # Back at the confirmed position while the newer one is still queued
        result = await self.sync(locator=make_locator(fragment="a"), timestamp=3000)

        self.assertEqual(result, SyncResult.QUEUED)
        pending = self.engine.get_pending_syncs()
        self.assertEqual(pending[0].locator.fragments, ["a"])
        self.assertEqual(pending[0].timestamp, 3000)

    async def test_partial_failure_converges_without_resending(self):
        self.cloud.result = SendResult.NO_CONNECTION

        result = await self.sync()

        self.assertEqual(result, SyncResult.QUEUED)
        entry = self.engine.get_pending_syncs()[0]
        self.assertTrue(entry.synced_to_primary)
        self.assertFalse(entry.synced_to_secondary)
        self.assertEqual(entry.attempt_count, 1)
        self.assertEqual(self.last_history().result, SyncHistoryResult.SENT_TO_SERVER)

        self.cloud.result = SendResult.SUCCESS
        synced, failed = await self.engine.sync_pending_queue()

        self.assertEqual((synced, failed), (1, 0))
        self.assertEqual(len(self.primary.calls), 1)
        self.assertEqual(len(self.cloud.calls), 2)
        self.assertFalse(self.engine.has_pending_sync("book-1"))
        self.assertEqual(self.last_history().result, SyncHistoryResult.SERVER_CONFIRMED)

    async def test_offline_scenario_drains_after_reconnect(self):
        self.go_offline()
        await self.sync("book-1", timestamp=1000)
        await self.sync("book-2", timestamp=1001)

        self.assertEqual(self.engine.get_book_progress("book-1").source, PositionSource.PENDING_SYNC)

        self.go_online()
        synced, failed = await self.engine.sync_pending_queue()

        self.assertEqual((synced, failed), (2, 0))
        self.assertEqual([c[0] for c in self.primary.calls], ["book-1", "book-2"])
        self.assertEqual(self.engine.get_book_progress("book-1").source, PositionSource.SERVER)
        self.assertEqual(QueueStore(settings.QUEUE_PATH).load(), [])

    async def test_queue_survives_restart(self):
        self.go_offline()
        for i in range(3):
            await self.sync(f"book-{i}", timestamp=1000 + i)

        engine = self.make_engine()

        self.assertEqual([p.book_id for p in engine.get_pending_syncs()], ["book-0", "book-1", "book-2"])
        self.assertEqual(engine.get_book_progress("book-2").timestamp, 1002)

    async def test_empty_queue_drain(self):
        self.assertEqual(await self.engine.sync_pending_queue(), (0, 0))

    async def test_queue_drain_is_not_reentrant(self):
        self.go_offline()
        await self.sync()
        self.go_online()
        self.primary.delay = 0.05

        results = await asyncio.gather(self.engine.sync_pending_queue(), self.engine.sync_pending_queue())

        self.assertEqual(sorted(results), [(0, 0), (1, 0)])
        self.assertEqual(len(self.primary.calls), 1)

    async def test_rejected_update_is_discarded(self):
        self.primary.result = SendResult.FAILURE
        await self.sync()
        self.assertTrue(self.engine.has_pending_sync("book-1"))

        synced, failed = await self.engine.sync_pending_queue()

        self.assertEqual((synced, failed), (0, 1))
        self.assertFalse(self.engine.has_pending_sync("book-1"))
        failure = self.last_history()
        self.assertEqual(failure.result, SyncHistoryResult.FAILED)
        # Kept so the reader can restore it by hand
        self.assertEqual(failure.locator, make_locator())

    async def test_rejected_update_kept_when_not_discarding(self):
        settings.DISCARD_REJECTED_UPDATES = False
        self.primary.result = SendResult.FAILURE
        await self.sync()

        self.assertEqual(await self.engine.sync_pending_queue(), (0, 1))
        self.assertEqual(await self.engine.sync_pending_queue(), (0, 1))

        entry = self.engine.get_pending_syncs()[0]
        self.assertEqual(entry.last_error, "rejected by primary")
        self.assertEqual(entry.attempt_count, 3)
        failures = [h for h in self.engine.get_sync_history("book-1") if h.result == SyncHistoryResult.FAILED]
        self.assertEqual(len(failures), 1)

    async def test_timeout_is_treated_as_no_connection(self):
        settings.REQUEST_TIMEOUT_SECONDS = 0.05
        self.primary.delay = 0.2

        result = await self.sync()

        self.assertEqual(result, SyncResult.QUEUED)
        entry = self.engine.get_pending_syncs()[0]
        self.assertFalse(entry.synced_to_primary)
        self.assertTrue(entry.synced_to_secondary)

        # The slow write still lands
        await asyncio.sleep(0.3)
        self.assertIn("book-1", self.primary.records)

    async def test_local_only_book_never_leaves_device(self):
        settings.LOCAL_ONLY_BOOK_IDS = ["sideloaded"]

        result = await self.sync("sideloaded")

        self.assertEqual(result, SyncResult.SUCCESS)
        self.assertEqual(self.primary.calls, [])
        self.assertEqual(self.cloud.calls, [])
        self.assertEqual(self.engine.get_book_progress("sideloaded").source, PositionSource.LOCAL_ONLY)

    async def test_local_only_entries_are_dropped_from_queue(self):
        self.go_offline()
        await self.sync("sideloaded")
        settings.LOCAL_ONLY_BOOK_IDS = ["sideloaded"]
        self.go_online()

        self.assertEqual(await self.engine.sync_pending_queue(), (1, 0))
        self.assertEqual(self.primary.calls, [])

    async def test_observers_notified_on_change(self):
        calls = []
        handle = self.engine.add_observer(lambda: calls.append("sync"))

        async def async_observer():
            calls.append("async")
        self.engine.add_observer(async_observer)

        await self.sync(timestamp=1000)
        self.assertEqual(sorted(calls), ["async", "sync"])

        # Dedupe changes nothing
        await self.sync(timestamp=2000)
        self.assertEqual(len(calls), 2)

        self.engine.remove_observer(handle)
        await self.sync(locator=make_locator(fragment="next"), timestamp=3000)
        self.assertEqual(calls[2:], ["async"])

    async def test_sync_notification_callback(self):
        summaries = []
        self.engine.register_sync_notification_callback(lambda synced, failed: summaries.append((synced, failed)))
        self.go_offline()
        await self.sync()
        self.go_online()

        await self.engine.sync_pending_queue()

        self.assertEqual(summaries, [(1, 0)])

    async def test_restore_position_from_history(self):
        old = make_locator(fragment="old")
        await self.sync(locator=old, timestamp=1000)
        await self.sync(locator=make_locator(fragment="new"), timestamp=2000)

        entry = self.engine.get_sync_history("book-1")[0]
        result = await self.engine.restore_position("book-1", entry.locator, entry.location_description)

        self.assertEqual(result, SyncResult.SUCCESS)
        restored = self.last_history()
        self.assertEqual(restored.reason, SyncReason.USER_RESTORED_FROM_HISTORY)
        self.assertEqual(restored.locator, old)
        self.assertGreater(self.engine.get_book_progress("book-1").timestamp, 2000)

    async def test_clear_sync_history(self):
        await self.sync()
        self.engine.clear_sync_history("book-1")
        self.assertEqual(self.engine.get_sync_history("book-1"), [])
        self.assertEqual(HistoryStore(settings.HISTORY_PATH).entries("book-1"), [])

    async def test_reconcile_adopts_newer_secondary(self):
        self.cloud.records["book-1"] = RemoteProgress(
            book_id="book-1", locator=make_locator(fragment="cloud"), timestamp=2000, device_id="phone"
        )

        healed = await self.engine.reconcile_with_secondary()

        self.assertEqual(healed, (1, 0))
        self.assertEqual(self.primary.calls[0][0], "book-1")
        self.assertEqual(self.primary.calls[0][2], 2000)
        progress = self.engine.get_book_progress("book-1")
        self.assertEqual(progress.source, PositionSource.SERVER)
        self.assertEqual(progress.locator.fragments, ["cloud"])
        accepted = self.last_history()
        self.assertEqual(accepted.result, SyncHistoryResult.SERVER_INCOMING_ACCEPTED)
        self.assertEqual(accepted.source_identifier, "Cloud (phone)")

    async def test_reconcile_newer_secondary_replaces_known_position(self):
        incoming = {"book-1": RemoteProgress(book_id="book-1", locator=make_locator(fragment="server"), timestamp=100)}
        await self.engine.update_server_positions(incoming)
        cloud_locator = make_locator(fragment="cloud")
        self.cloud.records["book-1"] = RemoteProgress(book_id="book-1", locator=cloud_locator, timestamp=200)

        healed = await self.engine.reconcile_with_secondary()

        self.assertEqual(healed, (1, 0))
        progress = self.engine.get_book_progress("book-1")
        self.assertEqual((progress.locator, progress.timestamp), (cloud_locator, 200))
        self.assertEqual(self.primary.calls, [("book-1", cloud_locator, 200)])

    async def test_reconcile_pushes_primary_only_book_to_secondary(self):
        self.cloud.set_connected(False)
        await self.sync(timestamp=1000)
        self.cloud.set_connected(True)

        healed = await self.engine.reconcile_with_secondary()

        self.assertEqual(healed, (0, 1))
        self.assertEqual(self.cloud.records["book-1"].timestamp, 1000)

    async def test_raising_backend_does_not_block_the_other(self):
        self.primary.error = RuntimeError("connection reset")

        result = await self.sync()

        self.assertEqual(result, SyncResult.QUEUED)
        self.assertIn("book-1", self.cloud.records)
        entry = self.engine.get_pending_syncs()[0]
        self.assertTrue(entry.synced_to_secondary)
        self.assertFalse(entry.synced_to_primary)

    async def test_undecodable_state_files_start_empty(self):
        with open(settings.QUEUE_PATH, "wb") as f:
            f.write(b"\xff\xfe\x00garbage")
        with open(settings.HISTORY_PATH, "wb") as f:
            f.write(b"\xff\xfe\x00garbage")

        result = await self.sync(reason=SyncReason.USER_PAUSED_PLAYBACK)

        self.assertEqual(result, SyncResult.SUCCESS)
        self.assertEqual(len(self.engine.get_sync_history("book-1")), 1)

    async def test_reconcile_heals_stale_secondary(self):
        incoming = {"book-1": RemoteProgress(book_id="book-1", locator=make_locator(fragment="server"), timestamp=5000)}
        await self.engine.update_server_positions(incoming)
        self.cloud.records["book-1"] = RemoteProgress(
            book_id="book-1", locator=make_locator(fragment="cloud"), timestamp=1000
        )

        healed = await self.engine.reconcile_with_secondary()

        self.assertEqual(healed, (0, 1))
        self.assertEqual(self.cloud.records["book-1"].timestamp, 5000)
        self.assertEqual(self.primary.calls, [])

    async def test_reconcile_equal_timestamps_is_noop(self):
        await self.sync(timestamp=1000)
        self.primary.calls.clear()
        self.cloud.calls.clear()

        self.assertEqual(await self.engine.reconcile_with_secondary(), (0, 0))
        self.assertEqual(self.primary.calls, [])
        self.assertEqual(self.cloud.calls, [])

    async def test_reconcile_skipped_without_secondary(self):
        self.cloud.records["book-1"] = RemoteProgress(book_id="book-1", locator=make_locator(), timestamp=2000)

        settings.SECONDARY_SYNC_ENABLED = False
        self.assertEqual(await self.engine.reconcile_with_secondary(), (0, 0))

        settings.SECONDARY_SYNC_ENABLED = True
        self.cloud.set_connected(False)
        self.assertEqual(await self.engine.reconcile_with_secondary(), (0, 0))

        self.cloud.set_connected(True)
        self.cloud.fetch_fails = True
        self.assertEqual(await self.engine.reconcile_with_secondary(), (0, 0))
        self.assertIsNone(self.engine.get_book_progress("book-1"))

    async def test_server_positions_older_than_pending_are_rejected(self):
        self.go_offline()
        await self.sync(timestamp=3000)

        older = {"book-1": RemoteProgress(book_id="book-1", locator=make_locator(fragment="old"), timestamp=2000)}
        self.assertEqual(await self.engine.update_server_positions(older), 0)
        self.assertTrue(self.engine.has_pending_sync("book-1"))
        self.assertEqual(self.last_history().result, SyncHistoryResult.SERVER_INCOMING_REJECTED)

        newer = {"book-1": RemoteProgress(book_id="book-1", locator=make_locator(fragment="new"), timestamp=4000)}
        self.assertEqual(await self.engine.update_server_positions(newer), 1)
        self.assertFalse(self.engine.has_pending_sync("book-1"))
        progress = self.engine.get_book_progress("book-1")
        self.assertEqual(progress.source, PositionSource.SERVER)
        self.assertEqual(progress.locator.fragments, ["new"])
        self.assertEqual(self.last_history().source_identifier, "Server")

    async def test_get_all_book_progress_prefers_pending(self):
        await self.sync("book-1", timestamp=1000)
        self.go_offline()
        await self.sync("book-2", timestamp=1000)

        progress = self.engine.get_all_book_progress()

        self.assertEqual(progress["book-1"].source, PositionSource.SERVER)
        self.assertEqual(progress["book-2"].source, PositionSource.PENDING_SYNC)

    async def test_shutdown_persists_state(self):
        self.go_offline()
        await self.sync()

        await self.engine.shutdown()

        self.assertEqual(len(QueueStore(settings.QUEUE_PATH).load()), 1)
        self.assertEqual(len(HistoryStore(settings.HISTORY_PATH).entries("book-1")), 1)

if __name__ == '__main__':
    unittest.main()
