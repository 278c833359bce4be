"""Tests for snapshot persistence and the debounced saver."""

import asyncio
import json
import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from feed_cache.config import RateLimitConfig, StorageConfig
from feed_cache.models.job import Job, JobKind, JobStatus
from feed_cache.models.state import PINNED, POPULAR, SUBSCRIBED, AppState, RateLimitState
from feed_cache.storage.persistent_store import (
    DebouncedSaver,
    PersistentStore,
    state_from_dict,
    state_to_dict,
)
from feed_cache.storage.storage_manager import StorageManager
from tests.fakes import FakeClock, make_item


class StoreTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "state", "feed_cache.json")
        self.clock = FakeClock(start=1_700_000_000.0)
        self.rate_config = RateLimitConfig(requests_per_window=50, window_sec=60)
        self.store = PersistentStore(self.path, self.rate_config, clock=self.clock)

    def tearDown(self):
        self.tmp.cleanup()

    def make_state(self):
        state = AppState(rate_limit=RateLimitState(remaining=12, window_reset_at=self.clock.now() + 30, request_count=88))
        state.feed(SUBSCRIBED).items = [make_item("2", created_at=20), make_item("1", created_at=10)]
        state.feed(SUBSCRIBED).pending = [make_item("3", created_at=30)]
        state.feed(SUBSCRIBED).last_fetch = {"a": 30.0}
        state.feed(POPULAR).items = [make_item("p", source_key="news")]
        state.feed(PINNED).items = [make_item("1", created_at=10)]
        state.subreddits = ["a", "Python"]
        state.blocked = ["spam"]
        state.blocked_users = ["troll"]
        state.jobs = [Job("job-1", JobKind.FETCH_SOURCE, "a", JobStatus.FAILED, retries=1, enqueued_at=5.0)]
        return state

    def write_raw(self, data):
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            if isinstance(data, str):
                f.write(data)
            else:
                json.dump(data, f)


class TestPersistentStore(StoreTestCase):
    """Test cases for PersistentStore."""

    def test_round_trip(self):
        state = self.make_state()

        self.assertTrue(self.store.save(state))
        loaded = self.store.load()

        self.assertEqual(loaded, state)
        self.assertEqual(loaded.rate_limit.request_count, 88)

    def test_missing_file_gives_defaults(self):
        state = self.store.load()

        self.assertEqual(state.subreddits, [])
        self.assertEqual(set(state.feeds), {SUBSCRIBED, POPULAR, PINNED})
        self.assertEqual(state.rate_limit.remaining, 50)
        self.assertEqual(state.rate_limit.window_reset_at, self.clock.now() + 60)

    def test_unreadable_file_gives_defaults(self):
        self.write_raw("{not json")

        state = self.store.load()

        self.assertEqual(state.jobs, [])
        self.assertEqual(state.feed(SUBSCRIBED).items, [])

    def test_corrupted_fields_fall_back_individually(self):
        good = state_to_dict(self.make_state())
        good["subreddits"] = 5
        good["feeds"][POPULAR] = "oops"
        good["feeds"][SUBSCRIBED]["pending"] = {"not": "a list"}
        good["feeds"][SUBSCRIBED]["items"].append({"title": "no id"})
        good["jobs"].append({"id": "bad", "kind": "unknown"})
        self.write_raw(good)

        with self.assertLogs("feed_cache.storage.persistent_store", level="WARNING"):
            state = self.store.load()

        self.assertEqual(state.subreddits, [])
        self.assertEqual(state.blocked, ["spam"])
        self.assertEqual(state.feed(POPULAR).items, [])
        self.assertEqual(state.feed(SUBSCRIBED).pending, [])
        self.assertEqual([item.id for item in state.feed(SUBSCRIBED).items], ["2", "1"])
        self.assertEqual([job.id for job in state.jobs], ["job-1"])

    def test_expired_rate_window_is_replaced(self):
        data = state_to_dict(self.make_state())
        data["rate_limit"]["window_reset_at"] = self.clock.now() - 1
        data["rate_limit"]["remaining"] = 0

        state = state_from_dict(data, self.rate_config, self.clock.now())

        self.assertEqual(state.rate_limit.remaining, 50)
        self.assertEqual(state.rate_limit.window_reset_at, self.clock.now() + 60)

    def test_non_object_snapshot(self):
        state = state_from_dict(["a", "list"], self.rate_config, self.clock.now())

        self.assertEqual(state.subreddits, [])

    def test_save_is_atomic_replace(self):
        self.store.save(self.make_state())

        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["feed_cache.json"])
        self.assertEqual(self.store.occupied_bytes(), self.store.serialized_size(self.make_state()))

    def test_storage_full_evicts_and_retries(self):
        """A snapshot over quota triggers one eviction pass and a second, successful write."""
        manager = StorageManager(StorageConfig(cleanup_threshold_percent=90, eviction_fraction=0.2))
        store = PersistentStore(self.path, self.rate_config, storage_manager=manager, clock=self.clock)
        state = AppState(rate_limit=RateLimitState(remaining=1, window_reset_at=self.clock.now() + 10))
        state.feed(SUBSCRIBED).items = [make_item(f"item{i:04d}", created_at=i) for i in range(100, 0, -1)]
        manager.quota.quota_bytes = int(store.serialized_size(state) * 0.9)

        self.assertTrue(store.save(state))

        self.assertEqual(len(state.feed(SUBSCRIBED).items), 80)
        self.assertEqual(min(item.created_at for item in state.feed(SUBSCRIBED).items), 21)
        self.assertLessEqual(store.occupied_bytes(), manager.quota.quota_bytes)

    def test_save_gives_up_quietly(self):
        manager = StorageManager(StorageConfig())
        manager.quota.quota_bytes = 10
        store = PersistentStore(self.path, self.rate_config, storage_manager=manager, clock=self.clock)

        with self.assertLogs("feed_cache.storage.persistent_store", level="ERROR"):
            self.assertFalse(store.save(self.make_state()))

        self.assertFalse(os.path.exists(self.path))

    @patch("feed_cache.storage.persistent_store.os.replace")
    def test_disk_error_is_reported(self, mock_replace):
        mock_replace.side_effect = PermissionError(13, "Permission denied")

        with self.assertLogs("feed_cache.storage.persistent_store", level="ERROR"):
            self.assertFalse(self.store.save(self.make_state()))

        self.assertEqual(os.listdir(os.path.dirname(self.path)), [])


class TestDebouncedSaver(StoreTestCase):
    """Test cases for DebouncedSaver."""

    def setUp(self):
        super().setUp()
        self.mock_store = MagicMock()
        self.mock_store.save.return_value = True
        self.state = self.make_state()
        self.saver = DebouncedSaver(self.mock_store, self.state, delay=0.5, clock=self.clock)

    def test_requests_coalesce(self):
        self.saver.request()
        self.clock.advance(0.3)
        self.saver.request()
        self.clock.advance(0.3)

        self.assertFalse(self.saver.poll())
        self.mock_store.save.assert_not_called()

        self.clock.advance(0.25)
        self.assertTrue(self.saver.poll())
        self.mock_store.save.assert_called_once_with(self.state)
        self.assertFalse(self.saver.dirty)

    def test_poll_without_request(self):
        self.clock.advance(10)

        self.assertFalse(self.saver.poll())
        self.mock_store.save.assert_not_called()

    def test_flush_writes_immediately(self):
        self.saver.request()

        self.assertTrue(self.saver.flush())
        self.assertTrue(self.saver.flush())

        self.mock_store.save.assert_called_once()
        self.assertEqual(self.saver.flush_count, 1)

    def test_flush_reports_failure(self):
        self.mock_store.save.return_value = False
        self.saver.request()

        self.assertFalse(self.saver.flush())

    def test_run_flushes_on_schedule_and_on_stop(self):
        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(self.saver.run(stop))
            self.saver.request()
            for _ in range(5):
                await asyncio.sleep(0)
            stop.set()
            await task

        asyncio.run(scenario())

        self.mock_store.save.assert_called_once_with(self.state)
        self.assertFalse(self.saver.dirty)

    def test_flush_persists_to_disk(self):
        saver = DebouncedSaver(self.store, self.state, delay=0.5, clock=self.clock)
        saver.request()
        saver.flush()

        self.assertEqual(self.store.load().subreddits, ["a", "Python"])


if __name__ == "__main__":
    unittest.main()
