"""Tests for the application service."""

import asyncio
import os
import tempfile
import unittest

from feed_cache.config import Config
from feed_cache.models.job import JobKind, JobStatus
from feed_cache.models.state import PINNED, POPULAR, SUBSCRIBED
from feed_cache.service import FeedCacheService, normalize_source
from feed_cache.storage.persistent_store import PersistentStore
from tests.fakes import FakeClock, FakeResponse, FakeSession, make_item, make_listing, make_post

DAY = 24 * 60 * 60


class ServiceTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config = Config()
        self.config.storage.state_path = os.path.join(self.temp_dir.name, "state.json")
        self.clock = FakeClock(start=100 * DAY)
        self.session = FakeSession([FakeResponse(200, make_listing())])

    def tearDown(self):
        self.temp_dir.cleanup()

    def open_service(self, **kwargs):
        kwargs.setdefault("session", self.session)
        return FeedCacheService.open(self.config, clock=self.clock, **kwargs)

    def reopen(self, service):
        asyncio.run(service.close())
        return self.open_service()


class TestNormalizeSource(unittest.TestCase):

    def test_normalize_source(self):
        self.assertEqual(normalize_source("  r/Python/ "), "Python")
        self.assertEqual(normalize_source("R/rust"), "rust")
        self.assertEqual(normalize_source("golang"), "golang")


class TestSources(ServiceTestCase):
    """Test cases for following, blocking and pinning."""

    def test_add_source_queues_fetch(self):
        service = self.open_service()

        self.assertTrue(service.add_source("r/Python"))

        self.assertEqual(service.state.subreddits, ["Python"])
        self.assertEqual(len(service.state.jobs), 1)
        self.assertEqual(service.state.jobs[0].kind, JobKind.FETCH_SOURCE)
        self.assertEqual(service.state.jobs[0].source_key, "Python")

    def test_add_source_twice(self):
        service = self.open_service()
        service.add_source("python")

        self.assertFalse(service.add_source("PYTHON"))
        self.assertEqual(service.state.subreddits, ["python"])

    def test_add_empty_source(self):
        service = self.open_service()

        with self.assertRaises(ValueError):
            service.add_source(" r/ ")

    def test_remove_source_drops_cached_items(self):
        service = self.open_service()
        service.state.subreddits = ["a", "b"]
        feed = service.state.feed(SUBSCRIBED)
        feed.items = [make_item("1", source_key="A"), make_item("2", source_key="b")]
        feed.pending = [make_item("3", source_key="a")]

        self.assertTrue(service.remove_source("a"))

        self.assertEqual(service.state.subreddits, ["b"])
        self.assertEqual([item.id for item in feed.items], ["2"])
        self.assertEqual(feed.pending, [])
        self.assertFalse(service.remove_source("a"))

    def test_block_lists_toggle(self):
        service = self.open_service()

        self.assertTrue(service.toggle_block_source("r/memes"))
        self.assertEqual(service.state.blocked, ["memes"])
        self.assertFalse(service.toggle_block_source("Memes"))
        self.assertEqual(service.state.blocked, [])

        self.assertTrue(service.toggle_block_user("troll"))
        self.assertEqual(service.state.blocked_users, ["troll"])

    def test_visible_items_respect_block_lists(self):
        service = self.open_service()
        service.state.feed(SUBSCRIBED).items = [
            make_item("1", source_key="memes"),
            make_item("2", author="Troll"),
        ]
        service.state.feed(POPULAR).items = [
            make_item("3", source_key="Memes"),
            make_item("4", source_key="news", author="troll"),
            make_item("5", source_key="news"),
        ]
        service.toggle_block_source("memes")
        service.toggle_block_user("troll")

        self.assertEqual([item.id for item in service.visible_items(SUBSCRIBED)], ["1"])
        self.assertEqual([item.id for item in service.visible_items(POPULAR)], ["5"])

    def test_toggle_pin(self):
        service = self.open_service()
        service.state.feed(POPULAR).items = [make_item("p1")]

        self.assertTrue(service.toggle_pin("p1"))
        self.assertEqual(service.state.pinned_ids(), {"p1"})
        self.assertFalse(service.toggle_pin("p1"))
        self.assertEqual(service.state.pinned_ids(), set())

        with self.assertRaises(KeyError):
            service.toggle_pin("missing")


class TestSync(ServiceTestCase):
    """Test cases for refresh, apply and persistence through the service."""

    def test_refresh_populates_feeds(self):
        now = self.clock.now()
        self.session = FakeSession([
            FakeResponse(200, make_listing(
                make_post("a1", subreddit="python", created_utc=now - 60),
                make_post("a2", subreddit="python", created_utc=now - 30),
            )),
            FakeResponse(200, make_listing(make_post("g1", subreddit="news", created_utc=now - 10))),
        ])
        service = self.open_service()
        service.state.subreddits = ["python"]

        summary = asyncio.run(service.refresh())

        self.assertEqual(len(summary.completed), 2)
        self.assertEqual(sorted(summary.auto_applied), [POPULAR, SUBSCRIBED])
        self.assertEqual([item.id for item in service.state.feed(SUBSCRIBED).items], ["a2", "a1"])
        self.assertEqual([item.id for item in service.state.feed(POPULAR).items], ["g1"])
        self.assertEqual([call["url"] for call in self.session.calls], [
            "https://www.reddit.com/r/python.json",
            "https://www.reddit.com/r/popular.json",
        ])
        self.assertEqual(service.state.jobs, [])
        self.assertEqual(service.state.rate_limit.request_count, 2)

    def test_apply_staged_items(self):
        service = self.open_service()
        feed = service.state.feed(SUBSCRIBED)
        now = self.clock.now()
        feed.items = [make_item("1", created_at=now - 100)]
        feed.pending = [make_item("2", created_at=now - 50)]

        self.assertEqual(service.apply(), 1)
        self.assertEqual([item.id for item in feed.items], ["2", "1"])
        self.assertEqual(service.apply(), 0)

    def test_apply_evicts_expired_items(self):
        service = self.open_service()
        feed = service.state.feed(SUBSCRIBED)
        now = self.clock.now()
        feed.items = [make_item("old", created_at=now - 31 * DAY)]
        feed.pending = [make_item("new", created_at=now)]

        service.apply()

        self.assertEqual([item.id for item in feed.items], ["new"])

    def test_state_survives_restart(self):
        service = self.open_service()
        service.add_source("python")
        service.toggle_block_user("troll")

        reopened = self.reopen(service)

        self.assertEqual(reopened.state.subreddits, ["python"])
        self.assertEqual(reopened.state.blocked_users, ["troll"])
        self.assertEqual([job.source_key for job in reopened.state.jobs], ["python"])

    def test_open_evicts_old_items_but_keeps_pinned(self):
        service = self.open_service()
        now = self.clock.now()
        old = make_item("old", created_at=now - 40 * DAY)
        kept = make_item("kept", created_at=now - 40 * DAY)
        service.state.feed(SUBSCRIBED).items = [old, kept]
        service.state.feed(PINNED).items = [kept]
        service.saver.request()

        reopened = self.reopen(service)

        self.assertEqual([item.id for item in reopened.state.feed(SUBSCRIBED).items], ["kept"])
        self.assertEqual(reopened.state.pinned_ids(), {"kept"})

    def test_open_recovers_stuck_jobs(self):
        service = self.open_service()
        job = service.scheduler.enqueue(JobKind.FETCH_GLOBAL)
        job.status = JobStatus.PROCESSING
        job.retries = 2
        service.saver.request()

        reopened = self.reopen(service)

        self.assertEqual(reopened.state.jobs[0].status, JobStatus.PENDING)
        self.assertEqual(reopened.state.jobs[0].retries, 0)

    def test_stats(self):
        service = self.open_service()
        service.state.feed(SUBSCRIBED).items = [make_item("1", source_key="a"), make_item("2", source_key="a")]
        service.state.feed(POPULAR).pending = [make_item("3")]

        stats = service.stats()

        self.assertEqual(stats["items"][SUBSCRIBED], 2)
        self.assertEqual(stats["pending"][POPULAR], 1)
        self.assertEqual(stats["per_source"], {"a": 2})
        self.assertEqual(stats["queue"], "Idle")
        self.assertEqual(stats["store_size_bytes"], service.store.serialized_size(service.state))
        self.assertGreater(stats["quota_bytes"], 0)

    def test_import_queues_new_sources(self):
        service = self.open_service()
        service.add_source("python")

        summary = service.import_backup({"version": "1.0", "subreddits": ["Python", "rust"]})

        self.assertEqual(summary.subreddits, ["rust"])
        self.assertEqual([job.source_key for job in service.state.jobs], ["python", "rust"])

    def test_export_backup(self):
        service = self.open_service()
        service.add_source("python")

        backup = service.export_backup()

        self.assertEqual(backup["subreddits"], ["python"])
        self.assertEqual(backup["exportDate"], "1970-04-11T00:00:00+00:00")

    def test_is_new_only_before_first_save(self):
        service = self.open_service()
        self.assertTrue(service.is_new)
        service.add_source("python")

        service = self.reopen(service)

        self.assertFalse(service.is_new)

    def test_close_flushes_pending_save(self):
        service = self.open_service()
        service.add_source("python")

        asyncio.run(service.close())

        store = PersistentStore(self.config.storage.state_path, self.config.rate_limit, clock=self.clock)
        self.assertEqual(store.load().subreddits, ["python"])


if __name__ == "__main__":
    unittest.main()
