"""Application service wiring the sync engine to the local store."""

import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from feed_cache.clock import Clock
from feed_cache.collector.fetch_client import FetchClient
from feed_cache.collector.rate_limiter import RateLimiter
from feed_cache.collector.scheduler import JobIdGenerator, RunSummary, SyncScheduler
from feed_cache.config import Config
from feed_cache.models.item import Item
from feed_cache.models.job import Job, JobKind
from feed_cache.models.state import PINNED, POPULAR, SUBSCRIBED, AppState, Feed
from feed_cache.storage.backup import ImportSummary, export_backup, import_backup
from feed_cache.storage.merger import Merger
from feed_cache.storage.persistent_store import DebouncedSaver, PersistentStore
from feed_cache.storage.storage_manager import StorageManager

logger = logging.getLogger(__name__)


def normalize_source(name: str) -> str:
    """Strip whitespace and a leading ``r/`` from a user-typed source name."""
    name = name.strip()
    if name.lower().startswith("r/"):
        name = name[2:]
    return name.strip("/")


class FeedCacheService:
    """
    Front door for the CLI: owns the loaded state and every component acting on it.

    Use :meth:`open` to load the snapshot and wire the components, and
    :meth:`close` to flush pending writes and release the HTTP session.
    """

    def __init__(
        self,
        config: Config,
        state: AppState,
        store: PersistentStore,
        storage_manager: StorageManager,
        clock: Optional[Clock] = None,
        session=None,
        id_generator: Optional[JobIdGenerator] = None,
        prometheus_exporter=None,
        on_new_items: Optional[Callable[[List[str]], None]] = None,
        on_job_failed: Optional[Callable[[Job], None]] = None,
    ):
        self.config = config
        self.state = state
        self.store = store
        self.storage_manager = storage_manager
        self.clock = clock or Clock()
        self.prometheus_exporter = prometheus_exporter
        # True when no snapshot existed on disk at open time
        self.is_new = False

        self.saver = DebouncedSaver(store, state, config.storage.save_debounce_sec, self.clock)
        self.rate_limiter = RateLimiter(config.rate_limit, state.rate_limit, self.clock)
        self.fetch_client = FetchClient(config.fetch, self.rate_limiter, session, prometheus_exporter)
        self.merger = Merger(prometheus_exporter)
        self.scheduler = SyncScheduler(
            config.scheduler,
            state,
            self.fetch_client,
            self.merger,
            saver=self.saver,
            clock=self.clock,
            id_generator=id_generator,
            on_new_items=on_new_items,
            on_job_failed=on_job_failed,
            on_applied=self._after_apply,
            prometheus_exporter=prometheus_exporter,
        )

    @classmethod
    def open(cls, config: Config, clock: Optional[Clock] = None, **kwargs: Any) -> "FeedCacheService":
        """
        Load the snapshot and prepare it for use.

        Detects the storage quota, repairs the job queue after a possible
        crash and evicts expired or excess items.

        Args:
            config: Application configuration
            clock: Time source
            **kwargs: Passed through to the constructor

        Returns:
            A ready service
        """
        clock = clock or Clock()
        prometheus_exporter = kwargs.get("prometheus_exporter")
        storage_manager = StorageManager(config.storage, prometheus_exporter=prometheus_exporter)
        storage_manager.detect_quota()
        store = PersistentStore(config.storage.state_path, config.rate_limit, storage_manager, clock)
        is_new = not store.exists()
        state = store.load()

        service = cls(config, state, store, storage_manager, clock=clock, **kwargs)
        service.is_new = is_new
        service.scheduler.recover()
        service.storage_manager.update_occupied(store.occupied_bytes())
        if service.evict_expired() or service.storage_manager.evict_if_over_threshold(
            state.feeds, state.pinned_ids()
        ):
            service.saver.request()
        return service

    async def close(self) -> None:
        """Flush pending writes and close the HTTP session."""
        self.saver.flush()
        await self.fetch_client.close()

    # Sources and block lists

    def add_source(self, name: str) -> bool:
        """Follow a source and queue its first fetch. Returns False if already followed."""
        source = normalize_source(name)
        if not source:
            raise ValueError("source name is empty")
        if self.state.is_following(source):
            logger.info(f"r/{source} already added")
            return False
        self.state.subreddits.append(source)
        self.scheduler.enqueue(JobKind.FETCH_SOURCE, source)
        self.saver.request()
        return True

    def remove_source(self, name: str) -> bool:
        """Unfollow a source and drop its cached items from the subscribed feed."""
        source = normalize_source(name).lower()
        if not self.state.is_following(source):
            return False
        self.state.subreddits[:] = [s for s in self.state.subreddits if s.lower() != source]
        feed = self.state.feed(SUBSCRIBED)
        feed.items = [item for item in feed.items if item.source_key.lower() != source]
        feed.pending = [item for item in feed.pending if item.source_key.lower() != source]
        self.saver.request()
        logger.info(f"Removed r/{source}")
        return True

    def _toggle_name(self, names: List[str], name: str) -> bool:
        lowered = name.lower()
        if any(n.lower() == lowered for n in names):
            names[:] = [n for n in names if n.lower() != lowered]
            self.saver.request()
            return False
        names.append(name)
        self.saver.request()
        return True

    def toggle_block_source(self, name: str) -> bool:
        """Block or unblock a source for the popular feed. Returns True if now blocked."""
        return self._toggle_name(self.state.blocked, normalize_source(name))

    def toggle_block_user(self, name: str) -> bool:
        """Block or unblock an author everywhere. Returns True if now blocked."""
        return self._toggle_name(self.state.blocked_users, name.strip())

    def toggle_pin(self, item_id: str) -> bool:
        """
        Pin or unpin an item.

        Returns:
            True if the item is now pinned

        Raises:
            KeyError: If the item is neither pinned nor cached in a fetched feed
        """
        pinned = self.state.feed(PINNED)
        if pinned.find(item_id) is not None:
            pinned.items = [item for item in pinned.items if item.id != item_id]
            self.saver.request()
            return False

        for name in (SUBSCRIBED, POPULAR):
            item = self.state.feed(name).find(item_id)
            if item is not None:
                pinned.items.append(item)
                self.saver.request()
                return True
        raise KeyError(item_id)

    # Sync

    def queue_refresh(self) -> List[Job]:
        """Queue a fetch for every followed source plus the global feed."""
        queued = [self.scheduler.enqueue(JobKind.FETCH_SOURCE, source) for source in self.state.subreddits]
        queued.append(self.scheduler.enqueue(JobKind.FETCH_GLOBAL))
        return [job for job in queued if job is not None]

    async def sync(self) -> Optional[RunSummary]:
        """Process whatever is queued."""
        summary = await self.scheduler.run()
        if self.prometheus_exporter:
            self.prometheus_exporter.update_from_stats(self.stats())
        return summary

    async def refresh(self) -> Optional[RunSummary]:
        """Queue every source and process the queue."""
        self.queue_refresh()
        return await self.sync()

    def _after_apply(self, feed: Feed) -> None:
        self.evict_expired()
        self.saver.request()

    def apply(self, feed_name: str = SUBSCRIBED) -> int:
        """Promote a feed's staged items. Returns the number of items that were staged."""
        feed = self.state.feed(feed_name)
        applied = self.merger.apply(feed)
        if applied:
            self._after_apply(feed)
        return applied

    def evict_expired(self) -> int:
        max_age = self.config.storage.max_item_age_days * 24 * 60 * 60
        return self.storage_manager.evict_by_age(
            self.state.feeds, self.state.pinned_ids(), max_age, self.clock.now()
        )

    # Views

    def visible_items(self, feed_name: str = SUBSCRIBED) -> List[Item]:
        """Applied items of a feed with block lists applied."""
        blocked_users = {u.lower() for u in self.state.blocked_users}
        blocked_sources = {s.lower() for s in self.state.blocked}
        items = self.state.feed(feed_name).items
        visible = [item for item in items if item.author.lower() not in blocked_users]
        if feed_name == POPULAR:
            visible = [item for item in visible if item.source_key.lower() not in blocked_sources]
        return visible

    def stats(self) -> Dict[str, Any]:
        """Storage, feed and queue figures for status displays."""
        quota = self.storage_manager.update_occupied(self.store.serialized_size(self.state))
        per_source = Counter(item.source_key for item in self.state.feed(SUBSCRIBED).items)
        return {
            "store_size_bytes": quota.occupied_bytes,
            "quota_bytes": quota.quota_bytes,
            "storage_usage_percent": quota.usage_percent,
            "items": {name: len(feed.items) for name, feed in self.state.feeds.items()},
            "pending": {name: len(feed.pending) for name, feed in self.state.feeds.items()},
            "per_source": dict(per_source.most_common()),
            "queue": self.scheduler.status().describe(),
            "rate_limit_remaining": self.state.rate_limit.remaining,
        }

    # Backup

    def export_backup(self) -> Dict[str, Any]:
        return export_backup(self.state, self.clock)

    def import_backup(self, data: Any) -> ImportSummary:
        """Merge a backup and queue fetches for newly followed sources."""
        summary = import_backup(self.state, data)
        for source in summary.subreddits:
            self.scheduler.enqueue(JobKind.FETCH_SOURCE, source)
        self.saver.request()
        return summary
