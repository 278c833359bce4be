"""Single-snapshot JSON persistence for all durable state."""

import errno
import json
import logging
import os
import tempfile
from typing import Any, Callable, Dict, List, Optional, TypeVar

from feed_cache.clock import Clock
from feed_cache.config import RateLimitConfig
from feed_cache.errors import LoadCorrupted, StorageFull
from feed_cache.models.item import Item
from feed_cache.models.job import Job
from feed_cache.models.state import FEED_NAMES, AppState, Feed, RateLimitState

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

T = TypeVar("T")

_NO_SPACE_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def _items_from(records: Any, where: str) -> List[Item]:
    if not isinstance(records, list):
        raise TypeError(f"{where} is not a list")
    items = []
    for record in records:
        try:
            items.append(Item.from_dict(record))
        except ValueError as e:
            logger.warning(f"Dropping unreadable item in {where}: {str(e)}")
    return items


def _feed_from(name: str, data: Any) -> Feed:
    feed = Feed(name)
    if not isinstance(data, dict):
        raise TypeError(f"feed {name} is not an object")
    feed.items = _field(data, "items", lambda v: _items_from(v, f"{name}.items"), list, f"feeds.{name}")
    feed.pending = _field(data, "pending", lambda v: _items_from(v, f"{name}.pending"), list, f"feeds.{name}")
    feed.last_fetch = _field(
        data, "last_fetch", lambda v: {str(k): float(t) for k, t in v.items()}, dict, f"feeds.{name}"
    )
    return feed


def _jobs_from(records: Any) -> List[Job]:
    if not isinstance(records, list):
        raise TypeError("jobs is not a list")
    jobs = []
    for record in records:
        try:
            jobs.append(Job.from_dict(record))
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping unreadable job: {str(e)}")
    return jobs


def _names_from(value: Any) -> List[str]:
    if not isinstance(value, list):
        raise TypeError("expected a list of names")
    return [str(name) for name in value if name]


def _field(
    data: Dict[str, Any],
    key: str,
    parse: Callable[[Any], T],
    default: Callable[[], T],
    where: str = "snapshot",
) -> T:
    """Parse one field, substituting the default if it is missing or malformed."""
    if key not in data or data[key] is None:
        return default()
    try:
        return parse(data[key])
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning(f"Discarding corrupted {where}.{key}: {str(e)}")
        return default()


def state_to_dict(state: AppState) -> Dict[str, Any]:
    """Serialize the whole application state to a JSON-compatible mapping."""
    return {
        "version": SNAPSHOT_VERSION,
        "feeds": {
            name: {
                "items": [item.to_dict() for item in feed.items],
                "pending": [item.to_dict() for item in feed.pending],
                "last_fetch": dict(feed.last_fetch),
            }
            for name, feed in state.feeds.items()
        },
        "subreddits": list(state.subreddits),
        "blocked": list(state.blocked),
        "blocked_users": list(state.blocked_users),
        "jobs": [job.to_dict() for job in state.jobs],
        "rate_limit": {
            "remaining": state.rate_limit.remaining,
            "window_reset_at": state.rate_limit.window_reset_at,
            "last_request_at": state.rate_limit.last_request_at,
            "request_count": state.rate_limit.request_count,
        },
    }


def state_from_dict(data: Any, rate_limit_config: RateLimitConfig, now: float) -> AppState:
    """
    Rebuild application state, field by field.

    A missing or malformed field is replaced by its default; the rest of the
    snapshot is still used.

    Args:
        data: Decoded snapshot
        rate_limit_config: Budget used when the persisted window is missing or expired
        now: Current time, used to detect an expired rate limit window

    Returns:
        The application state
    """
    fresh_rate_limit = RateLimitState(
        remaining=rate_limit_config.requests_per_window,
        window_reset_at=now + rate_limit_config.window_sec,
    )
    if not isinstance(data, dict):
        logger.warning("Discarding corrupted snapshot: not an object, starting empty")
        return AppState(rate_limit=fresh_rate_limit)

    def parse_feeds(value: Any) -> Dict[str, Feed]:
        feeds = {name: Feed(name) for name in FEED_NAMES}
        for name, feed_data in value.items():
            feeds[name] = _field(
                {name: feed_data}, name, lambda v, n=name: _feed_from(n, v), lambda n=name: Feed(n), "feeds"
            )
        return feeds

    def parse_rate_limit(value: Any) -> RateLimitState:
        restored = RateLimitState(
            remaining=max(0, int(value["remaining"])),
            window_reset_at=float(value["window_reset_at"]),
            last_request_at=float(value.get("last_request_at") or 0),
            request_count=int(value.get("request_count") or 0),
        )
        if now >= restored.window_reset_at:
            return fresh_rate_limit
        return restored

    return AppState(
        rate_limit=_field(data, "rate_limit", parse_rate_limit, lambda: fresh_rate_limit),
        feeds=_field(data, "feeds", parse_feeds, lambda: {name: Feed(name) for name in FEED_NAMES}),
        subreddits=_field(data, "subreddits", _names_from, list),
        blocked=_field(data, "blocked", _names_from, list),
        blocked_users=_field(data, "blocked_users", _names_from, list),
        jobs=_field(data, "jobs", _jobs_from, list),
    )


class PersistentStore:
    """
    Loads and saves the application state as one JSON file.

    Writes go to a temporary file that atomically replaces the snapshot, so a
    crash mid-write leaves the previous snapshot intact.
    """

    def __init__(
        self,
        path: str,
        rate_limit_config: RateLimitConfig,
        storage_manager=None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the store.

        Args:
            path: Snapshot file path
            rate_limit_config: Budget for a fresh rate limit window
            storage_manager: Optional manager providing the quota and the eviction pass
                run when a write does not fit
            clock: Time source
        """
        self.path = path
        self.rate_limit_config = rate_limit_config
        self.storage_manager = storage_manager
        self.clock = clock or Clock()

    @staticmethod
    def serialize(state: AppState) -> bytes:
        return json.dumps(state_to_dict(state), separators=(",", ":")).encode("utf-8")

    def serialized_size(self, state: AppState) -> int:
        return len(self.serialize(state))

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def occupied_bytes(self) -> int:
        """Size of the snapshot currently on disk."""
        try:
            return os.path.getsize(self.path)
        except OSError:
            return 0

    def load(self) -> AppState:
        """
        Load the snapshot, tolerating a missing or damaged file.

        Returns:
            The restored state, or a default state if nothing usable was found
        """
        now = self.clock.now()
        if not self.exists():
            logger.info(f"No snapshot at {self.path}, starting empty")
            return state_from_dict({}, self.rate_limit_config, now)

        try:
            data = self._read()
        except LoadCorrupted as e:
            logger.error(f"Discarding snapshot: {str(e)}")
            data = {}

        state = state_from_dict(data, self.rate_limit_config, now)
        total = sum(len(feed.items) for feed in state.feeds.values())
        logger.info(f"Loaded snapshot with {total} items and {len(state.jobs)} jobs")
        return state

    def _read(self) -> Any:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise LoadCorrupted(f"failed to read {self.path}: {str(e)}") from e

    def _check_quota(self, size: int) -> None:
        if self.storage_manager is None:
            return
        quota = self.storage_manager.quota.quota_bytes
        if size > quota:
            raise StorageFull(size, quota)

    def _write(self, data: bytes) -> None:
        self._check_quota(len(data))
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=".snapshot-", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            if e.errno in _NO_SPACE_ERRNOS:
                raise StorageFull(len(data)) from e
            raise

        if self.storage_manager is not None:
            self.storage_manager.update_occupied(len(data))

    def save(self, state: AppState) -> bool:
        """
        Write the snapshot.

        If it does not fit, an eviction pass runs and the write is retried
        once. Failures are logged and reported, never raised.

        Returns:
            True if the snapshot was written
        """
        data = self.serialize(state)
        try:
            self._write(data)
            return True
        except StorageFull as e:
            logger.warning(f"Storage full ({str(e)}), cleaning up old items")
        except OSError as e:
            logger.error(f"Error saving state: {str(e)}")
            return False

        if self.storage_manager is not None:
            self.storage_manager.evict_if_over_threshold(
                state.feeds, state.pinned_ids(), occupied_bytes=len(data)
            )

        data = self.serialize(state)
        try:
            self._write(data)
            return True
        except (StorageFull, OSError) as e:
            logger.error(f"Save failed after cleanup: {str(e)}")
            return False


class DebouncedSaver:
    """
    Coalesces save requests that arrive in quick succession.

    Each :meth:`request` marks the state dirty and pushes the flush deadline
    to ``delay`` seconds from now. :meth:`poll` flushes once the deadline has
    passed; :meth:`flush` writes immediately and must run before shutdown and
    before anything reads the snapshot back.
    """

    def __init__(self, store: PersistentStore, state: AppState, delay: float = 0.5, clock: Optional[Clock] = None):
        self.store = store
        self.state = state
        self.delay = delay
        self.clock = clock or store.clock
        self.dirty = False
        self.deadline: Optional[float] = None
        self.flush_count = 0

    def request(self) -> None:
        self.dirty = True
        self.deadline = self.clock.now() + self.delay

    @property
    def due(self) -> bool:
        return self.dirty and self.deadline is not None and self.clock.now() >= self.deadline

    def poll(self) -> bool:
        """Flush if the deadline has passed. Returns True if a write happened."""
        if not self.due:
            return False
        self.flush()
        return True

    def flush(self) -> bool:
        """Write now if anything is pending. Returns False only if a write failed."""
        if not self.dirty:
            return True
        self.dirty = False
        self.deadline = None
        self.flush_count += 1
        return self.store.save(self.state)

    async def run(self, stop_event) -> None:
        """Flush on schedule until ``stop_event`` is set, then flush whatever is left."""
        while not stop_event.is_set():
            if self.deadline is not None:
                wait = max(0.0, self.deadline - self.clock.now())
            else:
                wait = self.delay
            await self.clock.sleep(wait)
            self.poll()
        self.flush()
