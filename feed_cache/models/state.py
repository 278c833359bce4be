"""Feeds, rate-limit state and the application state that holds them."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from feed_cache.models.item import Item
from feed_cache.models.job import Job

SUBSCRIBED = "subscribed"
POPULAR = "popular"
PINNED = "pinned"

FEED_NAMES = (SUBSCRIBED, POPULAR, PINNED)

# Feeds filled by sync jobs; the pinned feed is only changed by the user.
FETCHED_FEEDS = (SUBSCRIBED, POPULAR)

# last_fetch key used for the global pseudo-source
GLOBAL_FETCH_KEY = "_popular"


@dataclass
class Feed:
    """
    One logical view of cached items.

    ``items`` is the applied sequence shown to the user, ``pending`` holds
    fetched items waiting for an explicit apply, and ``last_fetch`` maps a
    source key to the newest ``created_at`` staged from it.
    """

    name: str
    items: List[Item] = field(default_factory=list)
    pending: List[Item] = field(default_factory=list)
    last_fetch: Dict[str, float] = field(default_factory=dict)

    def ids(self) -> Set[str]:
        return {item.id for item in self.items}

    def find(self, item_id: str) -> Optional[Item]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


@dataclass
class RateLimitState:
    """Rolling request budget shared by every request to the remote API."""

    remaining: int
    window_reset_at: float
    last_request_at: float = 0.0
    request_count: int = 0


@dataclass
class AppState:
    """
    Everything that survives a restart.

    Each component receives this struct (or the part it owns) explicitly:
    the scheduler owns ``jobs``, the merger owns the feeds' applied/pending
    transitions and the persistent store owns serialization of the whole.
    """

    rate_limit: RateLimitState
    feeds: Dict[str, Feed] = field(default_factory=lambda: {name: Feed(name) for name in FEED_NAMES})
    subreddits: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    blocked_users: List[str] = field(default_factory=list)
    jobs: List[Job] = field(default_factory=list)

    def feed(self, name: str) -> Feed:
        if name not in self.feeds:
            self.feeds[name] = Feed(name)
        return self.feeds[name]

    def pinned_ids(self) -> Set[str]:
        return self.feed(PINNED).ids()

    def is_following(self, source_key: str) -> bool:
        return any(s.lower() == source_key.lower() for s in self.subreddits)
