"""Incremental merge of fetched items into feeds."""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from feed_cache.models.item import Item
from feed_cache.models.state import GLOBAL_FETCH_KEY, Feed

logger = logging.getLogger(__name__)


def remove_duplicates(items: Iterable[Item]) -> List[Item]:
    """Drop repeated ids, keeping the first occurrence."""
    seen = set()
    unique = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return unique


def _belongs_to(item: Item, source_key: Optional[str]) -> bool:
    return source_key is None or item.source_key.lower() == source_key.lower()


class Merger:
    """
    Stages newly fetched items per feed and applies them on request.

    Staging calls for the same feed are queued behind a per-feed lock, so a
    fetch that completes while another is still staging into that feed waits
    its turn instead of interleaving its read-modify-write of ``pending``.
    """

    def __init__(self, prometheus_exporter=None):
        self.prometheus_exporter = prometheus_exporter
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, feed: Feed) -> asyncio.Lock:
        if feed.name not in self._locks:
            self._locks[feed.name] = asyncio.Lock()
        return self._locks[feed.name]

    @staticmethod
    def new_items_only(
        fetched: Sequence[Item],
        feed: Feed,
        source_key: Optional[str] = None,
    ) -> List[Item]:
        """
        Return the fetched items whose ids the feed has neither applied nor staged.

        Args:
            fetched: Items as returned by the fetch client
            feed: Feed to compare against
            source_key: When given, only this source's items in the feed are compared

        Returns:
            Genuinely new items in fetch order, each id at most once
        """
        existing_ids = {item.id for item in feed.items if _belongs_to(item, source_key)}
        existing_ids.update(item.id for item in feed.pending if _belongs_to(item, source_key))

        new_items = []
        for item in fetched:
            if item.id in existing_ids:
                continue
            existing_ids.add(item.id)
            new_items.append(item)

        if fetched:
            cached = len(fetched) - len(new_items)
            hit_rate = cached / len(fetched) * 100
            logger.debug(
                f"Cache efficiency: {hit_rate:.0f}% ({cached}/{len(fetched)} cached)"
                + (f" for r/{source_key}" if source_key else "")
            )
        return new_items

    async def stage(
        self,
        fetched: Sequence[Item],
        feed: Feed,
        source_key: Optional[str] = None,
    ) -> int:
        """
        Append genuinely new items to the feed's staging sequence.

        Args:
            fetched: Items as returned by the fetch client
            feed: Feed to stage into
            source_key: Source the items were fetched for, None for the global feed

        Returns:
            Number of newly staged items
        """
        async with self._lock_for(feed):
            new_items = self.new_items_only(fetched, feed, source_key)
            label = f"{feed.name}" + (f" (r/{source_key})" if source_key else "")

            if not new_items:
                logger.info(f"No new items for {label} - all {len(fetched)} already cached")
                return 0

            feed.pending = feed.pending + new_items
            newest = max(item.created_at for item in new_items)
            feed.last_fetch[source_key or GLOBAL_FETCH_KEY] = newest

            if self.prometheus_exporter:
                self.prometheus_exporter.record_items_staged(feed.name, len(new_items))

            logger.info(f"Staged {len(new_items)} new items for {label}")
            return len(new_items)

    @staticmethod
    def apply(feed: Feed) -> int:
        """
        Promote staged items into the feed's applied sequence.

        Staged items come first so they win over an applied item with the same
        id; the result is sorted newest first with ties kept in order.

        Args:
            feed: Feed to apply

        Returns:
            Number of items that were staged
        """
        if not feed.pending:
            return 0

        staged = len(feed.pending)
        merged = remove_duplicates(list(feed.pending) + list(feed.items))
        feed.items = sorted(merged, key=lambda item: item.created_at, reverse=True)
        feed.pending = []
        logger.info(f"Applied {staged} staged items to {feed.name} ({len(feed.items)} total)")
        return staged
