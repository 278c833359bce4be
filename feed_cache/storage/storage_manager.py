"""Storage quota detection and eviction of old items."""

import logging
import math
import os
import shutil
from dataclasses import dataclass
from typing import Dict, Optional, Set

from feed_cache.config import StorageConfig
from feed_cache.models.state import PINNED, SUBSCRIBED, Feed

logger = logging.getLogger(__name__)


def format_bytes(size: float) -> str:
    """Human readable byte count."""
    if size < 1024:
        return f"{int(size)} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.2f} MB"


@dataclass
class StorageQuota:
    """Byte ceiling for the snapshot and the bytes it currently occupies."""

    quota_bytes: int
    occupied_bytes: int = 0

    @property
    def usage_percent(self) -> float:
        if self.quota_bytes <= 0:
            return 100.0
        return self.occupied_bytes / self.quota_bytes * 100


class StorageManager:
    """
    Keeps the cached feeds within the storage budget.

    Pinned items are never evicted. Eviction only touches fetched feeds; the
    pinned feed itself is left alone.
    """

    def __init__(self, config: StorageConfig, primary_feed: str = SUBSCRIBED, prometheus_exporter=None):
        """
        Initialize the storage manager.

        Args:
            config: Storage configuration
            primary_feed: Feed whose size determines how much occupancy eviction removes
            prometheus_exporter: Optional Prometheus exporter for metrics
        """
        self.config = config
        self.primary_feed = primary_feed
        self.prometheus_exporter = prometheus_exporter
        self.quota = StorageQuota(quota_bytes=config.default_quota_bytes)

    def detect_quota(self, directory: Optional[str] = None) -> StorageQuota:
        """
        Derive the byte ceiling from the free space reported for ``directory``.

        The result is a fraction of the free space, clamped to the hard safety
        ceiling. Falls back to the configured default if the platform cannot
        report disk usage.
        """
        directory = directory or os.path.dirname(os.path.abspath(self.config.state_path)) or "."
        try:
            _, _, free = shutil.disk_usage(directory)
            available = free * self.config.quota_fraction
        except OSError as e:
            logger.error(f"Could not estimate storage: {str(e)}")
            available = self.config.default_quota_bytes

        self.quota.quota_bytes = int(min(available, self.config.max_safe_storage_bytes))
        logger.info(f"Storage quota: {format_bytes(self.quota.quota_bytes)}")
        return self.quota

    def update_occupied(self, occupied_bytes: int) -> StorageQuota:
        """Record the measured snapshot size."""
        self.quota.occupied_bytes = occupied_bytes
        if self.prometheus_exporter:
            self.prometheus_exporter.set_store_size(occupied_bytes)
            self.prometheus_exporter.set_storage_usage_percent(self.quota.usage_percent)
        return self.quota

    def evict_if_over_threshold(
        self,
        feeds: Dict[str, Feed],
        pinned_ids: Set[str],
        occupied_bytes: Optional[int] = None,
    ) -> int:
        """
        Remove the oldest non-pinned items when the store is nearly full.

        Removes ``eviction_fraction`` of the primary feed's applied count,
        scanning from its oldest end, and mirrors the removal by id in every
        other fetched feed.

        Args:
            feeds: Feeds by name
            pinned_ids: Ids that must never be removed
            occupied_bytes: Measured snapshot size; the last recorded size if None

        Returns:
            Number of distinct ids removed
        """
        if occupied_bytes is not None:
            self.update_occupied(occupied_bytes)

        percent = self.quota.usage_percent
        if percent < self.config.cleanup_threshold_percent:
            return 0

        primary = feeds.get(self.primary_feed)
        if primary is None or not primary.items:
            return 0

        logger.info(f"Storage at {percent:.1f}% - cleaning up")
        remove_count = math.ceil(round(len(primary.items) * self.config.eviction_fraction, 9))

        # Applied items are sorted newest first, so the oldest are at the tail
        removed_ids = set()
        for item in reversed(primary.items):
            if len(removed_ids) >= remove_count:
                break
            if item.id not in pinned_ids:
                removed_ids.add(item.id)

        for name, feed in feeds.items():
            if name == PINNED:
                continue
            feed.items = [item for item in feed.items if item.id not in removed_ids]

        if self.prometheus_exporter:
            self.prometheus_exporter.record_items_evicted("quota", len(removed_ids))
        logger.info(f"Removed {len(removed_ids)} items to free storage")
        return len(removed_ids)

    def evict_by_age(
        self,
        feeds: Dict[str, Feed],
        pinned_ids: Set[str],
        max_age_seconds: float,
        now: float,
    ) -> int:
        """
        Remove non-pinned items older than ``max_age_seconds`` from every fetched feed.

        Returns:
            Number of items removed across feeds
        """
        removed = 0
        for name, feed in feeds.items():
            if name == PINNED:
                continue
            kept = [
                item for item in feed.items
                if item.id in pinned_ids or now - item.created_at <= max_age_seconds
            ]
            removed += len(feed.items) - len(kept)
            feed.items = kept

        if removed:
            if self.prometheus_exporter:
                self.prometheus_exporter.record_items_evicted("age", removed)
            logger.info(f"Removed {removed} items older than {max_age_seconds / 86400:.0f} days")
        return removed
