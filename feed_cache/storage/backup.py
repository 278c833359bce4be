"""Export and import of followed sources, block lists and pinned items."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from feed_cache.clock import Clock
from feed_cache.errors import InvalidBackup
from feed_cache.models.item import Item
from feed_cache.models.state import PINNED, AppState

logger = logging.getLogger(__name__)

BACKUP_VERSION = "1.0"

# Starred posts written by the browser client use Reddit's own key names
_LEGACY_ITEM_KEYS = {"subreddit": "source_key", "created_utc": "created_at"}


@dataclass
class ImportSummary:
    """What an import added to the local state."""

    subreddits: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    blocked_users: List[str] = field(default_factory=list)
    pinned: int = 0

    def describe(self) -> str:
        return (
            f"{len(self.subreddits)} subs, {len(self.blocked)} blocked subs, "
            f"{len(self.blocked_users)} blocked users, {self.pinned} starred"
        )


def export_backup(state: AppState, clock: Optional[Clock] = None) -> Dict[str, Any]:
    """
    Build a self-describing backup document.

    Args:
        state: Application state to export
        clock: Time source for the export date

    Returns:
        JSON-compatible backup mapping
    """
    clock = clock or Clock()
    return {
        "version": BACKUP_VERSION,
        "exportDate": datetime.fromtimestamp(clock.now(), tz=timezone.utc).isoformat(),
        "subreddits": list(state.subreddits),
        "blocked": list(state.blocked),
        "blockedUsers": list(state.blocked_users),
        "starredPosts": [item.to_dict() for item in state.feed(PINNED).items],
    }


def _merge_names(existing: List[str], incoming: Any) -> List[str]:
    """Append names not already present (case-insensitive); returns the added names."""
    if not isinstance(incoming, list):
        return []
    known = {name.lower() for name in existing}
    added = []
    for name in incoming:
        if not isinstance(name, str) or not name.strip():
            continue
        if name.lower() in known:
            continue
        known.add(name.lower())
        existing.append(name)
        added.append(name)
    return added


def _starred_item(record: Any) -> Item:
    """Read a starred post in either this tool's item layout or the browser client's."""
    if isinstance(record, dict) and "source_key" not in record:
        record = dict(record)
        for legacy, key in _LEGACY_ITEM_KEYS.items():
            if legacy in record and key not in record:
                record[key] = record.pop(legacy)
    return Item.from_dict(record)


def import_backup(state: AppState, data: Any) -> ImportSummary:
    """
    Merge a backup document into the local state.

    Entries already present (by name or by item id) are skipped and nothing
    local is ever removed.

    Args:
        state: Application state to merge into
        data: Decoded backup document

    Returns:
        Summary of what was added

    Raises:
        InvalidBackup: If the document carries neither a version nor a source list
    """
    if not isinstance(data, dict) or (not data.get("version") and not data.get("subreddits")):
        raise InvalidBackup("Invalid backup file")

    summary = ImportSummary()
    summary.subreddits = _merge_names(state.subreddits, data.get("subreddits"))
    summary.blocked = _merge_names(state.blocked, data.get("blocked"))
    summary.blocked_users = _merge_names(state.blocked_users, data.get("blockedUsers"))

    starred = data.get("starredPosts")
    if isinstance(starred, list):
        pinned = state.feed(PINNED)
        existing_ids = pinned.ids()
        for record in starred:
            try:
                item = _starred_item(record)
            except ValueError as e:
                logger.warning(f"Skipping unreadable starred post: {str(e)}")
                continue
            if item.id in existing_ids:
                continue
            existing_ids.add(item.id)
            pinned.items.append(item)
            summary.pinned += 1

    logger.info(f"Imported: {summary.describe()}")
    return summary
