"""Data model for a normalized feed item."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class Item:
    """
    A normalized post as cached locally.

    Items are immutable once fetched; pin state is tracked by the pinned feed,
    not on the item.
    """

    id: str  # Reddit's base36 ID without the ``t3_`` prefix
    source_key: str  # Subreddit name the post belongs to
    author: str
    created_at: float  # Creation time (UTC) as a Unix timestamp
    title: str
    permalink: str = ""
    url: str = ""
    selftext: str = ""
    ups: int = 0
    num_comments: int = 0
    is_video: bool = False
    gallery: Tuple[str, ...] = field(default_factory=tuple)
    video_url: Optional[str] = None
    audio_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible mapping."""
        data = asdict(self)
        data["gallery"] = list(self.gallery)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        """
        Rebuild an item from :meth:`to_dict` output.

        Raises:
            ValueError: If the mapping lacks an id or has unusable field types
        """
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("item record has no id")
        try:
            return cls(
                id=str(data["id"]),
                source_key=str(data.get("source_key") or ""),
                author=str(data.get("author") or "[deleted]"),
                created_at=float(data.get("created_at") or 0),
                title=str(data.get("title") or ""),
                permalink=str(data.get("permalink") or ""),
                url=str(data.get("url") or ""),
                selftext=str(data.get("selftext") or ""),
                ups=int(data.get("ups") or 0),
                num_comments=int(data.get("num_comments") or 0),
                is_video=bool(data.get("is_video", False)),
                gallery=tuple(str(u) for u in data.get("gallery") or ()),
                video_url=data.get("video_url"),
                audio_url=data.get("audio_url"),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"item {data.get('id')!r} is malformed: {e}") from e
