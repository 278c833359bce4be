"""Mapping functions to convert Reddit listing JSON to our data models."""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from feed_cache.errors import MalformedResponse
from feed_cache.models.item import Item

logger = logging.getLogger(__name__)

# Reddit DASH videos carry audio in a separate track next to the video file
_DASH_VIDEO_RE = re.compile(r"DASH_\d+\.mp4")
_DASH_AUDIO_FILE = "DASH_AUDIO.mp4"


def unescape_url(url: str) -> str:
    """Undo the ``&amp;`` escaping Reddit applies to media URLs."""
    return url.replace("&amp;", "&")


def _pick_resolution(
    resolutions: Sequence[Dict[str, Any]],
    width_key: str,
    band: Tuple[int, int],
) -> Optional[Dict[str, Any]]:
    """
    Pick the first resolution whose width falls inside ``band``.

    Falls back to the last listed resolution, which Reddit orders by
    increasing size.
    """
    low, high = band
    for resolution in resolutions:
        width = resolution.get(width_key)
        if isinstance(width, (int, float)) and low <= width <= high:
            return resolution
    return resolutions[-1] if resolutions else None


def _gallery_urls(post: Dict[str, Any], band: Tuple[int, int]) -> List[str]:
    """Best image per gallery entry, in gallery order."""
    urls = []
    metadata = post.get("media_metadata") or {}
    for entry in (post.get("gallery_data") or {}).get("items") or []:
        media = metadata.get(entry.get("media_id")) or {}
        chosen = _pick_resolution(media.get("p") or [], "x", band)
        url = chosen.get("u") if chosen else None
        if not url:
            url = (media.get("s") or {}).get("u")
        if url:
            urls.append(unescape_url(url))
    return urls


def _preview_url(post: Dict[str, Any], band: Tuple[int, int]) -> Optional[str]:
    """Best single preview image, falling back to the full-size source."""
    images = (post.get("preview") or {}).get("images") or []
    if not images:
        return None
    preview = images[0] or {}
    chosen = _pick_resolution(preview.get("resolutions") or [], "width", band)
    url = chosen.get("url") if chosen else None
    if not url:
        url = (preview.get("source") or {}).get("url")
    return unescape_url(url) if url else None


def audio_url_for(video_url: str) -> Optional[str]:
    """
    Derive the separate DASH audio track URL for a Reddit video.

    Returns None when the video filename does not follow the ``DASH_<n>.mp4``
    pattern; the audio track is best-effort and may not exist.
    """
    if not _DASH_VIDEO_RE.search(video_url):
        return None
    return _DASH_VIDEO_RE.sub(_DASH_AUDIO_FILE, video_url)


def post_to_item(post: Dict[str, Any], band: Tuple[int, int] = (640, 960)) -> Item:
    """
    Convert one ``data`` object of a Reddit listing child into an Item.

    Args:
        post: The post's ``data`` mapping from the listing JSON
        band: Inclusive (min, max) width in pixels preferred for images

    Returns:
        The normalized Item

    Raises:
        ValueError: If the post has no id
    """
    post_id = post.get("id")
    if not post_id:
        raise ValueError("post has no id")

    if post.get("gallery_data") and post.get("media_metadata"):
        gallery = _gallery_urls(post, band)
    else:
        preview = _preview_url(post, band)
        gallery = [preview] if preview else []

    video_url = None
    audio_url = None
    reddit_video = (post.get("media") or {}).get("reddit_video")
    is_video = bool(post.get("is_video")) or bool(reddit_video)
    if is_video and reddit_video:
        fallback_url = reddit_video.get("fallback_url")
        video_url = fallback_url or reddit_video.get("dash_url")
        if video_url:
            video_url = unescape_url(video_url)
        if fallback_url:
            audio_url = audio_url_for(unescape_url(fallback_url))

    return Item(
        id=str(post_id),
        source_key=str(post.get("subreddit") or ""),
        author=str(post.get("author") or "[deleted]"),
        created_at=float(post.get("created_utc") or 0),
        title=str(post.get("title") or ""),
        permalink=str(post.get("permalink") or ""),
        url=unescape_url(str(post.get("url") or "")),
        selftext=str(post.get("selftext") or ""),
        ups=int(post.get("ups") or 0),
        num_comments=int(post.get("num_comments") or 0),
        is_video=is_video,
        gallery=tuple(gallery),
        video_url=video_url,
        audio_url=audio_url,
    )


def listing_to_items(payload: Any, band: Tuple[int, int] = (640, 960)) -> List[Item]:
    """
    Convert a Reddit listing response into Items.

    Entries that fail to convert are logged and dropped.

    Args:
        payload: Decoded JSON body of a ``/r/<name>.json`` request
        band: Inclusive (min, max) width in pixels preferred for images

    Returns:
        Items in listing order

    Raises:
        MalformedResponse: If the payload is not a listing at all
    """
    try:
        children = payload["data"]["children"]
    except (KeyError, TypeError) as e:
        raise MalformedResponse(f"Response is not a listing: {e}") from e
    if not isinstance(children, list):
        raise MalformedResponse("Listing children is not a list")

    items = []
    for child in children:
        data = child.get("data") if isinstance(child, dict) else None
        if not isinstance(data, dict):
            logger.debug("Skipping listing entry without data")
            continue
        try:
            items.append(post_to_item(data, band))
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Failed to convert post {data.get('id')!r}: {str(e)}")

    return items
