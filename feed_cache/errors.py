"""Exception taxonomy for fetching, syncing and storing feed items."""

from typing import Optional


class FeedCacheError(Exception):
    """Base class for all feed cache errors."""


class FetchError(FeedCacheError):
    """A request for a source could not be completed."""


class FetchTimeout(FetchError):
    """The request did not complete within the configured timeout."""

    def __init__(self, url: str, timeout: float):
        super().__init__(f"Request timeout after {timeout:.1f}s: {url}")
        self.url = url
        self.timeout = timeout


class HttpError(FetchError):
    """The server answered with a non-success status."""

    def __init__(self, status: int, url: Optional[str] = None):
        super().__init__(f"HTTP {status}" + (f" for {url}" if url else ""))
        self.status = status
        self.url = url


class RateLimited(HttpError):
    """The server answered 429 Too Many Requests."""

    def __init__(self, url: Optional[str] = None):
        super().__init__(429, url)


class MalformedResponse(FeedCacheError):
    """The response body could not be parsed into a listing."""


class StorageFull(FeedCacheError):
    """The snapshot does not fit in the storage quota or on disk."""

    def __init__(self, size_bytes: int, quota_bytes: Optional[int] = None):
        if quota_bytes is None:
            message = f"No space left to write {size_bytes} bytes"
        else:
            message = f"Snapshot of {size_bytes} bytes exceeds quota of {quota_bytes} bytes"
        super().__init__(message)
        self.size_bytes = size_bytes
        self.quota_bytes = quota_bytes


class LoadCorrupted(FeedCacheError):
    """The persisted snapshot, or one of its fields, could not be read."""


class InvalidBackup(FeedCacheError):
    """An import document is not a recognizable backup."""
