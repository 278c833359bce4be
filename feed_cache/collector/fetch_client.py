"""HTTP client that fetches a source listing and normalizes it into Items."""

import asyncio
import logging
from contextlib import nullcontext
from typing import List, Optional

import aiohttp

from feed_cache.collector.rate_limiter import RateLimiter
from feed_cache.config import FetchConfig
from feed_cache.errors import FetchError, FetchTimeout, HttpError, MalformedResponse, RateLimited
from feed_cache.models.item import Item
from feed_cache.models.mapping import listing_to_items
from feed_cache.models.state import POPULAR

logger = logging.getLogger(__name__)


class FetchClient:
    """Client for the public Reddit JSON listings with rate limiting and timeouts."""

    def __init__(
        self,
        config: FetchConfig,
        rate_limiter: RateLimiter,
        session: Optional[aiohttp.ClientSession] = None,
        prometheus_exporter=None,
    ):
        """
        Initialize the fetch client.

        Args:
            config: Remote endpoint configuration
            rate_limiter: Rate limiter gating every request
            session: Optional session to reuse; one is created lazily otherwise
            prometheus_exporter: Optional Prometheus exporter for metrics
        """
        self.config = config
        self.rate_limiter = rate_limiter
        self.prometheus_exporter = prometheus_exporter
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"User-Agent": self.config.user_agent})
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the underlying session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "FetchClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def url_for(self, source_key: Optional[str]) -> str:
        """Listing URL for a source, or for the global feed when ``source_key`` is None."""
        name = source_key or POPULAR
        return f"{self.config.base_url.rstrip('/')}/r/{name}.json"

    def _record_error(self, error_type: str) -> None:
        if self.prometheus_exporter:
            self.prometheus_exporter.record_api_error(error_type)

    async def fetch(self, source_key: Optional[str] = None) -> List[Item]:
        """
        Fetch the newest listing for a source and normalize it.

        Args:
            source_key: Subreddit name, or None for the global popular feed

        Returns:
            Items in listing order; empty if the body could not be parsed

        Raises:
            FetchTimeout: If the request did not complete in time
            RateLimited: If the server answered 429
            HttpError: If the server answered with any other non-success status
            FetchError: If the connection failed
        """
        url = self.url_for(source_key)
        params = {"limit": str(self.config.posts_limit), "raw_json": "1"}
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_sec)

        await self.rate_limiter.acquire()
        session = await self._get_session()

        if self.prometheus_exporter:
            self.prometheus_exporter.record_fetch_operation("source" if source_key else "global")
            timer = self.prometheus_exporter.time_request()
        else:
            timer = None

        try:
            with timer if timer else nullcontext():
                async with session.get(url, params=params, timeout=timeout) as response:
                    self.rate_limiter.update_from_headers(response.headers)

                    if response.status == 429:
                        self._record_error("429")
                        raise RateLimited(url)
                    if not 200 <= response.status < 300:
                        self._record_error("5xx" if response.status >= 500 else str(response.status))
                        raise HttpError(response.status, url)

                    try:
                        payload = await response.json(content_type=None)
                    except ValueError as e:
                        logger.warning(f"Malformed JSON from {url}: {str(e)}")
                        self._record_error("malformed")
                        return []
        except asyncio.TimeoutError as e:
            self._record_error("timeout")
            raise FetchTimeout(url, self.config.request_timeout_sec) from e
        except aiohttp.ClientError as e:
            self._record_error("connection")
            raise FetchError(f"Connection error for {url}: {str(e)}") from e

        try:
            items = listing_to_items(
                payload, (self.config.image_min_width, self.config.image_max_width)
            )
        except MalformedResponse as e:
            logger.warning(f"Ignoring response from {url}: {str(e)}")
            self._record_error("malformed")
            return []

        logger.debug(f"Fetched {len(items)} items from {url}")
        return items
