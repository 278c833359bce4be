"""Tests for the listing fetch client."""

import asyncio
import unittest
from unittest.mock import MagicMock

import aiohttp

from feed_cache.collector.fetch_client import FetchClient
from feed_cache.collector.rate_limiter import RateLimiter
from feed_cache.config import FetchConfig, RateLimitConfig
from feed_cache.errors import FetchError, FetchTimeout, HttpError, RateLimited
from tests.fakes import FakeClock, FakeResponse, FakeSession, make_listing, make_post


class TestFetchClient(unittest.TestCase):
    """Test cases for FetchClient."""

    def setUp(self):
        self.clock = FakeClock()
        self.config = FetchConfig(base_url="https://reddit.test", posts_limit=10, request_timeout_sec=5)
        self.rate_limiter = RateLimiter(RateLimitConfig(), clock=self.clock)

    def make_client(self, *responses, exporter=None):
        session = FakeSession(list(responses))
        return FetchClient(self.config, self.rate_limiter, session=session, prometheus_exporter=exporter), session

    def test_url_for(self):
        client, _ = self.make_client(FakeResponse())

        self.assertEqual(client.url_for("python"), "https://reddit.test/r/python.json")
        self.assertEqual(client.url_for(None), "https://reddit.test/r/popular.json")

    def test_fetch_returns_items(self):
        payload = make_listing(make_post("1", subreddit="python"), make_post("2", subreddit="python"))
        client, session = self.make_client(FakeResponse(200, payload))

        items = asyncio.run(client.fetch("python"))

        self.assertEqual([item.id for item in items], ["1", "2"])
        self.assertEqual(session.calls[0]["url"], "https://reddit.test/r/python.json")
        self.assertEqual(session.calls[0]["params"], {"limit": "10", "raw_json": "1"})
        self.assertEqual(session.calls[0]["timeout"].total, 5)
        self.assertEqual(self.rate_limiter.state.request_count, 1)

    def test_rate_limit_headers_are_observed(self):
        headers = {"X-Ratelimit-Remaining": "7", "X-Ratelimit-Reset": "120"}
        client, _ = self.make_client(FakeResponse(200, make_listing(), headers))

        asyncio.run(client.fetch("python"))

        self.assertEqual(self.rate_limiter.state.remaining, 7)
        self.assertEqual(self.rate_limiter.state.window_reset_at, self.clock.now() + 120)

    def test_429_raises_rate_limited(self):
        client, _ = self.make_client(FakeResponse(429, headers={"x-ratelimit-remaining": "0"}))

        with self.assertRaises(RateLimited) as ctx:
            asyncio.run(client.fetch("python"))

        self.assertEqual(ctx.exception.status, 429)
        self.assertEqual(self.rate_limiter.state.remaining, 0)

    def test_server_error_raises_http_error(self):
        client, _ = self.make_client(FakeResponse(503))

        with self.assertRaises(HttpError) as ctx:
            asyncio.run(client.fetch(None))

        self.assertEqual(ctx.exception.status, 503)
        self.assertNotIsInstance(ctx.exception, RateLimited)

    def test_timeout_raises_fetch_timeout(self):
        client, _ = self.make_client(asyncio.TimeoutError())

        with self.assertRaises(FetchTimeout):
            asyncio.run(client.fetch("python"))

    def test_connection_error_raises_fetch_error(self):
        client, _ = self.make_client(aiohttp.ClientConnectionError("refused"))

        with self.assertRaises(FetchError):
            asyncio.run(client.fetch("python"))

    def test_malformed_json_returns_empty(self):
        client, _ = self.make_client(FakeResponse(200, json_error=ValueError("Expecting value")))

        self.assertEqual(asyncio.run(client.fetch("python")), [])

    def test_non_listing_body_returns_empty(self):
        client, _ = self.make_client(FakeResponse(200, {"message": "Not Found"}))

        self.assertEqual(asyncio.run(client.fetch("python")), [])

    def test_metrics_recorded(self):
        exporter = MagicMock()
        client, _ = self.make_client(FakeResponse(503), exporter=exporter)

        with self.assertRaises(HttpError):
            asyncio.run(client.fetch("python"))

        exporter.record_fetch_operation.assert_called_once_with("source")
        exporter.record_api_error.assert_called_once_with("5xx")

    def test_close_leaves_injected_session_open(self):
        client, session = self.make_client(FakeResponse())

        asyncio.run(client.close())

        self.assertFalse(session.closed)


if __name__ == "__main__":
    unittest.main()
