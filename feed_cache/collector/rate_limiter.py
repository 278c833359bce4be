"""Rate limiting functionality for Reddit API requests."""

import logging
from typing import Any, Mapping, Optional

from feed_cache.clock import Clock
from feed_cache.config import RateLimitConfig
from feed_cache.models.state import RateLimitState

logger = logging.getLogger(__name__)

# X-Ratelimit-Reset values below this are seconds until reset, above it epoch seconds
_EPOCH_THRESHOLD = 1_000_000_000


class RateLimiter:
    """
    Rate limiter for Reddit API requests.

    Keeps a rolling per-window request budget plus a minimum spacing between
    requests, and lets X-Ratelimit headers from the server overwrite the local
    estimate.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        state: Optional[RateLimitState] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the rate limiter with configuration.

        Args:
            config: Rate limiting configuration
            state: Persisted rate limit state to continue from (a fresh window if None)
            clock: Time source used for gating decisions and sleeps
        """
        self.config = config
        self.clock = clock or Clock()
        self.state = state or self.fresh_state(config, self.clock.now())

    @staticmethod
    def fresh_state(config: RateLimitConfig, now: float) -> RateLimitState:
        """Build the state for a new, untouched window starting at ``now``."""
        return RateLimitState(
            remaining=config.requests_per_window,
            window_reset_at=now + config.window_sec,
        )

    def _reset_window_if_expired(self, now: float) -> None:
        if now < self.state.window_reset_at:
            return
        self.state.remaining = self.config.requests_per_window
        # Advance by whole windows so a long idle period doesn't leave the reset in the past
        window = self.config.window_sec
        elapsed_windows = int((now - self.state.window_reset_at) // window) + 1
        self.state.window_reset_at += elapsed_windows * window
        logger.debug(f"Rate limit window reset: {self.state.remaining} requests available")

    async def acquire(self) -> None:
        """
        Wait until one more request may be issued, then reserve it.

        This should be called before each Reddit API request.
        """
        while True:
            now = self.clock.now()
            self._reset_window_if_expired(now)

            if self.state.remaining > 0:
                wait_time = self.state.last_request_at + self.config.min_interval_sec - now
                if wait_time > 0:
                    await self.clock.sleep(wait_time)
                    # The spacing is satisfied now; only the window can have changed
                    self._reset_window_if_expired(self.clock.now())
                    if self.state.remaining <= 0:
                        continue
                self._reserve()
                return

            wait_time = max(0.0, self.state.window_reset_at - now) + self.config.sleep_buffer_sec
            logger.info(f"Rate limit reached. Sleeping for {wait_time:.2f}s until reset.")
            await self.clock.sleep(wait_time)

    def _reserve(self) -> None:
        self.state.remaining = max(0, self.state.remaining - 1)
        self.state.last_request_at = self.clock.now()
        self.state.request_count += 1

    def observe(self, remaining: Optional[int] = None, reset_at: Optional[float] = None) -> None:
        """
        Overwrite the local estimate with server-supplied values.

        Either value may be omitted. Safe to call repeatedly and with no
        request in flight.

        Args:
            remaining: Requests the server says are left in the window
            reset_at: Epoch seconds at which the server resets the window
        """
        if remaining is not None:
            self.state.remaining = max(0, int(remaining))
        if reset_at is not None:
            self.state.window_reset_at = float(reset_at)

    def update_from_headers(self, headers: Mapping[str, Any]) -> None:
        """
        Update rate limit tracking based on Reddit API response headers.

        Args:
            headers: Response headers from a Reddit API request
        """
        lowered = {str(k).lower(): v for k, v in headers.items()}
        remaining = None
        reset_at = None

        if "x-ratelimit-remaining" in lowered:
            try:
                remaining = int(float(lowered["x-ratelimit-remaining"]))
            except (ValueError, TypeError):
                logger.warning("Failed to parse x-ratelimit-remaining header")

        if "x-ratelimit-reset" in lowered:
            try:
                reset_value = float(lowered["x-ratelimit-reset"])
                if reset_value < _EPOCH_THRESHOLD:
                    reset_at = self.clock.now() + reset_value
                else:
                    reset_at = reset_value
            except (ValueError, TypeError):
                logger.warning("Failed to parse x-ratelimit-reset header")

        self.observe(remaining, reset_at)

        if remaining is not None and reset_at is not None:
            reset_in = reset_at - self.clock.now()
            logger.debug(f"Rate limit status: {remaining} calls remaining, reset in {reset_in:.2f}s")
