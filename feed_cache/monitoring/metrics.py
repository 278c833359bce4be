"""Prometheus metrics for monitoring the feed cache."""

import logging
import time
from typing import Any, Dict, Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# Define metrics
ITEMS_STAGED = Counter(
    "feed_cache_items_staged_total",
    "Total number of new items staged",
    ["feed"],
)

ITEMS_EVICTED = Counter(
    "feed_cache_items_evicted_total",
    "Number of cached items evicted",
    ["reason"],
)

FETCH_OPERATIONS = Counter(
    "feed_cache_fetch_operations_total",
    "Number of fetch operations performed",
    ["operation_type"],
)

API_ERRORS = Counter(
    "feed_cache_api_errors_total",
    "Number of API errors encountered",
    ["error_type"],
)

JOB_RESULTS = Counter(
    "feed_cache_job_results_total",
    "Sync job outcomes",
    ["status"],
)

RATE_LIMIT_REMAINING = Gauge(
    "feed_cache_rate_limit_remaining",
    "Requests left in the current rate limit window",
)

STORE_SIZE_BYTES = Gauge(
    "feed_cache_store_size_bytes",
    "Size of the persisted snapshot in bytes",
)

STORAGE_USAGE_PERCENT = Gauge(
    "feed_cache_storage_usage_percent",
    "Snapshot size as a percentage of the storage quota",
)

REQUEST_DURATION = Histogram(
    "feed_cache_request_duration_seconds",
    "Duration of API requests in seconds",
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 30.0],
)


class PrometheusExporter:
    """Prometheus metrics exporter for the feed cache."""

    def __init__(self, port: int = 8000):
        """
        Initialize the Prometheus exporter.

        Args:
            port: Port to expose metrics on
        """
        self.port = port
        self.server_started = False

    def start_server(self) -> None:
        """Start the Prometheus metrics server."""
        if not self.server_started:
            try:
                start_http_server(self.port)
                self.server_started = True
                logger.info(f"Started Prometheus metrics server on port {self.port}")
            except OSError as e:
                logger.error(f"Failed to start Prometheus metrics server: {str(e)}")

    def record_items_staged(self, feed: str, count: int) -> None:
        ITEMS_STAGED.labels(feed=feed).inc(count)

    def record_items_evicted(self, reason: str, count: int) -> None:
        """
        Record evicted items.

        Args:
            reason: Why the items were evicted ('age' or 'quota')
            count: Number of items removed
        """
        ITEMS_EVICTED.labels(reason=reason).inc(count)

    def record_fetch_operation(self, operation_type: str) -> None:
        FETCH_OPERATIONS.labels(operation_type=operation_type).inc()

    def record_api_error(self, error_type: str) -> None:
        """
        Record an API error.

        Args:
            error_type: Type of API error (e.g., '5xx', '429', 'timeout', 'connection')
        """
        API_ERRORS.labels(error_type=error_type).inc()

    def record_job_result(self, status: str) -> None:
        JOB_RESULTS.labels(status=status).inc()

    def set_rate_limit_remaining(self, remaining: int) -> None:
        RATE_LIMIT_REMAINING.set(remaining)

    def set_store_size(self, size_bytes: int) -> None:
        STORE_SIZE_BYTES.set(size_bytes)

    def set_storage_usage_percent(self, percent: float) -> None:
        STORAGE_USAGE_PERCENT.set(percent)

    def time_request(self) -> "RequestTimer":
        """
        Create a context manager for timing API requests.

        Returns:
            RequestTimer context manager
        """
        return RequestTimer()

    def update_from_stats(self, stats: Dict[str, Any]) -> None:
        """
        Update gauges from a stats dictionary as built by the service.

        Args:
            stats: Dictionary of stats
        """
        if "store_size_bytes" in stats:
            self.set_store_size(stats["store_size_bytes"])
        if "storage_usage_percent" in stats:
            self.set_storage_usage_percent(stats["storage_usage_percent"])
        if "rate_limit_remaining" in stats:
            self.set_rate_limit_remaining(stats["rate_limit_remaining"])


class RequestTimer:
    """Context manager for timing API requests."""

    def __init__(self):
        self.start_time: Optional[float] = None

    def __enter__(self) -> "RequestTimer":
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.start_time is not None:
            duration = time.time() - self.start_time
            REQUEST_DURATION.observe(duration)
