"""Configuration handling for the offline feed cache."""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv


@dataclass
class RateLimitConfig:
    """Rate limiting configuration."""

    requests_per_window: int = 50
    window_sec: float = 60.0
    min_interval_sec: float = 1.2
    sleep_buffer_sec: float = 0.1


@dataclass
class FetchConfig:
    """Remote endpoint configuration."""

    base_url: str = "https://www.reddit.com"
    user_agent: str = "feed_cache/0.1"
    posts_limit: int = 25
    request_timeout_sec: float = 15.0
    image_min_width: int = 640
    image_max_width: int = 960


@dataclass
class SchedulerConfig:
    """Sync queue configuration."""

    max_retries: int = 3
    retry_delay_sec: float = 1.0
    max_job_age_sec: int = 24 * 60 * 60
    # Promote the first fetch into an empty feed without waiting for an apply
    auto_apply_initial: bool = True
    # Configured but not honored: jobs always run one at a time.
    max_concurrent_jobs: int = 3


@dataclass
class StorageConfig:
    """Local snapshot and eviction configuration."""

    state_path: str = "data/feed_cache.json"
    default_quota_bytes: int = 5 * 1024 * 1024
    max_safe_storage_bytes: int = 8 * 1024 * 1024
    quota_fraction: float = 0.8
    cleanup_threshold_percent: float = 90.0
    eviction_fraction: float = 0.2
    max_item_age_days: int = 30
    save_debounce_sec: float = 0.5


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""

    enable_prometheus: bool = False
    prometheus_port: int = 8000


def _apply_section(section: Any, values: Dict[str, Any]) -> None:
    """Copy known keys from a YAML mapping onto a config dataclass."""
    known = {f.name for f in fields(section)}
    for key, value in values.items():
        if key in known:
            setattr(section, key, value)


@dataclass
class Config:
    """Application configuration combining environment variables and YAML config."""

    subreddits: List[str] = field(default_factory=list)
    sync_interval_sec: int = 600
    log_dir: str = "logs"
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    _SECTIONS = ("rate_limit", "fetch", "scheduler", "storage", "monitoring")

    @classmethod
    def from_files(cls, config_path: str, env_path: Optional[str] = None) -> "Config":
        """
        Load configuration from YAML file and environment variables.

        Args:
            config_path: Path to YAML configuration file
            env_path: Optional path to .env file (defaults to .env in current directory)

        Returns:
            Config instance with merged configuration
        """
        if env_path:
            load_dotenv(env_path)
        else:
            load_dotenv()

        config = cls()

        if os.path.exists(config_path):
            with open(config_path, "r", encoding="utf-8") as file:
                yaml_config = yaml.safe_load(file)

            if yaml_config:
                for key, value in yaml_config.items():
                    if key in cls._SECTIONS:
                        if isinstance(value, dict):
                            _apply_section(getattr(config, key), value)
                    elif hasattr(config, key):
                        setattr(config, key, value)

        # Environment wins over the YAML file
        config.fetch.user_agent = os.getenv("FEED_CACHE_USER_AGENT", config.fetch.user_agent)
        config.fetch.base_url = os.getenv("FEED_CACHE_BASE_URL", config.fetch.base_url)
        config.storage.state_path = os.getenv("FEED_CACHE_STATE_PATH", config.storage.state_path)

        state_dir = os.path.dirname(config.storage.state_path)
        if state_dir:
            os.makedirs(state_dir, exist_ok=True)

        return config

    def validate(self) -> List[str]:
        """
        Validate configuration and return a list of validation errors.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if self.rate_limit.requests_per_window <= 0:
            errors.append("rate_limit.requests_per_window must be greater than 0")
        if self.rate_limit.window_sec <= 0:
            errors.append("rate_limit.window_sec must be greater than 0")
        if self.rate_limit.min_interval_sec < 0:
            errors.append("rate_limit.min_interval_sec must not be negative")

        if not self.fetch.base_url:
            errors.append("fetch.base_url must be set")
        if self.fetch.request_timeout_sec <= 0:
            errors.append("fetch.request_timeout_sec must be greater than 0")
        if self.fetch.image_min_width > self.fetch.image_max_width:
            errors.append("fetch.image_min_width must not exceed fetch.image_max_width")

        if self.scheduler.max_retries < 0:
            errors.append("scheduler.max_retries must not be negative")

        if not 0 < self.storage.cleanup_threshold_percent <= 100:
            errors.append("storage.cleanup_threshold_percent must be in (0, 100]")
        if not 0 < self.storage.eviction_fraction <= 1:
            errors.append("storage.eviction_fraction must be in (0, 1]")
        if self.storage.max_item_age_days <= 0:
            errors.append("storage.max_item_age_days must be greater than 0")

        if self.sync_interval_sec < 60:
            errors.append("sync_interval_sec must be at least 60 seconds")

        return errors
