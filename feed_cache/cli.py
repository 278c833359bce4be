"""Command-line interface for the offline feed cache."""

import asyncio
import json
import logging
import logging.config
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import typer
from typing_extensions import Annotated

from feed_cache.config import Config
from feed_cache.errors import InvalidBackup
from feed_cache.models.job import Job
from feed_cache.models.state import FEED_NAMES, SUBSCRIBED
from feed_cache.monitoring.metrics import PrometheusExporter
from feed_cache.service import FeedCacheService, normalize_source

app = typer.Typer(help="Offline feed cache - sync Reddit listings into a local, de-duplicated store")

logger = logging.getLogger(__name__)

ConfigOption = Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")]
LogLevelOption = Annotated[str, typer.Option("--loglevel", "-l", help="Logging level")]


def setup_logging(log_level: str = "INFO", log_dir: str = "logs") -> None:
    """
    Set up logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for the rotating log file
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "standard",
                "stream": "ext://sys.stderr",
            },
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": log_level,
                "formatter": "standard",
                "filename": str(Path(log_dir) / "feed_cache.log"),
                "maxBytes": 10485760,  # 10 MB
                "backupCount": 5,
                "encoding": "utf8",
            },
        },
        "loggers": {
            "": {
                "handlers": ["console", "file"],
                "level": log_level,
                "propagate": True
            },
            "asyncio": {
                "level": "WARNING",
            },
            "aiohttp": {
                "level": "WARNING",
            },
        }
    }

    logging.config.dictConfig(log_config)


def load_config(config_path: str, log_level: str) -> Config:
    """Load and validate configuration, exiting on errors."""
    config = Config.from_files(config_path)
    setup_logging(log_level, config.log_dir)

    validation_errors = config.validate()
    if validation_errors:
        for error in validation_errors:
            logger.error(f"Configuration error: {error}")
        logger.critical("Invalid configuration, aborting")
        sys.exit(1)
    return config


def announce_new_items(feed_names: List[str]) -> None:
    feeds = ", ".join(feed_names)
    typer.echo(f"New items available in: {feeds}. Run 'apply' to show them.")


def announce_failure(job: Job) -> None:
    typer.echo(f"Sync of {job.display_name} failed permanently: {job.last_error}", err=True)


def open_service(config: Config, prometheus_exporter=None) -> FeedCacheService:
    service = FeedCacheService.open(
        config,
        prometheus_exporter=prometheus_exporter,
        on_new_items=announce_new_items,
        on_job_failed=announce_failure,
    )
    # Sources from the config file only seed a brand-new snapshot; afterwards the stored list wins
    if not service.is_new:
        return service
    for source in config.subreddits:
        if not service.state.is_following(source):
            service.add_source(source)
    return service


def _close(service: FeedCacheService) -> None:
    asyncio.run(service.close())


async def run_sync(service: FeedCacheService, daemon: bool, interval_sec: int) -> None:
    """
    Refresh every source once, or repeatedly in daemon mode.

    Args:
        service: Opened service
        daemon: Keep refreshing every ``interval_sec`` until interrupted
        interval_sec: Seconds between refreshes in daemon mode
    """
    shutdown_event = asyncio.Event()

    if daemon:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, shutdown_event.set)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                pass

    saver_task = asyncio.create_task(service.saver.run(shutdown_event))
    try:
        while True:
            summary = await service.refresh()
            if summary is not None:
                logger.info(
                    f"Sync pass done: {len(summary.completed)} completed, "
                    f"{len(summary.failed_permanently)} failed permanently"
                )
            if not daemon:
                break
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval_sec)
            except asyncio.TimeoutError:
                continue
            break
    finally:
        shutdown_event.set()
        await saver_task
        await service.close()


@app.command()
def add(
    sources: Annotated[List[str], typer.Argument(help="Subreddits to follow")],
    config: ConfigOption = "config.yaml",
    loglevel: LogLevelOption = "WARNING",
) -> None:
    """Follow one or more subreddits and queue their first fetch."""
    config_obj = load_config(config, loglevel)
    service = open_service(config_obj)
    try:
        for source in sources:
            name = normalize_source(source)
            if not name:
                typer.echo(f"Ignoring empty source name {source!r}", err=True)
                continue
            if service.add_source(source):
                typer.echo(f"Added r/{name}")
            else:
                typer.echo(f"r/{name} already added")
    finally:
        _close(service)


@app.command()
def remove(
    source: Annotated[str, typer.Argument(help="Subreddit to unfollow")],
    config: ConfigOption = "config.yaml",
    loglevel: LogLevelOption = "WARNING",
) -> None:
    """Unfollow a subreddit and delete its cached items."""
    config_obj = load_config(config, loglevel)
    service = open_service(config_obj)
    try:
        if service.remove_source(source):
            typer.echo(f"Removed r/{source}")
        else:
            typer.echo(f"r/{source} is not followed", err=True)
            raise typer.Exit(code=1)
    finally:
        _close(service)


@app.command()
def sources(
    config: ConfigOption = "config.yaml",
    loglevel: LogLevelOption = "WARNING",
) -> None:
    """List followed and blocked subreddits and blocked users."""
    config_obj = load_config(config, loglevel)
    service = open_service(config_obj)
    try:
        for source in service.state.subreddits:
            typer.echo(f"r/{source}")
        for source in service.state.blocked:
            typer.echo(f"r/{source} (blocked)")
        for user in service.state.blocked_users:
            typer.echo(f"u/{user} (blocked)")
    finally:
        _close(service)


@app.command()
def sync(
    config: ConfigOption = "config.yaml",
    daemon: Annotated[bool, typer.Option("--daemon", "-d", help="Keep syncing on an interval")] = False,
    apply_now: Annotated[bool, typer.Option("--apply", "-a", help="Apply staged items after syncing")] = False,
    loglevel: LogLevelOption = "INFO",
) -> None:
    """Fetch new items for every followed subreddit and the popular feed."""
    config_obj = load_config(config, loglevel)

    prometheus_exporter = None
    if config_obj.monitoring.enable_prometheus:
        prometheus_exporter = PrometheusExporter(port=config_obj.monitoring.prometheus_port)
        prometheus_exporter.start_server()

    service = open_service(config_obj, prometheus_exporter)
    logger.info(f"Starting sync (daemon={daemon})")
    try:
        asyncio.run(run_sync(service, daemon, config_obj.sync_interval_sec))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        service.saver.flush()

    if apply_now:
        for name in FEED_NAMES:
            service.apply(name)
        service.saver.flush()
    typer.echo(service.scheduler.status().describe())


@app.command()
def apply(
    feed: Annotated[str, typer.Option("--feed", "-f", help="Feed to apply")] = SUBSCRIBED,
    config: ConfigOption = "config.yaml",
    loglevel: LogLevelOption = "WARNING",
) -> None:
    """Show staged items by merging them into the feed."""
    config_obj = load_config(config, loglevel)
    service = open_service(config_obj)
    try:
        count = service.apply(feed)
        typer.echo(f"Applied {count} new items to {feed}" if count else f"No new items for {feed}")
    finally:
        _close(service)


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


@app.command()
def show(
    feed: Annotated[str, typer.Option("--feed", "-f", help="Feed to show")] = SUBSCRIBED,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of items to show")] = 25,
    source: Annotated[Optional[str], typer.Option("--source", "-s", help="Only items from this subreddit")] = None,
    config: ConfigOption = "config.yaml",
    loglevel: LogLevelOption = "WARNING",
) -> None:
    """Print the newest cached items of a feed."""
    config_obj = load_config(config, loglevel)
    service = open_service(config_obj)
    try:
        items = service.visible_items(feed)
        if source:
            items = [item for item in items if item.source_key.lower() == source.lower()]
        pinned_ids = service.state.pinned_ids()
        for item in items[:limit]:
            marker = "*" if item.id in pinned_ids else " "
            typer.echo(
                f"{marker} {item.id}  {_format_time(item.created_at)}  r/{item.source_key}  "
                f"{item.ups} pts  {item.num_comments} comments  {item.title}"
            )
        pending = len(service.state.feed(feed).pending)
        if pending:
            typer.echo(f"{pending} new items staged, run 'apply' to show them")
    finally:
        _close(service)


@app.command()
def pin(
    item_id: Annotated[str, typer.Argument(help="Id of the item to pin or unpin")],
    config: ConfigOption = "config.yaml",
    loglevel: LogLevelOption = "WARNING",
) -> None:
    """Pin an item so it is never evicted, or unpin it."""
    config_obj = load_config(config, loglevel)
    service = open_service(config_obj)
    try:
        try:
            pinned = service.toggle_pin(item_id)
        except KeyError:
            typer.echo(f"No cached item with id {item_id}", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Pinned {item_id}" if pinned else f"Unpinned {item_id}")
    finally:
        _close(service)


@app.command()
def block(
    name: Annotated[str, typer.Argument(help="Subreddit (or user with --user) to block or unblock")],
    user: Annotated[bool, typer.Option("--user", "-u", help="Block an author instead of a subreddit")] = False,
    config: ConfigOption = "config.yaml",
    loglevel: LogLevelOption = "WARNING",
) -> None:
    """Toggle a block on a subreddit (popular feed) or an author (all feeds)."""
    config_obj = load_config(config, loglevel)
    service = open_service(config_obj)
    try:
        if user:
            blocked = service.toggle_block_user(name)
            label = f"u/{name}"
        else:
            blocked = service.toggle_block_source(name)
            label = f"r/{normalize_source(name)}"
        typer.echo(f"Blocked {label}" if blocked else f"Unblocked {label}")
    finally:
        _close(service)


@app.command()
def status(
    config: ConfigOption = "config.yaml",
    output_format: Annotated[str, typer.Option("--format", "-f", help="Output format (text or json)")] = "text",
    loglevel: LogLevelOption = "WARNING",
) -> None:
    """Show storage usage, cached item counts and the sync queue."""
    config_obj = load_config(config, loglevel)
    service = open_service(config_obj)
    try:
        stats = service.stats()
    finally:
        _close(service)

    if output_format.lower() == "json":
        typer.echo(json.dumps(stats, indent=2))
        return

    typer.echo(
        f"Storage: {stats['store_size_bytes']} / {stats['quota_bytes']} bytes "
        f"({stats['storage_usage_percent']:.1f}%)"
    )
    for name, count in stats["items"].items():
        typer.echo(f"{name}: {count} cached, {stats['pending'][name]} staged")
    for source, count in stats["per_source"].items():
        typer.echo(f"  r/{source}: {count}")
    typer.echo(f"Queue: {stats['queue']}")


@app.command("export")
def export_command(
    output: Annotated[str, typer.Option("--output", "-o", help="Backup file to write")] = "feed-cache-backup.json",
    config: ConfigOption = "config.yaml",
    loglevel: LogLevelOption = "WARNING",
) -> None:
    """Export followed subreddits, block lists and pinned items."""
    config_obj = load_config(config, loglevel)
    service = open_service(config_obj)
    try:
        data = service.export_backup()
    finally:
        _close(service)

    with open(output, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    typer.echo(f"Backup exported to {output}")


@app.command("import")
def import_command(
    path: Annotated[str, typer.Argument(help="Backup file to import")],
    config: ConfigOption = "config.yaml",
    loglevel: LogLevelOption = "WARNING",
) -> None:
    """Merge a backup into the local state without removing anything."""
    config_obj = load_config(config, loglevel)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        typer.echo(f"Error reading file: {str(e)}", err=True)
        raise typer.Exit(code=1)

    service = open_service(config_obj)
    try:
        summary = service.import_backup(data)
    except InvalidBackup as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    finally:
        _close(service)
    typer.echo(f"Imported: {summary.describe()}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
