"""Sync job queue: enqueue, sequential processing, retry and crash recovery."""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from feed_cache.clock import Clock
from feed_cache.collector.error_handler import retry_with_backoff
from feed_cache.collector.fetch_client import FetchClient
from feed_cache.config import SchedulerConfig
from feed_cache.errors import FetchError
from feed_cache.models.job import Job, JobKind, JobStatus
from feed_cache.models.state import FETCHED_FEEDS, POPULAR, SUBSCRIBED, AppState, Feed
from feed_cache.storage.merger import Merger

logger = logging.getLogger(__name__)

JobIdGenerator = Callable[[JobKind, Optional[str]], str]


def default_job_id(kind: JobKind, source_key: Optional[str]) -> str:
    return f"{kind.value}-{source_key or POPULAR}-{uuid.uuid4().hex[:12]}"


@dataclass
class QueueStatus:
    """Snapshot of the queue for status displays."""

    running: bool
    processing: Optional[str]
    pending: int
    failed: int

    def describe(self) -> str:
        if self.processing:
            text = f"Syncing {self.processing}"
            if self.pending:
                text += f" ({self.pending} more queued)"
            return text
        if self.pending:
            return f"{self.pending} jobs queued"
        if self.failed:
            return f"{self.failed} jobs failed, will retry"
        return "Idle"


@dataclass
class RunSummary:
    """What one scheduling pass did."""

    completed: List[Job] = field(default_factory=list)
    failed_permanently: List[Job] = field(default_factory=list)
    staged: Dict[str, int] = field(default_factory=dict)
    auto_applied: List[str] = field(default_factory=list)
    notified: List[str] = field(default_factory=list)


class SyncScheduler:
    """
    Owns the job queue stored in the application state and drives it.

    At most one :meth:`run` pass is active at a time and jobs inside a pass
    run strictly one after another, in the order they were enqueued.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        state: AppState,
        fetch_client: FetchClient,
        merger: Merger,
        saver=None,
        clock: Optional[Clock] = None,
        id_generator: Optional[JobIdGenerator] = None,
        on_new_items: Optional[Callable[[List[str]], None]] = None,
        on_job_failed: Optional[Callable[[Job], None]] = None,
        on_applied: Optional[Callable[[Feed], None]] = None,
        prometheus_exporter=None,
    ):
        """
        Initialize the scheduler.

        Args:
            config: Scheduler configuration
            state: Application state holding the job queue and feeds
            fetch_client: Client used to execute fetch jobs
            merger: Merger that stages fetched items
            saver: Optional debounced saver notified of every state change
            clock: Time source for timestamps and backoff delays
            id_generator: Builds job ids from (kind, source_key)
            on_new_items: Called with feed names that gained staged items during a pass
            on_job_failed: Called once for every job that fails permanently
            on_applied: Called after a feed is auto-applied at the end of a pass
            prometheus_exporter: Optional Prometheus exporter for metrics
        """
        self.config = config
        self.state = state
        self.fetch_client = fetch_client
        self.merger = merger
        self.saver = saver
        self.clock = clock or Clock()
        self.id_generator = id_generator or default_job_id
        self.on_new_items = on_new_items
        self.on_job_failed = on_job_failed
        self.on_applied = on_applied
        self.prometheus_exporter = prometheus_exporter
        self.running = False

    def _changed(self) -> None:
        if self.saver is not None:
            self.saver.request()

    @property
    def jobs(self) -> List[Job]:
        return self.state.jobs

    def enqueue(self, kind: JobKind, source_key: Optional[str] = None) -> Optional[Job]:
        """
        Queue a fetch job unless an equivalent one is still outstanding.

        Args:
            kind: Kind of job
            source_key: Source to fetch; required for FETCH_SOURCE, ignored for FETCH_GLOBAL

        Returns:
            The new job, or None if an equivalent non-terminal job exists
        """
        if kind == JobKind.FETCH_SOURCE and not source_key:
            raise ValueError("a source fetch job needs a source key")
        if kind == JobKind.FETCH_GLOBAL:
            source_key = None

        for existing in self.jobs:
            if existing.matches(kind, source_key) and not existing.status.is_terminal:
                logger.info(f"Job already queued: {existing.display_name} ({existing.status.value})")
                return None

        job = Job(
            id=self.id_generator(kind, source_key),
            kind=kind,
            source_key=source_key,
            enqueued_at=self.clock.now(),
        )
        self.jobs.append(job)
        self._changed()
        logger.info(f"Queued job: {job.id}")
        return job

    def prune_expired(self) -> int:
        """Drop jobs older than the maximum job age, whatever their status."""
        now = self.clock.now()
        before = len(self.jobs)
        kept = []
        for job in self.jobs:
            if now - job.enqueued_at > self.config.max_job_age_sec:
                logger.info(f"Removed expired job: {job.id}")
                continue
            kept.append(job)
        self.state.jobs[:] = kept
        removed = before - len(kept)
        if removed:
            self._changed()
        return removed

    def recover(self) -> int:
        """
        Repair the queue after a restart.

        Jobs left in ``processing`` by a previous process go back to
        ``pending`` with their retries cleared, permanently failed leftovers
        are dropped and expired jobs are pruned.

        Returns:
            Number of jobs reset to pending
        """
        reset = 0
        for job in self.jobs:
            if job.status == JobStatus.PROCESSING:
                logger.warning(f"Reset stuck processing job: {job.id}")
                job.status = JobStatus.PENDING
                job.retries = 0
                job.started_at = None
                reset += 1

        before = len(self.jobs)
        self.state.jobs[:] = [j for j in self.jobs if j.status != JobStatus.FAILED_PERMANENTLY]
        self.prune_expired()

        if reset or len(self.jobs) != before:
            logger.info(f"Sync queue cleanup: {before} -> {len(self.jobs)} jobs")
            self._changed()
        return reset

    def status(self) -> QueueStatus:
        processing = next((j for j in self.jobs if j.status == JobStatus.PROCESSING), None)
        return QueueStatus(
            running=self.running,
            processing=processing.display_name if processing else None,
            pending=sum(1 for j in self.jobs if j.status == JobStatus.PENDING),
            failed=sum(1 for j in self.jobs if j.status == JobStatus.FAILED),
        )

    def _next_job(self) -> Optional[Job]:
        return next((j for j in self.jobs if j.status.is_runnable), None)

    def _feed_for(self, job: Job) -> Feed:
        return self.state.feed(SUBSCRIBED if job.kind == JobKind.FETCH_SOURCE else POPULAR)

    async def _execute(self, job: Job, summary: RunSummary) -> bool:
        """
        Fetch and stage one job's items.

        The inner retry budget shrinks as the job's own retries grow, so the
        total number of requests a job can make stays bounded.
        """
        max_retries = self.config.max_retries
        inner_retries = max(0, min(max_retries, max_retries - (job.retries - 1)))
        source_key = job.source_key if job.kind == JobKind.FETCH_SOURCE else None

        try:
            items = await retry_with_backoff(
                lambda: self.fetch_client.fetch(source_key),
                max_retries=inner_retries,
                initial_backoff=self.config.retry_delay_sec,
                clock=self.clock,
                label=job.display_name,
            )
            feed = self._feed_for(job)
            staged = await self.merger.stage(items, feed, source_key)
        except FetchError as e:
            job.last_error = str(e)
            return False
        except Exception as e:
            logger.error(f"Job {job.id} execution failed: {str(e)}", exc_info=True)
            job.last_error = str(e)
            return False

        if staged:
            summary.staged[feed.name] = summary.staged.get(feed.name, 0) + staged
            self._changed()
        job.last_error = None
        return True

    def _record(self, status: JobStatus) -> None:
        if self.prometheus_exporter:
            self.prometheus_exporter.record_job_result(status.value)

    async def run(self) -> Optional[RunSummary]:
        """
        Drain the queue.

        Returns immediately with None if a pass is already in flight; callers
        re-trigger once it finishes if new work arrived.

        Returns:
            Summary of the pass, or None if another pass was running
        """
        if self.running:
            logger.info("Already processing queue, skipping")
            return None

        self.running = True
        summary = RunSummary()
        logger.info(f"Starting queue processing with {len(self.jobs)} jobs")

        try:
            self.prune_expired()

            while True:
                job = self._next_job()
                if job is None:
                    break

                if job.retries >= self.config.max_retries:
                    logger.error(f"Job {job.id} exceeded max retries: {job.last_error}")
                    job.status = JobStatus.FAILED_PERMANENTLY
                    summary.failed_permanently.append(job)
                    self._record(job.status)
                    if self.on_job_failed:
                        self.on_job_failed(job)
                    self._changed()
                    continue

                logger.info(f"Processing job: {job.id} ({job.display_name})")
                job.status = JobStatus.PROCESSING
                job.started_at = self.clock.now()
                job.retries += 1
                self._changed()

                if await self._execute(job, summary):
                    logger.info(f"Job {job.id} completed successfully")
                    job.status = JobStatus.COMPLETED
                    summary.completed.append(job)
                else:
                    logger.warning(f"Job {job.id} failed: {job.last_error}")
                    job.status = JobStatus.FAILED
                self._record(job.status)
                self._changed()

            self.state.jobs[:] = [j for j in self.jobs if not j.status.is_terminal]
            logger.info(f"Queue processing complete. Remaining jobs: {len(self.jobs)}")
        finally:
            self.running = False
            if self.saver is not None:
                self.saver.request()
                self.saver.flush()

        self._finish(summary)
        return summary

    def _finish(self, summary: RunSummary) -> None:
        """Auto-apply first fetches into empty feeds and announce staged items elsewhere."""
        for name in FETCHED_FEEDS:
            feed = self.state.feed(name)
            if self.config.auto_apply_initial and not feed.items and feed.pending:
                logger.info(f"Initial {name} fetch complete - auto-applying items")
                self.merger.apply(feed)
                summary.auto_applied.append(name)
                if self.on_applied:
                    self.on_applied(feed)

        if summary.auto_applied and self.saver is not None:
            self.saver.request()
            self.saver.flush()

        summary.notified = [
            name for name in summary.staged
            if name not in summary.auto_applied and self.state.feed(name).pending
        ]
        if summary.notified and self.on_new_items:
            self.on_new_items(summary.notified)
