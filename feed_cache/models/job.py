"""Data model for scheduled sync jobs."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class JobKind(str, Enum):
    """What a job fetches."""

    FETCH_SOURCE = "fetch_source"
    FETCH_GLOBAL = "fetch_global"


class JobStatus(str, Enum):
    """Lifecycle state of a job."""

    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    FAILED_PERMANENTLY = "failed_permanently"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED_PERMANENTLY)

    @property
    def is_runnable(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.FAILED)


@dataclass
class Job:
    """A unit of scheduled work: one fetch for one source or for the global feed."""

    id: str
    kind: JobKind
    source_key: Optional[str]
    status: JobStatus = JobStatus.PENDING
    retries: int = 0
    enqueued_at: float = 0.0
    started_at: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.kind == JobKind.FETCH_GLOBAL:
            return "popular"
        return f"r/{self.source_key}"

    def matches(self, kind: JobKind, source_key: Optional[str]) -> bool:
        """Return True if this job does the same work as (kind, source_key)."""
        if self.kind != kind:
            return False
        if self.source_key is None or source_key is None:
            return self.source_key is source_key
        return self.source_key.lower() == source_key.lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "source_key": self.source_key,
            "status": self.status.value,
            "retries": self.retries,
            "enqueued_at": self.enqueued_at,
            "started_at": self.started_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """
        Rebuild a job from :meth:`to_dict` output.

        Raises:
            ValueError: If the record is missing its id or has an unknown kind/status
        """
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("job record has no id")
        kind = JobKind(data.get("kind"))
        source_key = data.get("source_key")
        if kind == JobKind.FETCH_SOURCE and not source_key:
            raise ValueError(f"job {data['id']!r} has no source")
        started_at = data.get("started_at")
        return cls(
            id=str(data["id"]),
            kind=kind,
            source_key=source_key if kind == JobKind.FETCH_SOURCE else None,
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            retries=max(0, int(data.get("retries") or 0)),
            enqueued_at=float(data.get("enqueued_at") or 0),
            started_at=float(started_at) if started_at is not None else None,
            last_error=data.get("last_error"),
        )
