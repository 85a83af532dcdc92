"""Job records tracked in the ``pipeline_jobs`` table."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class JobKind(str, Enum):
    """Pipeline phases that run as tracked jobs."""
    IMPORT = "import"
    CLASSIFY = "classify"
    CONVERT = "convert"
    ANALYZE = "analyze"
    RESEARCH = "research"


class JobStatus(str, Enum):
    """Job status values."""
    QUEUED = "queued"            # Created, no invocation has started yet
    RUNNING = "running"          # An invocation (or relay of invocations) is working
    PAUSED = "paused"            # Rate limited, resumes after resume_after
    ADVANCING = "advancing"      # Backlog drained, handing over to the next phase
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.ADVANCING)
# Statuses the watchdog considers for staleness; paused jobs wait on resume_after instead.
STALLABLE_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.ADVANCING)

# Email phases run in this order; research is a standalone pipeline.
PHASE_ORDER = [JobKind.IMPORT, JobKind.CLASSIFY, JobKind.CONVERT, JobKind.ANALYZE]


def get_next_kind(kind: JobKind) -> Optional[JobKind]:
    """Return the phase that follows ``kind``, or None for the last one."""
    if kind not in PHASE_ORDER:
        return None
    index = PHASE_ORDER.index(kind)
    if index < len(PHASE_ORDER) - 1:
        return PHASE_ORDER[index + 1]
    return None


@dataclass
class Job:
    """A job row."""
    id: str
    workspace_id: str
    kind: JobKind
    status: JobStatus
    items_total: int = 0
    items_done: int = 0
    items_failed: int = 0
    retry_count: int = 0
    heartbeat_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    resume_after: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    error_message: Optional[str] = None
    cursor: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            kind=JobKind(row["kind"]),
            status=JobStatus(row["status"]),
            items_total=row.get("items_total") or 0,
            items_done=row.get("items_done") or 0,
            items_failed=row.get("items_failed") or 0,
            retry_count=row.get("retry_count") or 0,
            heartbeat_at=parse_timestamp(row.get("heartbeat_at")),
            started_at=parse_timestamp(row.get("started_at")),
            completed_at=parse_timestamp(row.get("completed_at")),
            resume_after=parse_timestamp(row.get("resume_after")),
            updated_at=parse_timestamp(row.get("updated_at")),
            created_at=parse_timestamp(row.get("created_at")),
            error_message=row.get("error_message"),
            cursor=row.get("cursor") or {},
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def percent_complete(self) -> int:
        if self.items_total <= 0:
            return 0
        return min(100, round(100 * self.items_done / self.items_total))

    def summary(self) -> Dict[str, Any]:
        """Fields returned to callers and written to the progress table."""
        return {
            "job_id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "items_total": self.items_total,
            "items_done": self.items_done,
            "items_failed": self.items_failed,
            "retry_count": self.retry_count,
            "percent": self.percent_complete,
        }


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse timestamp from database value."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def to_iso(moment: datetime) -> str:
    """Serialise a timestamp with a fixed width so string comparisons sort correctly."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
