"""Progress summary rows polled by the presentation layer.

The pipeline only ever writes ``email_import_progress``; it never reads it to
make decisions. Failures here are logged and swallowed so a flaky summary
write can not stall a phase.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from postgrest.exceptions import APIError

from src.shared.batch import RETRYABLE_ERRORS

from ..contracts.jobs import Job, to_iso, utc_now

logger = logging.getLogger(__name__)

# Names shown by the presentation layer for each job kind.
PHASE_LABELS = {
    "import": "importing",
    "classify": "classifying",
    "convert": "converting",
    "analyze": "learning",
    "research": "researching",
}


def estimate_seconds_remaining(job: Job, now: datetime) -> Optional[float]:
    """Linear ETA from the job's throughput so far."""
    if job.started_at is None or job.items_done <= 0 or job.items_total <= job.items_done:
        return None
    elapsed = (now - job.started_at).total_seconds()
    if elapsed <= 0:
        return None
    rate = job.items_done / elapsed
    return round((job.items_total - job.items_done) / rate, 1)


class ProgressWriter:
    TABLE_NAME = "email_import_progress"

    def __init__(
        self,
        client,
        *,
        stale_after_seconds: int,
        table_name: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.stale_after_seconds = stale_after_seconds
        self.table_name = table_name or self.TABLE_NAME
        self._clock = clock

    def report(
        self,
        job: Job,
        *,
        phase: Optional[str] = None,
        last_error: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        now = self._clock()
        eta = estimate_seconds_remaining(job, now)
        row: Dict[str, Any] = {
            "workspace_id": job.workspace_id,
            "current_phase": phase or PHASE_LABELS.get(job.kind.value, job.kind.value),
            "phase_status": job.status.value,
            "job_id": job.id,
            "items_done": job.items_done,
            "items_total": job.items_total,
            "percent": job.percent_complete,
            "estimated_seconds_remaining": eta,
            "estimated_completion_at": to_iso(now + timedelta(seconds=eta)) if eta is not None else None,
            "stale_after_seconds": self.stale_after_seconds,
            "last_error": last_error,
            "updated_at": to_iso(now),
        }
        row.update(extra or {})
        try:
            self.client.table(self.table_name).upsert(row, on_conflict="workspace_id").execute()
        except (APIError, *RETRYABLE_ERRORS) as exc:
            logger.warning("Failed to write progress for workspace %s: %s", job.workspace_id, exc)
