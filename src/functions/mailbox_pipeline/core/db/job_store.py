"""Job record store backed by the ``pipeline_jobs`` table.

Every status change is a conditional update: the ``UPDATE`` is filtered on
the statuses the caller expects, and an empty result means another invocation
won the race. Terminal statuses are never part of an expected set, so a
completed, failed or cancelled job can not be revived through this store.

Usage:
    store = JobStore(client)
    job = store.create_or_reset_job(workspace_id, JobKind.IMPORT, items_total=1000)
    store.transition(job.id, JobStatus.RUNNING, from_statuses=[JobStatus.QUEUED])
    store.update_progress(job.id, 50, cursor={"offset": 50})
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from src.shared.batch import retry_on_network_error

from ..contracts.jobs import (
    ACTIVE_STATUSES,
    STALLABLE_STATUSES,
    Job,
    JobKind,
    JobStatus,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

SUPERSEDED_MESSAGE = "superseded"
_PROGRESS_CAS_ATTEMPTS = 8


class JobStore:
    """Read and mutate pipeline job rows."""

    TABLE_NAME = "pipeline_jobs"

    def __init__(
        self,
        client,
        *,
        table_name: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.table_name = table_name or self.TABLE_NAME
        self._clock = clock

    def _table(self):
        return self.client.table(self.table_name)

    def _rows(self, query) -> List[Dict[str, Any]]:
        response = retry_on_network_error(query.execute)
        return getattr(response, "data", None) or []

    def _now(self) -> str:
        return to_iso(self._clock())

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_or_reset_job(
        self,
        workspace_id: str,
        kind: JobKind,
        *,
        items_total: int = 0,
        cursor: Optional[Dict[str, Any]] = None,
        reset: bool = False,
    ) -> Job:
        """Return the active job for (workspace, kind), or start a fresh one.

        With ``reset`` the active jobs are superseded and a new queued job is
        inserted. Without it the call is idempotent: an existing non-terminal
        job is returned untouched.
        """
        active = self.list_active_jobs(workspace_id, kind)
        if active and not reset:
            return active[0]

        for job in active:
            self.fail(job.id, SUPERSEDED_MESSAGE)

        now = self._now()
        row = {
            "workspace_id": workspace_id,
            "kind": kind.value,
            "status": JobStatus.QUEUED.value,
            "items_total": items_total,
            "items_done": 0,
            "items_failed": 0,
            "retry_count": 0,
            "cursor": cursor or {},
            "heartbeat_at": now,
            "started_at": now,
            "created_at": now,
            "updated_at": now,
        }
        created = self._rows(self._table().insert(row))
        job = Job.from_row(created[0])
        logger.info("Created %s job %s for workspace %s (total=%s)", kind.value, job.id, workspace_id, items_total)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        rows = self._rows(self._table().select("*").eq("id", job_id).limit(1))
        return Job.from_row(rows[0]) if rows else None

    def list_active_jobs(self, workspace_id: str, kind: Optional[JobKind] = None) -> List[Job]:
        """Non-terminal jobs for a workspace, most recently updated first."""
        query = (
            self._table()
            .select("*")
            .eq("workspace_id", workspace_id)
            .in_("status", _values(ACTIVE_STATUSES))
        )
        if kind is not None:
            query = query.eq("kind", kind.value)
        rows = self._rows(query.order("updated_at", desc=True))
        return [Job.from_row(row) for row in rows]

    def find_active_job(self, workspace_id: str, kind: JobKind) -> Optional[Job]:
        active = self.list_active_jobs(workspace_id, kind)
        return active[0] if active else None

    def list_recent_jobs(self, workspace_id: str, limit: int = 20) -> List[Job]:
        rows = self._rows(
            self._table()
            .select("*")
            .eq("workspace_id", workspace_id)
            .order("created_at", desc=True)
            .limit(limit)
        )
        return [Job.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Conditional mutations
    # ------------------------------------------------------------------

    def transition(
        self,
        job_id: str,
        to_status: JobStatus,
        *,
        from_statuses: Optional[Iterable[JobStatus]] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[Job]:
        """Move a job to ``to_status`` if it is currently in ``from_statuses``.

        Returns:
            The updated job, or None when the job was not in an expected
            status (the caller lost a race, or the job is terminal).
        """
        expected = [status for status in (from_statuses or ACTIVE_STATUSES) if not status.is_terminal]
        if not expected:
            return None

        now = self._now()
        update: Dict[str, Any] = {"status": to_status.value, "updated_at": now, "heartbeat_at": now}
        if to_status.is_terminal:
            update["completed_at"] = now
        if to_status is not JobStatus.PAUSED:
            update["resume_after"] = None
        update.update(fields or {})

        rows = self._rows(
            self._table()
            .update(update)
            .eq("id", job_id)
            .in_("status", _values(expected))
        )
        if not rows:
            logger.debug(
                "Transition of job %s to %s skipped (expected one of %s)",
                job_id,
                to_status.value,
                _values(expected),
            )
            return None
        return Job.from_row(rows[0])

    def touch_heartbeat(self, job_id: str) -> None:
        """Refresh the liveness timestamp; monitoring only, never changes status."""
        now = self._now()
        self._rows(self._table().update({"heartbeat_at": now, "updated_at": now}).eq("id", job_id))

    def update_progress(
        self,
        job_id: str,
        delta: int,
        *,
        failed_delta: int = 0,
        cursor: Optional[Dict[str, Any]] = None,
        items_done: Optional[int] = None,
    ) -> Optional[Job]:
        """Add ``delta`` to ``items_done`` with a compare-and-set loop.

        Concurrent partition workers update the same row, so the write is
        filtered on the counters that were read and retried on conflict.
        Also refreshes the heartbeat and, when given, the cursor.

        Phases whose cursor is an absolute position pass ``items_done``
        instead; replaying such a cursor then rewrites the same count.
        """
        for _ in range(_PROGRESS_CAS_ATTEMPTS):
            job = self.get_job(job_id)
            if job is None or job.is_terminal:
                return job

            now = self._now()
            update: Dict[str, Any] = {
                "items_done": job.items_done + delta if items_done is None else items_done,
                "items_failed": job.items_failed + failed_delta,
                "heartbeat_at": now,
                "updated_at": now,
            }
            if cursor is not None:
                update["cursor"] = cursor

            rows = self._rows(
                self._table()
                .update(update)
                .eq("id", job_id)
                .eq("items_done", job.items_done)
                .eq("items_failed", job.items_failed)
                .in_("status", _values(ACTIVE_STATUSES))
            )
            if rows:
                return Job.from_row(rows[0])
            logger.debug("Progress update on job %s conflicted, re-reading", job_id)

        logger.warning("Gave up updating progress of job %s after %d attempts", job_id, _PROGRESS_CAS_ATTEMPTS)
        return self.get_job(job_id)

    def set_items_total(self, job_id: str, items_total: int) -> Optional[Job]:
        rows = self._rows(
            self._table()
            .update({"items_total": items_total, "updated_at": self._now()})
            .eq("id", job_id)
            .in_("status", _values(ACTIVE_STATUSES))
        )
        return Job.from_row(rows[0]) if rows else None

    def pause(self, job_id: str, retry_after_seconds: float, *, reason: Optional[str] = None) -> Optional[Job]:
        resume_after = self._clock() + timedelta(seconds=retry_after_seconds)
        fields: Dict[str, Any] = {"resume_after": to_iso(resume_after)}
        if reason:
            fields["error_message"] = reason[:1000]
        job = self.transition(
            job_id,
            JobStatus.PAUSED,
            from_statuses=[JobStatus.RUNNING, JobStatus.QUEUED],
            fields=fields,
        )
        if job:
            logger.info("Paused job %s for %.0fs", job_id, retry_after_seconds)
        return job

    def fail(
        self,
        job_id: str,
        message: str,
        *,
        from_statuses: Optional[Iterable[JobStatus]] = None,
    ) -> Optional[Job]:
        job = self.transition(
            job_id,
            JobStatus.FAILED,
            from_statuses=from_statuses,
            fields={"error_message": message[:1000]},
        )
        if job:
            logger.warning("Marked job %s as failed: %s", job_id, message)
        return job

    def cancel(self, job_id: str) -> Optional[Job]:
        job = self.transition(job_id, JobStatus.CANCELLED)
        if job:
            logger.info("Cancelled job %s", job_id)
        return job

    def increment_retry(self, job: Job) -> Optional[Job]:
        """Bump ``retry_count`` if nobody else touched it since ``job`` was read."""
        rows = self._rows(
            self._table()
            .update({"retry_count": job.retry_count + 1, "updated_at": self._now()})
            .eq("id", job.id)
            .eq("retry_count", job.retry_count)
            .in_("status", _values(STALLABLE_STATUSES))
        )
        return Job.from_row(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Watchdog queries
    # ------------------------------------------------------------------

    def list_stale_jobs(self, threshold_seconds: int) -> List[Job]:
        """Jobs that should be making progress but have not heartbeated."""
        cutoff = to_iso(self._clock() - timedelta(seconds=threshold_seconds))
        rows = self._rows(
            self._table()
            .select("*")
            .in_("status", _values(STALLABLE_STATUSES))
            .lt("heartbeat_at", cutoff)
            .order("updated_at", desc=True)
        )
        jobs = [Job.from_row(row) for row in rows]
        if jobs:
            logger.warning("Found %d jobs without a heartbeat for >%ss", len(jobs), threshold_seconds)
        return jobs

    def list_ghost_jobs(self, grace_seconds: int) -> List[Job]:
        """Running jobs that never found any work."""
        cutoff = to_iso(self._clock() - timedelta(seconds=grace_seconds))
        rows = self._rows(
            self._table()
            .select("*")
            .eq("status", JobStatus.RUNNING.value)
            .eq("items_total", 0)
            .lt("updated_at", cutoff)
        )
        return [Job.from_row(row) for row in rows]

    def list_resumable_paused_jobs(self) -> List[Job]:
        rows = self._rows(
            self._table()
            .select("*")
            .eq("status", JobStatus.PAUSED.value)
            .lte("resume_after", self._now())
        )
        return [Job.from_row(row) for row in rows]

    def pause_remaining(self, job: Job) -> float:
        """Seconds left before a paused job may run again; zero once the window has passed."""
        if job.status is not JobStatus.PAUSED or job.resume_after is None:
            return 0.0
        return max(0.0, (job.resume_after - self._clock()).total_seconds())

    def is_stale(self, job: Job, threshold_seconds: int) -> bool:
        if job.heartbeat_at is None:
            return True
        return job.heartbeat_at < self._clock() - timedelta(seconds=threshold_seconds)


def _values(statuses: Iterable[JobStatus]) -> List[str]:
    return [status.value for status in statuses]
