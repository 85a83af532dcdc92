"""Periodic sweep that keeps the pipeline moving when self-chaining stops.

Each sweep:

1. deletes execution locks older than their TTL
2. fails running jobs that never found any work (ghost jobs)
3. finds jobs whose heartbeat is older than the staleness threshold, keeps
   only the newest one per (workspace, kind) and supersedes the rest
4. re-reads each stale job and, if it is still stalled, bumps its retry
   count and either re-invokes the phase or fails it past the ceiling
5. resumes paused jobs whose ``resume_after`` has passed

Terminal jobs are never touched: every write below is conditional on a
non-terminal status.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Set, Tuple

from ..contracts.config import PipelineConfig
from ..contracts.functions import entry_function
from ..contracts.jobs import STALLABLE_STATUSES, Job, JobStatus
from ..db.job_store import SUPERSEDED_MESSAGE, JobStore
from ..db.lock_store import ExecutionLockStore
from ..db.progress_writer import ProgressWriter
from ..relay.chainer import RelayChainer

logger = logging.getLogger(__name__)

GHOST_MESSAGE = "ghost job with no work"


@dataclass
class WatchdogReport:
    locks_cleaned: int = 0
    ghost_jobs_cleaned: int = 0
    stale_found: int = 0
    superseded: int = 0
    resurrected: int = 0
    failed: int = 0
    resumed: int = 0
    skipped: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Watchdog:
    def __init__(
        self,
        jobs: JobStore,
        locks: ExecutionLockStore,
        progress: ProgressWriter,
        chainer: RelayChainer,
        config: PipelineConfig,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jobs = jobs
        self.locks = locks
        self.progress = progress
        self.chainer = chainer
        self.config = config
        self._timer = timer

    def sweep(self) -> WatchdogReport:
        started = self._timer()
        report = WatchdogReport()

        report.locks_cleaned = self.locks.reclaim_expired()
        report.ghost_jobs_cleaned = self._clean_ghosts()

        stale = self.jobs.list_stale_jobs(self.config.stale_threshold_seconds)
        report.stale_found = len(stale)
        survivors, duplicates = self._dedupe(stale)
        for job in duplicates:
            if self.jobs.fail(job.id, SUPERSEDED_MESSAGE):
                report.superseded += 1

        for job in survivors:
            self._handle_stale(job, report)

        for job in self.jobs.list_resumable_paused_jobs():
            if self._resume(job):
                report.resumed += 1

        report.duration_ms = int((self._timer() - started) * 1000)
        logger.info("Watchdog sweep finished: %s", report.to_dict())
        return report

    def _clean_ghosts(self) -> int:
        cleaned = 0
        for job in self.jobs.list_ghost_jobs(self.config.lock_ttl_seconds):
            failed = self.jobs.fail(job.id, GHOST_MESSAGE, from_statuses=[JobStatus.RUNNING])
            if failed:
                cleaned += 1
                self.progress.report(failed, last_error=GHOST_MESSAGE)
        return cleaned

    @staticmethod
    def _dedupe(jobs: List[Job]) -> Tuple[List[Job], List[Job]]:
        """Keep the most recently updated stale job per (workspace, kind).

        ``jobs`` arrives ordered by ``updated_at`` descending.
        """
        seen: Set[Tuple[str, str]] = set()
        survivors: List[Job] = []
        duplicates: List[Job] = []
        for job in jobs:
            key = (job.workspace_id, job.kind.value)
            if key in seen:
                duplicates.append(job)
            else:
                seen.add(key)
                survivors.append(job)
        return survivors, duplicates

    def _handle_stale(self, job: Job, report: WatchdogReport) -> None:
        current = self.jobs.get_job(job.id)
        if current is None or current.status not in STALLABLE_STATUSES:
            report.skipped += 1
            return
        if not self.jobs.is_stale(current, self.config.stale_threshold_seconds):
            # Heartbeat arrived between the query and now.
            report.skipped += 1
            return

        bumped = self.jobs.increment_retry(current)
        if bumped is None:
            report.skipped += 1
            return

        if bumped.retry_count > self.config.max_retries:
            message = f"stalled after {self.config.max_retries} retries"
            failed = self.jobs.fail(bumped.id, message, from_statuses=STALLABLE_STATUSES)
            if failed:
                report.failed += 1
                self.progress.report(failed, last_error=message)
            return

        self.jobs.touch_heartbeat(bumped.id)
        self._invoke(bumped)
        report.resurrected += 1
        logger.warning(
            "Resurrected %s job %s for workspace %s (retry %d/%d)",
            bumped.kind.value,
            bumped.id,
            bumped.workspace_id,
            bumped.retry_count,
            self.config.max_retries,
        )

    def _resume(self, job: Job) -> bool:
        resumed = self.jobs.transition(job.id, JobStatus.RUNNING, from_statuses=[JobStatus.PAUSED])
        if resumed is None:
            return False
        logger.info("Resuming paused %s job %s", resumed.kind.value, resumed.id)
        self._invoke(resumed)
        return True

    def _invoke(self, job: Job) -> bool:
        return self.chainer.fire(
            entry_function(job.kind),
            {"workspace_id": job.workspace_id, "job_id": job.id, "_iteration": 0},
        )
