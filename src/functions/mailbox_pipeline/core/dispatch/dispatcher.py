"""Fan-out of the classification phase over partitioned workers."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..contracts.config import PipelineConfig
from ..contracts.functions import CLASSIFY_FUNCTION
from ..contracts.jobs import Job, JobKind, JobStatus
from ..contracts.work_items import Partition, WorkItemStatus
from ..db.job_store import JobStore
from ..db.progress_writer import ProgressWriter
from ..db.work_items import WorkItemRepository
from ..relay.chainer import RelayChainer
from .partitioning import plan_partitions

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    workers_launched: int
    total_items: int
    job_id: Optional[str] = None
    failed_launches: int = 0

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "status": "dispatched" if self.workers_launched else "complete",
            "workers_launched": self.workers_launched,
            "total_items": self.total_items,
        }
        if self.job_id:
            body["job_id"] = self.job_id
        if self.failed_launches:
            body["failed_launches"] = self.failed_launches
        return body


class PartitionDispatcher:
    """Sizes the classification worker pool from the backlog and launches it.

    Workers are independent: each claims only the buckets of its partition,
    so no coordination is needed between them beyond the job row.
    """

    def __init__(
        self,
        jobs: JobStore,
        items: WorkItemRepository,
        progress: ProgressWriter,
        chainer: RelayChainer,
        config: PipelineConfig,
    ) -> None:
        self.jobs = jobs
        self.items = items
        self.progress = progress
        self.chainer = chainer
        self.config = config

    def dispatch(self, workspace_id: str, job_id: Optional[str] = None) -> DispatchResult:
        """Launch classify workers for the workspace's backlog.

        With no backlog and no classify job this is a no-op. An existing job
        with an empty backlog still gets one whole-backlog worker: the import
        hand-off creates the classify job before anything may be pending
        (every message already imported, or the mailbox is empty), and only a
        worker can move that job through ``advancing`` to conversion. Returning
        without a worker would leave it queued until the watchdog gave up on it.

        A paused job is left alone until its ``resume_after`` has passed.
        """
        self.items.release_stale_claims(workspace_id, older_than_seconds=self.config.lock_ttl_seconds)
        total = self.items.count(workspace_id, [WorkItemStatus.PENDING, WorkItemStatus.PROCESSING])

        job = self._existing_job(workspace_id, job_id)
        if job is not None and job.is_terminal:
            logger.info("Classify job %s is already %s, not dispatching", job.id, job.status.value)
            return DispatchResult(workers_launched=0, total_items=total, job_id=job.id)

        if job is not None and self.jobs.pause_remaining(job) > 0:
            logger.info("Classify job %s is paused, not dispatching yet", job.id)
            return DispatchResult(workers_launched=0, total_items=total, job_id=job.id)

        if job is not None and job.status is JobStatus.ADVANCING:
            # A worker stopped between winning the hand-off and finishing it.
            launched = self._launch(job, [Partition.whole()])
            return DispatchResult(workers_launched=launched, total_items=total, job_id=job.id)

        if total == 0:
            if job is None:
                logger.info("Nothing to classify for workspace %s", workspace_id)
                return DispatchResult(workers_launched=0, total_items=0)
            # An empty phase still has to close out and hand over to conversion.
            job = self._start(job, total)
            launched = self._launch(job, [Partition.whole()]) if job else 0
            return DispatchResult(workers_launched=launched, total_items=0, job_id=job.id if job else None)

        workers = self.config.worker_count(total)
        if job is None:
            job = self.jobs.create_or_reset_job(workspace_id, JobKind.CLASSIFY, items_total=total)
        job = self._start(job, total)
        if job is None:
            return DispatchResult(workers_launched=0, total_items=total)

        launched = self._launch(job, plan_partitions(workers))
        logger.info(
            "Dispatched %d/%d classify workers for %d items (workspace %s)",
            launched,
            workers,
            total,
            workspace_id,
        )
        self.progress.report(job, extra={"workers": workers})
        return DispatchResult(
            workers_launched=launched,
            total_items=total,
            job_id=job.id,
            failed_launches=workers - launched,
        )

    def _existing_job(self, workspace_id: str, job_id: Optional[str]) -> Optional[Job]:
        if job_id:
            job = self.jobs.get_job(job_id)
            if job is not None and job.workspace_id == workspace_id and job.kind is JobKind.CLASSIFY:
                return job
            return None
        return self.jobs.find_active_job(workspace_id, JobKind.CLASSIFY)

    def _start(self, job: Job, total: int) -> Optional[Job]:
        """Record the backlog size and make sure the job is running."""
        if job.status is not JobStatus.RUNNING:
            started = self.jobs.transition(
                job.id,
                JobStatus.RUNNING,
                from_statuses=[JobStatus.QUEUED, JobStatus.PAUSED],
            )
            if started is None:
                job = self.jobs.get_job(job.id)
                if job is None or job.status is not JobStatus.RUNNING:
                    logger.info("Classify job changed state during dispatch, not launching workers")
                    return None
            else:
                job = started
        if total > job.items_total - job.items_done:
            updated = self.jobs.set_items_total(job.id, job.items_done + total)
            if updated is not None:
                job = updated
        return job

    def _launch(self, job: Job, partitions: List[Partition]) -> int:
        def fire(partition: Partition) -> bool:
            payload: Dict[str, Any] = {"workspace_id": job.workspace_id, "job_id": job.id}
            if not partition.is_whole:
                payload["partition_id"] = partition.partition_id
                payload["total_partitions"] = partition.total_partitions
            return self.chainer.fire(CLASSIFY_FUNCTION, payload)

        if len(partitions) == 1:
            return int(fire(partitions[0]))
        with ThreadPoolExecutor(max_workers=len(partitions)) as executor:
            results = list(executor.map(fire, partitions))
        failed = results.count(False)
        if failed:
            logger.error("%d of %d classify workers could not be launched", failed, len(partitions))
        return len(partitions) - failed
