"""Generic resumable phase handler.

One invocation of a phase function runs :meth:`PhaseHandler.run`:

1. resolve the job and bail out if it is terminal
2. take the execution lock and touch the heartbeat before any work
3. claim, process and persist bounded batches, checkpointing after each
4. stop when the backlog is drained (advance), the upstream rate limits us
   (pause) or the time guard trips (chain a fresh invocation)

Subclasses only say how to claim, process and persist a batch of their kind
of work; job bookkeeping, locking, cancellation and hand-offs live here.
"""

from __future__ import annotations

import copy
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from postgrest.exceptions import APIError

from src.shared.batch import RETRYABLE_ERRORS
from src.shared.utils.config_validator import ConfigurationError
from src.shared.utils.logging import PipelineLogAdapter, get_pipeline_logger

from ..backoff.rate_limit import RateLimitError, calculate_backoff_seconds
from ..contracts.config import PipelineConfig
from ..contracts.errors import (
    CompletionServiceError,
    InvalidRequestError,
    MailProviderError,
    PhaseFatalError,
    ResearchServiceError,
)
from ..contracts.functions import entry_function
from ..contracts.jobs import Job, JobKind, JobStatus, get_next_kind
from ..contracts.outcomes import OutcomeKind, PhaseOutcome
from ..contracts.requests import TriggerRequest
from ..contracts.work_items import Partition
from ..db.job_store import JobStore
from ..db.lock_store import ExecutionLockStore
from ..db.progress_writer import ProgressWriter
from ..monitoring.error_handler import ErrorHandler
from ..relay.chainer import RelayChainer

BatchT = TypeVar("BatchT")

HANDOFF_KEY = "handoff"
INPUT_KEY = "input"

# Upstream and database failures that may clear on their own. The job backs
# off and spends one retry instead of failing outright.
TRANSIENT_ERRORS = (
    MailProviderError,
    CompletionServiceError,
    ResearchServiceError,
    APIError,
) + RETRYABLE_ERRORS


@dataclass
class PhaseDependencies:
    """Collaborators every phase handler needs."""

    jobs: JobStore
    locks: ExecutionLockStore
    progress: ProgressWriter
    chainer: RelayChainer
    config: PipelineConfig
    timer: Callable[[], float] = time.monotonic


@dataclass
class ProcessedBatch:
    """Output of ``process_batch``.

    ``outputs`` and ``failures`` are keyed by whatever the handler uses to
    identify a unit of work. Units in ``unprocessed`` were never attempted
    (the upstream rate limited us part way) and are handed back untouched.
    """

    outputs: Dict[str, Any] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    unprocessed: List[Any] = field(default_factory=list)
    rate_limit: Optional[RateLimitError] = None


@dataclass
class BatchResult:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass
class PhaseContext:
    job: Job
    request: TriggerRequest
    cursor: Dict[str, Any]
    invocation_id: str
    started_at: float
    log: PipelineLogAdapter
    errors: ErrorHandler
    batches: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    state: Dict[str, Any] = field(default_factory=dict)

    @property
    def workspace_id(self) -> str:
        return self.job.workspace_id

    @property
    def partition(self) -> Partition:
        return self.request.partition

    @property
    def phase_input(self) -> Dict[str, Any]:
        return self.cursor.get(INPUT_KEY) or {}


class PhaseHandler(ABC, Generic[BatchT]):
    """Base class for the import, classify, convert, analyze and research phases."""

    kind: JobKind
    function_name: str
    partitioned: bool = False

    def __init__(self, deps: PhaseDependencies) -> None:
        self.deps = deps

    @property
    def config(self) -> PipelineConfig:
        return self.deps.config

    @property
    def batch_size(self) -> int:
        return self.config.batch_size(self.kind)

    @property
    def next_kind(self) -> Optional[JobKind]:
        return get_next_kind(self.kind)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def prepare(self, ctx: PhaseContext) -> None:
        """Per-invocation setup (credentials, stale claim cleanup)."""

    @abstractmethod
    def claim_batch(self, ctx: PhaseContext) -> Optional[BatchT]:
        """Take the next bounded batch of work, or nothing."""

    @abstractmethod
    def process_batch(self, ctx: PhaseContext, batch: BatchT) -> ProcessedBatch:
        """Call the external collaborators for one batch."""

    @abstractmethod
    def persist(self, ctx: PhaseContext, batch: BatchT, processed: ProcessedBatch) -> BatchResult:
        """Write the batch's results idempotently."""

    def release_batch(self, ctx: PhaseContext, batch: BatchT, units: Optional[Sequence[Any]] = None) -> None:
        """Give claimed work back without counting a failure."""

    @abstractmethod
    def remaining(self, ctx: PhaseContext) -> int:
        """Work this invocation could still claim."""

    def checkpoint_done(self, ctx: PhaseContext) -> Optional[int]:
        """Absolute ``items_done`` implied by the cursor, for phases that page by offset.

        ``None`` means progress is counted by adding each batch's successes.
        """
        return None

    def phase_drained(self, ctx: PhaseContext) -> bool:
        """True when no worker has anything left; only then may the phase advance."""
        return True

    def finalize(self, ctx: PhaseContext) -> Dict[str, Any]:
        """Runs once the backlog is drained; returns the next phase's input."""
        return {}

    def lock_name(self, request: TriggerRequest) -> str:
        if self.partitioned and not request.partition.is_whole:
            return f"{self.function_name}:{request.partition.partition_id}/{request.partition.total_partitions}"
        return self.function_name

    def close(self) -> None:
        """Release per-invocation resources."""

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def run(self, request: TriggerRequest) -> PhaseOutcome:
        log = get_pipeline_logger(__name__, self.function_name, request.workspace_id)
        job = self._resolve_job(request)
        if job is None:
            log.info("No active %s job, nothing to do", self.kind.value)
            return PhaseOutcome.complete("no active job")
        if job.is_terminal:
            log.info("Job %s is already %s", job.id, job.status.value)
            return self._with_job(PhaseOutcome.complete(f"job already {job.status.value}"), job)

        invocation_id = uuid.uuid4().hex
        lock_name = self.lock_name(request)
        if not self.deps.locks.acquire(job.workspace_id, lock_name, invocation_id):
            return self._with_job(PhaseOutcome.skipped("another invocation holds the lock"), job)

        ctx = PhaseContext(
            job=job,
            request=request,
            cursor=copy.deepcopy(request.cursor if request.cursor is not None else job.cursor),
            invocation_id=invocation_id,
            started_at=self.deps.timer(),
            log=log,
            errors=ErrorHandler(),
        )
        try:
            outcome = self._run_locked(ctx)
        except (PhaseFatalError, ConfigurationError) as exc:
            log.error("Phase failed: %s", exc)
            failed = self.deps.jobs.fail(ctx.job.id, str(exc))
            if failed:
                ctx.job = failed
                self.deps.progress.report(failed, last_error=str(exc))
            outcome = PhaseOutcome.failed(str(exc))
        finally:
            self.deps.locks.release(job.workspace_id, lock_name, invocation_id)
            self.close()

        self._hand_off(ctx, outcome)
        return self._with_job(outcome, ctx.job, ctx)

    def _resolve_job(self, request: TriggerRequest) -> Optional[Job]:
        if request.job_id:
            job = self.deps.jobs.get_job(request.job_id)
            if job is None:
                return None
            if job.workspace_id != request.workspace_id or job.kind is not self.kind:
                raise InvalidRequestError(
                    f"Job {request.job_id} is not a {self.kind.value} job of workspace {request.workspace_id}"
                )
            return job
        return self.deps.jobs.find_active_job(request.workspace_id, self.kind)

    def _run_locked(self, ctx: PhaseContext) -> PhaseOutcome:
        jobs = self.deps.jobs
        if ctx.job.status is JobStatus.PAUSED:
            wait = jobs.pause_remaining(ctx.job)
            if wait > 0:
                ctx.log.info("Job %s is paused for another %.0fs, not resuming early", ctx.job.id, wait)
                return PhaseOutcome.paused(wait, reason="pause window still open")

        jobs.touch_heartbeat(ctx.job.id)

        if ctx.job.status in (JobStatus.QUEUED, JobStatus.PAUSED):
            started = jobs.transition(
                ctx.job.id,
                JobStatus.RUNNING,
                from_statuses=[JobStatus.QUEUED, JobStatus.PAUSED],
            )
            if started is None:
                current = jobs.get_job(ctx.job.id)
                if current is None or current.status is not JobStatus.RUNNING:
                    return PhaseOutcome.complete("job changed state before start")
                started = current
            ctx.job = started

        if ctx.job.status is JobStatus.ADVANCING:
            ctx.log.info("Resuming interrupted hand-off of job %s", ctx.job.id)
            return PhaseOutcome.advance(self.next_kind, ctx.job.cursor.get(HANDOFF_KEY) or {})

        try:
            self.prepare(ctx)
            return self._loop(ctx)
        except TRANSIENT_ERRORS as exc:
            return self._back_off(ctx, exc)

    def _loop(self, ctx: PhaseContext) -> PhaseOutcome:
        while True:
            try:
                batch = self.claim_batch(ctx)
            except RateLimitError as exc:
                return self._pause(ctx, exc)

            try:
                outcome = self._work(ctx, batch)
            except TRANSIENT_ERRORS:
                if batch:
                    self.release_batch(ctx, batch)
                raise
            if outcome is not None:
                return outcome

    def _work(self, ctx: PhaseContext, batch: Optional[BatchT]) -> Optional[PhaseOutcome]:
        """Process one claimed batch and decide whether the invocation stops."""
        jobs = self.deps.jobs
        if batch:
            try:
                processed = self.process_batch(ctx, batch)
            except RateLimitError as exc:
                self.release_batch(ctx, batch)
                return self._pause(ctx, exc)

            current = jobs.get_job(ctx.job.id)
            if current is None or current.status is not JobStatus.RUNNING:
                self.release_batch(ctx, batch)
                status = current.status.value if current else "missing"
                ctx.log.info("Job %s is %s, abandoning batch", ctx.job.id, status)
                if current is not None:
                    ctx.job = current
                return PhaseOutcome.complete(f"job {status}")

            result = self.persist(ctx, batch, processed)
            if processed.unprocessed:
                self.release_batch(ctx, batch, processed.unprocessed)
            ctx.batches += 1
            ctx.succeeded += result.succeeded
            ctx.failed += result.failed
            ctx.skipped += result.skipped
            updated = jobs.update_progress(
                ctx.job.id,
                result.succeeded,
                failed_delta=result.skipped,
                cursor=None if self.partitioned else ctx.cursor,
                items_done=self.checkpoint_done(ctx),
            )
            if updated is not None:
                ctx.job = updated
            self.deps.locks.refresh(ctx.workspace_id, self.lock_name(ctx.request), ctx.invocation_id)
            self.deps.progress.report(ctx.job)
            ctx.log.info(
                "Batch %d: +%d done, %d failed, %d skipped (%d/%d)",
                ctx.batches,
                result.succeeded,
                result.failed,
                result.skipped,
                ctx.job.items_done,
                ctx.job.items_total,
            )
            if processed.rate_limit is not None:
                return self._pause(ctx, processed.rate_limit)

        if self.remaining(ctx) == 0:
            if not self.phase_drained(ctx):
                return PhaseOutcome.complete("partition drained, other workers still running")
            return self._begin_advance(ctx)
        if not batch:
            if self.partitioned:
                return PhaseOutcome.complete("remaining work is held by another invocation")
            # The backlog moved between counting and claiming; a fresh invocation recounts it.
            return PhaseOutcome.continue_with(ctx.cursor, reason="claimed nothing with work remaining")
        if self._out_of_time(ctx):
            return PhaseOutcome.continue_with(ctx.cursor)
        return None

    def _out_of_time(self, ctx: PhaseContext) -> bool:
        limit = self.config.max_batches_per_invocation
        if limit is not None and ctx.batches >= limit:
            return True
        return self.deps.timer() - ctx.started_at >= self.config.time_guard_seconds

    def _pause(self, ctx: PhaseContext, exc: RateLimitError) -> PhaseOutcome:
        seconds = exc.retry_after_seconds or self.config.default_pause_seconds
        if not self.partitioned:
            self.deps.jobs.update_progress(ctx.job.id, 0, cursor=ctx.cursor)
        paused = self.deps.jobs.pause(ctx.job.id, seconds, reason=str(exc))
        if paused is not None:
            ctx.job = paused
            self.deps.progress.report(paused, last_error=str(exc))
        ctx.log.warning("Rate limited, pausing for %.0fs", seconds)
        return PhaseOutcome.paused(seconds, reason=str(exc))

    def _back_off(self, ctx: PhaseContext, exc: Exception) -> PhaseOutcome:
        """Pause after a transient failure, spending one job retry.

        The error is kept on the job so a later failure still names its cause.
        """
        jobs = self.deps.jobs
        reason = f"{type(exc).__name__}: {exc}"
        retried = jobs.increment_retry(ctx.job)
        if retried is not None:
            ctx.job = retried
        if ctx.job.retry_count > self.config.max_retries:
            ctx.log.error("Giving up after %d retries: %s", self.config.max_retries, reason)
            failed = jobs.fail(ctx.job.id, reason)
            if failed is not None:
                ctx.job = failed
                self.deps.progress.report(failed, last_error=reason)
            return PhaseOutcome.failed(reason)

        seconds = calculate_backoff_seconds(ctx.job.retry_count)
        if not self.partitioned:
            jobs.update_progress(ctx.job.id, 0, cursor=ctx.cursor)
        paused = jobs.pause(ctx.job.id, seconds, reason=reason)
        if paused is not None:
            ctx.job = paused
            self.deps.progress.report(paused, last_error=reason)
        ctx.log.warning("Transient failure (%s), retry %d in %.0fs", reason, ctx.job.retry_count, seconds)
        return PhaseOutcome.paused(seconds, reason=reason)

    def _begin_advance(self, ctx: PhaseContext) -> PhaseOutcome:
        try:
            next_input = self.finalize(ctx)
        except RateLimitError as exc:
            return self._pause(ctx, exc)

        cursor = dict(ctx.cursor)
        cursor[HANDOFF_KEY] = next_input
        won = self.deps.jobs.transition(
            ctx.job.id,
            JobStatus.ADVANCING,
            from_statuses=[JobStatus.RUNNING],
            fields={"cursor": cursor},
        )
        if won is None:
            ctx.log.info("Another invocation is already advancing job %s", ctx.job.id)
            return PhaseOutcome.complete("phase advanced elsewhere")
        ctx.job = won
        ctx.cursor = cursor
        return PhaseOutcome.advance(self.next_kind, next_input)

    def _hand_off(self, ctx: PhaseContext, outcome: PhaseOutcome) -> None:
        """Fire follow-up invocations once the lock is released."""
        if outcome.kind is OutcomeKind.CONTINUE:
            cursor = None if self.partitioned else ctx.cursor
            payload = ctx.request.model_copy(update={"cursor": cursor, "job_id": ctx.job.id})
            outcome.chained = self.deps.chainer.chain(
                self.function_name,
                payload.to_payload(),
                iteration=ctx.request.iteration + 1,
            )
        elif outcome.kind is OutcomeKind.ADVANCE_PHASE:
            self._complete_advance(ctx, outcome)

    def _complete_advance(self, ctx: PhaseContext, outcome: PhaseOutcome) -> None:
        jobs = self.deps.jobs
        if outcome.next_kind is not None:
            next_job = jobs.create_or_reset_job(
                ctx.workspace_id,
                outcome.next_kind,
                cursor={INPUT_KEY: outcome.next_input},
            )
            self.deps.chainer.fire(
                entry_function(outcome.next_kind),
                {"workspace_id": ctx.workspace_id, "job_id": next_job.id},
            )
            outcome.details["next_job_id"] = next_job.id
        completed = jobs.transition(ctx.job.id, JobStatus.COMPLETED, from_statuses=[JobStatus.ADVANCING])
        if completed is not None:
            ctx.job = completed
            self.deps.progress.report(completed)
        ctx.log.info(
            "Job %s completed, next phase: %s",
            ctx.job.id,
            outcome.next_kind.value if outcome.next_kind else "none",
        )

    def _with_job(self, outcome: PhaseOutcome, job: Job, ctx: Optional[PhaseContext] = None) -> PhaseOutcome:
        outcome.details["job"] = job.summary()
        if ctx is not None:
            outcome.details.update(
                {
                    "batches": ctx.batches,
                    "processed": ctx.succeeded,
                    "failed": ctx.failed,
                    "skipped": ctx.skipped,
                }
            )
            if self.partitioned:
                outcome.details["partition"] = ctx.partition.label()
            if ctx.errors.errors:
                outcome.details["errors"] = ctx.errors.as_dict()
        return outcome
