"""Phase handler over rows of a work item table."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from ..contracts.work_items import WorkItem, WorkItemStatus
from ..db.work_items import WorkItemRepository
from .base import BatchResult, PhaseContext, PhaseDependencies, PhaseHandler, ProcessedBatch


class WorkItemPhaseHandler(PhaseHandler[List[WorkItem]]):
    """Claims items in ``source_status`` and moves them to ``target_status``.

    Subclasses implement ``process_batch`` (keyed by item id) and
    ``item_fields`` (extra columns written when an item completes).
    """

    source_status: WorkItemStatus = WorkItemStatus.PENDING
    target_status: WorkItemStatus = WorkItemStatus.PROCESSED

    def __init__(self, deps: PhaseDependencies, items: WorkItemRepository) -> None:
        super().__init__(deps)
        self.items = items

    def _scope(self, ctx: PhaseContext):
        return ctx.partition if self.partitioned else None

    def prepare(self, ctx: PhaseContext) -> None:
        self.items.release_stale_claims(ctx.workspace_id, older_than_seconds=self.config.lock_ttl_seconds)
        if ctx.job.items_total == 0 and not self.partitioned:
            total = self.items.count(ctx.workspace_id, [self.source_status, WorkItemStatus.PROCESSING])
            if total:
                updated = self.deps.jobs.set_items_total(ctx.job.id, total)
                if updated is not None:
                    ctx.job = updated

    def claim_batch(self, ctx: PhaseContext) -> List[WorkItem]:
        return self.items.claim_batch(
            ctx.workspace_id,
            from_status=self.source_status,
            limit=self.batch_size,
            claimed_by=ctx.invocation_id,
            partition=self._scope(ctx),
        )

    def item_fields(self, item: WorkItem, output: Any) -> Dict[str, Any]:
        return {}

    def persist(self, ctx: PhaseContext, batch: List[WorkItem], processed: ProcessedBatch) -> BatchResult:
        result = BatchResult()
        for item in batch:
            if item.id in processed.outputs:
                completed = self.items.complete_item(
                    item.id,
                    to_status=self.target_status,
                    claimed_by=ctx.invocation_id,
                    fields=self.item_fields(item, processed.outputs[item.id]),
                )
                if completed:
                    result.succeeded += 1
            elif item.id in processed.failures:
                error = processed.failures[item.id]
                ctx.errors.record(item.external_id, self.kind.value, error)
                status = self.items.fail_item(
                    item,
                    error=error,
                    claimed_by=ctx.invocation_id,
                    return_status=self.source_status,
                    max_retries=self.config.item_max_retries,
                )
                if status is WorkItemStatus.SKIPPED:
                    result.skipped += 1
                else:
                    result.failed += 1
        return result

    def release_batch(
        self,
        ctx: PhaseContext,
        batch: List[WorkItem],
        units: Optional[Sequence[Any]] = None,
    ) -> None:
        chosen = units if units is not None else batch
        self.items.release_items(
            [item.id for item in chosen],
            claimed_by=ctx.invocation_id,
            to_status=self.source_status,
        )

    def remaining(self, ctx: PhaseContext) -> int:
        return self.items.backlog(ctx.workspace_id, self.source_status, partition=self._scope(ctx))

    def phase_drained(self, ctx: PhaseContext) -> bool:
        if not self.partitioned or ctx.partition.is_whole:
            # This invocation holds the phase lock, so nothing else is in flight
            # apart from crashed claims that prepare() already released.
            return self.items.in_flight(ctx.workspace_id, self.source_status) == 0
        return (
            self.items.backlog(ctx.workspace_id, self.source_status) == 0
            and self.items.in_flight(ctx.workspace_id, self.source_status) == 0
        )
