"""Classification phase: sorts imported emails into categories."""

from __future__ import annotations

from typing import Any, Dict, List

from ..backoff.rate_limit import RateLimitError
from ..contracts.errors import CompletionServiceError
from ..contracts.functions import CLASSIFY_FUNCTION
from ..contracts.jobs import JobKind
from ..contracts.work_items import WorkItem, WorkItemStatus
from ..db.work_items import WorkItemRepository
from ..integration.completion import Classification, ClassificationInput, CompletionService
from .base import PhaseContext, PhaseDependencies, ProcessedBatch
from .work_item_phase import WorkItemPhaseHandler


class ClassifyHandler(WorkItemPhaseHandler):
    """Partition-aware worker; the dispatcher decides how many run."""

    kind = JobKind.CLASSIFY
    function_name = CLASSIFY_FUNCTION
    partitioned = True
    source_status = WorkItemStatus.PENDING
    target_status = WorkItemStatus.CLASSIFIED

    def __init__(
        self,
        deps: PhaseDependencies,
        items: WorkItemRepository,
        completion: CompletionService,
    ) -> None:
        super().__init__(deps, items)
        self.completion = completion

    def process_batch(self, ctx: PhaseContext, batch: List[WorkItem]) -> ProcessedBatch:
        processed = ProcessedBatch()
        size = self.config.completion_batch_size
        chunks = [batch[start:start + size] for start in range(0, len(batch), size)]

        for index, chunk in enumerate(chunks):
            inputs = [
                ClassificationInput(
                    item_id=item.id,
                    from_email=item.from_email or "",
                    subject=item.subject or "",
                    snippet=item.snippet,
                )
                for item in chunk
            ]
            try:
                results = self.completion.classify(inputs)
            except RateLimitError as exc:
                processed.rate_limit = exc
                for rest in chunks[index:]:
                    processed.unprocessed.extend(rest)
                break
            except CompletionServiceError as exc:
                ctx.log.warning("Classification of %d emails failed: %s", len(chunk), exc)
                for item in chunk:
                    processed.failures[item.id] = str(exc)
                continue

            for item in chunk:
                if item.id in results:
                    processed.outputs[item.id] = results[item.id]
                else:
                    processed.failures[item.id] = "no classification returned"
        return processed

    def item_fields(self, item: WorkItem, output: Any) -> Dict[str, Any]:
        classification: Classification = output
        return {
            "category": classification.category,
            "requires_reply": classification.requires_reply,
            "confidence": classification.confidence,
        }
