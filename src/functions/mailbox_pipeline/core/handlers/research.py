"""Competitor research phase: extracts FAQs from competitor sites."""

from __future__ import annotations

import hashlib
import re
from typing import Any, Dict, List

from src.shared.batch import retry_on_network_error

from ..backoff.rate_limit import RateLimitError
from ..contracts.errors import ResearchServiceError
from ..contracts.functions import RESEARCH_FUNCTION
from ..contracts.jobs import JobKind, to_iso, utc_now
from ..contracts.work_items import WorkItem, WorkItemStatus
from ..db.work_items import WorkItemRepository
from ..integration.research import ResearchService
from .base import BatchResult, PhaseContext, PhaseDependencies, ProcessedBatch
from .work_item_phase import WorkItemPhaseHandler

MAX_TOPICS = 500
_NON_WORD = re.compile(r"[^a-z0-9 ]+")


def question_key(question: str) -> str:
    """Normalised hash used to deduplicate FAQ questions across sites."""
    normalised = " ".join(_NON_WORD.sub(" ", question.lower()).split())
    return hashlib.sha1(normalised.encode("utf-8")).hexdigest()[:16]


class ResearchHandler(WorkItemPhaseHandler):
    kind = JobKind.RESEARCH
    function_name = RESEARCH_FUNCTION
    source_status = WorkItemStatus.PENDING
    target_status = WorkItemStatus.PROCESSED

    def __init__(
        self,
        deps: PhaseDependencies,
        sites: WorkItemRepository,
        research: ResearchService,
        client,
    ) -> None:
        super().__init__(deps, sites)
        self.research = research
        self.client = client

    @property
    def next_kind(self):
        return None

    def prepare(self, ctx: PhaseContext) -> None:
        super().prepare(ctx)
        ctx.cursor.setdefault("topics", {})
        ctx.cursor.setdefault("faq_count", 0)

    def process_batch(self, ctx: PhaseContext, batch: List[WorkItem]) -> ProcessedBatch:
        processed = ProcessedBatch()
        for index, site in enumerate(batch):
            url = site.raw.get("url") or site.external_id
            try:
                processed.outputs[site.id] = self.research.extract_faqs(url)
            except RateLimitError as exc:
                processed.rate_limit = exc
                processed.unprocessed.extend(batch[index:])
                break
            except ResearchServiceError as exc:
                processed.failures[site.id] = str(exc)
        return processed

    def persist(self, ctx: PhaseContext, batch: List[WorkItem], processed: ProcessedBatch) -> BatchResult:
        topics: Dict[str, str] = ctx.cursor["topics"]
        by_id = {site.id: site for site in batch}
        rows: Dict[str, Dict[str, Any]] = {}
        for site_id, faqs in processed.outputs.items():
            for faq in faqs:
                key = question_key(faq["question"])
                rows.setdefault(
                    key,
                    {
                        "workspace_id": ctx.workspace_id,
                        "question_key": key,
                        "question": faq["question"],
                        "answer": faq.get("answer", ""),
                        "source_site": by_id[site_id].external_id,
                    },
                )
                if key not in topics and len(topics) < MAX_TOPICS:
                    topics[key] = faq["question"]

        if rows:
            retry_on_network_error(
                self.client.table("competitor_faqs")
                .upsert(list(rows.values()), on_conflict="workspace_id,question_key")
                .execute
            )
        ctx.cursor["faq_count"] += len(rows)
        return super().persist(ctx, batch, processed)

    def finalize(self, ctx: PhaseContext) -> Dict[str, Any]:
        topics = ctx.cursor.get("topics") or {}
        row = {
            "workspace_id": ctx.workspace_id,
            "topics": sorted(topics.values()),
            "topic_count": len(topics),
            "faq_count": ctx.cursor.get("faq_count", 0),
            "updated_at": to_iso(utc_now()),
        }
        retry_on_network_error(
            self.client.table("research_summaries").upsert(row, on_conflict="workspace_id").execute
        )
        return {"topic_count": len(topics)}

    def close(self) -> None:
        close = getattr(self.research, "close", None)
        if callable(close):
            close()
