"""Analysis phase: pairs replies with the emails they answer and learns a voice profile.

Unlike the other phases this one does not claim rows; it pages through
outbound messages with an offset kept in the cursor, and carries its running
statistics in the cursor too, so a resumed invocation picks up exactly where
the last checkpoint left off.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Optional

from src.shared.batch import retry_on_network_error

from ..contracts.errors import CompletionServiceError
from ..contracts.functions import ANALYZE_FUNCTION
from ..contracts.jobs import JobKind, to_iso, utc_now
from ..contracts.work_items import Direction, WorkItem, WorkItemStatus
from ..db.work_items import WorkItemRepository
from ..integration.completion import CompletionService
from .base import BatchResult, PhaseContext, PhaseDependencies, PhaseHandler, ProcessedBatch

GREETINGS = ("hi", "hello", "hey", "dear", "good morning", "good afternoon", "good evening")
SIGNOFFS = ("thanks", "thank you", "many thanks", "best", "best regards", "kind regards", "regards", "cheers")


def _first_line(text: str) -> str:
    return next((line.strip() for line in text.splitlines() if line.strip()), "")


def detect_greeting(text: str) -> Optional[str]:
    first = _first_line(text).lower()
    for greeting in sorted(GREETINGS, key=len, reverse=True):
        if first.startswith(greeting):
            return greeting
    return None


def detect_signoff(text: str) -> Optional[str]:
    lines = [line.strip().lower().rstrip(",!.") for line in text.splitlines() if line.strip()]
    for line in reversed(lines[-4:]):
        if line in SIGNOFFS:
            return line
    return None


def empty_stats() -> Dict[str, Any]:
    return {
        "replies_seen": 0,
        "pairs": 0,
        "reply_words": 0,
        "response_seconds": 0.0,
        "greetings": {},
        "signoffs": {},
        "categories": {},
    }


def summarize_stats(stats: Dict[str, Any]) -> Dict[str, Any]:
    pairs = stats.get("pairs") or 0
    replies = stats.get("replies_seen") or 0
    return {
        "reply_pairs": pairs,
        "replies_seen": replies,
        "avg_reply_words": round(stats["reply_words"] / replies, 1) if replies else 0,
        "avg_response_minutes": round(stats["response_seconds"] / pairs / 60, 1) if pairs else None,
        "top_greetings": [name for name, _ in Counter(stats["greetings"]).most_common(3)],
        "top_signoffs": [name for name, _ in Counter(stats["signoffs"]).most_common(3)],
        "replies_by_category": stats["categories"],
    }


class AnalyzeHandler(PhaseHandler[List[WorkItem]]):
    kind = JobKind.ANALYZE
    function_name = ANALYZE_FUNCTION

    def __init__(
        self,
        deps: PhaseDependencies,
        items: WorkItemRepository,
        completion: CompletionService,
        client,
    ) -> None:
        super().__init__(deps)
        self.items = items
        self.completion = completion
        self.client = client

    def prepare(self, ctx: PhaseContext) -> None:
        total = self.items.count(ctx.workspace_id, [WorkItemStatus.PROCESSED], direction=Direction.OUTBOUND)
        ctx.state["total"] = total
        ctx.cursor.setdefault("offset", 0)
        ctx.cursor.setdefault("stats", empty_stats())
        ctx.cursor.setdefault("samples", [])
        if ctx.job.items_total != total:
            updated = self.deps.jobs.set_items_total(ctx.job.id, total)
            if updated is not None:
                ctx.job = updated

    def claim_batch(self, ctx: PhaseContext) -> List[WorkItem]:
        return self.items.fetch_page(
            ctx.workspace_id,
            statuses=[WorkItemStatus.PROCESSED],
            direction=Direction.OUTBOUND,
            offset=ctx.cursor["offset"],
            limit=self.batch_size,
        )

    def process_batch(self, ctx: PhaseContext, batch: List[WorkItem]) -> ProcessedBatch:
        thread_items = self.items.fetch_threads(ctx.workspace_id, (item.thread_id for item in batch))
        by_thread: Dict[str, List[WorkItem]] = {}
        for item in thread_items:
            by_thread.setdefault(item.thread_id, []).append(item)

        processed = ProcessedBatch()
        for reply in batch:
            inbound = self._answered_message(reply, by_thread.get(reply.thread_id, []))
            processed.outputs[reply.id] = (reply, inbound)
        return processed

    @staticmethod
    def _answered_message(reply: WorkItem, thread: List[WorkItem]) -> Optional[WorkItem]:
        """Latest inbound message of the thread received before ``reply``."""
        candidates = [
            item
            for item in thread
            if item.direction is Direction.INBOUND
            and item.received_at is not None
            and reply.received_at is not None
            and item.received_at < reply.received_at
        ]
        return max(candidates, key=lambda item: item.received_at) if candidates else None

    def persist(self, ctx: PhaseContext, batch: List[WorkItem], processed: ProcessedBatch) -> BatchResult:
        stats = ctx.cursor["stats"]
        samples: List[Dict[str, Any]] = ctx.cursor["samples"]
        rows = []
        for reply, inbound in processed.outputs.values():
            body = reply.body or ""
            stats["replies_seen"] += 1
            stats["reply_words"] += len(body.split())
            greeting = detect_greeting(body)
            if greeting:
                stats["greetings"][greeting] = stats["greetings"].get(greeting, 0) + 1
            signoff = detect_signoff(body)
            if signoff:
                stats["signoffs"][signoff] = stats["signoffs"].get(signoff, 0) + 1
            if inbound is None:
                continue

            response_seconds = (reply.received_at - inbound.received_at).total_seconds()
            category = inbound.category or "uncategorized"
            stats["pairs"] += 1
            stats["response_seconds"] += response_seconds
            stats["categories"][category] = stats["categories"].get(category, 0) + 1
            rows.append(
                {
                    "workspace_id": ctx.workspace_id,
                    "inbound_external_id": inbound.external_id,
                    "outbound_external_id": reply.external_id,
                    "conversation_id": reply.conversation_id,
                    "inbound_category": category,
                    "response_seconds": int(response_seconds),
                    "reply_length": len(body),
                }
            )
            if len(samples) < self.config.voice_sample_limit:
                samples.append({"inbound": inbound.body or "", "outbound": body[:1000]})

        if rows:
            retry_on_network_error(
                self.client.table("reply_pairs")
                .upsert(rows, on_conflict="workspace_id,outbound_external_id")
                .execute
            )
        ctx.cursor["offset"] += len(batch)
        return BatchResult(succeeded=len(batch))

    def remaining(self, ctx: PhaseContext) -> int:
        return max(0, ctx.state.get("total", 0) - ctx.cursor.get("offset", 0))

    def checkpoint_done(self, ctx: PhaseContext) -> int:
        return ctx.cursor["offset"]

    def finalize(self, ctx: PhaseContext) -> Dict[str, Any]:
        stats = ctx.cursor.get("stats") or empty_stats()
        summary = summarize_stats(stats)
        profile: Optional[Dict[str, Any]] = None
        if stats["pairs"] >= self.config.min_voice_pairs:
            try:
                profile = self.completion.derive_voice_profile(ctx.cursor.get("samples") or [], summary)
            except CompletionServiceError as exc:
                ctx.log.warning("Voice profile derivation failed, storing statistics only: %s", exc)
        else:
            ctx.log.info("Only %d reply pairs, skipping voice profile", stats["pairs"])

        row = {
            "workspace_id": ctx.workspace_id,
            "analytics": summary,
            "profile": profile,
            "sample_count": len(ctx.cursor.get("samples") or []),
            "updated_at": to_iso(utc_now()),
        }
        retry_on_network_error(
            self.client.table("voice_profiles").upsert(row, on_conflict="workspace_id").execute
        )
        return {"reply_pairs": stats["pairs"], "voice_profile": profile is not None}
