"""Conversion phase: turns classified email threads into conversations."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from src.shared.batch import retry_on_network_error

from ..contracts.functions import CONVERT_FUNCTION
from ..contracts.jobs import JobKind, to_iso, utc_now
from ..contracts.work_items import Direction, WorkItem, WorkItemStatus
from ..db.work_items import WorkItemRepository
from .base import BatchResult, PhaseContext, PhaseDependencies, ProcessedBatch
from .work_item_phase import WorkItemPhaseHandler

AUTO_HANDLED_CATEGORIES = frozenset(
    {"notification", "spam", "newsletter", "receipt", "marketing", "automated", "system", "transactional"}
)


@dataclass
class ThreadPlan:
    """Rows to write for one email thread."""

    thread_id: str
    items: List[WorkItem]
    customer: Optional[Dict[str, Any]]
    conversation: Dict[str, Any]
    messages: List[Dict[str, Any]] = field(default_factory=list)


def _counterparty(items: List[WorkItem]) -> Optional[Dict[str, Any]]:
    """The customer in a thread: latest inbound sender, else first outbound recipient."""
    inbound = [item for item in items if item.direction is Direction.INBOUND and item.from_email]
    if inbound:
        latest = inbound[-1]
        return {"email": latest.from_email, "name": latest.from_name or latest.from_email.split("@")[0]}
    for item in items:
        if item.to_emails:
            email = item.to_emails[0]
            return {"email": email, "name": email.split("@")[0]}
    return None


def build_thread_plan(workspace_id: str, thread_id: str, items: List[WorkItem]) -> ThreadPlan:
    latest = items[-1]
    category = latest.category or "inquiry"
    latest_inbound = next((item for item in reversed(items) if item.direction is Direction.INBOUND), None)
    conversation = {
        "workspace_id": workspace_id,
        "external_conversation_id": f"import_{thread_id}",
        "title": latest.subject or "No subject",
        "channel": "email",
        "category": category,
        "email_classification": category,
        "requires_reply": bool(latest_inbound.requires_reply) if latest_inbound else False,
        "decision_bucket": "auto_handled" if category in AUTO_HANDLED_CATEGORIES else "quick_win",
        "status": "open",
        "updated_at": to_iso(utc_now()),
    }
    messages = [
        {
            "workspace_id": workspace_id,
            "external_id": item.external_id,
            "body": item.body or "",
            "direction": item.direction.value if item.direction else Direction.INBOUND.value,
            "actor_type": "customer" if item.direction is Direction.INBOUND else "human_agent",
            "actor_name": item.from_name or item.from_email,
            "channel": "email",
            "created_at": to_iso(item.received_at) if item.received_at else None,
        }
        for item in items
    ]
    return ThreadPlan(
        thread_id=thread_id,
        items=items,
        customer=_counterparty(items),
        conversation=conversation,
        messages=messages,
    )


class ConvertHandler(WorkItemPhaseHandler):
    kind = JobKind.CONVERT
    function_name = CONVERT_FUNCTION
    source_status = WorkItemStatus.CLASSIFIED
    target_status = WorkItemStatus.PROCESSED

    def __init__(self, deps: PhaseDependencies, items: WorkItemRepository, client) -> None:
        super().__init__(deps, items)
        self.client = client

    def process_batch(self, ctx: PhaseContext, batch: List[WorkItem]) -> ProcessedBatch:
        threads: "OrderedDict[str, List[WorkItem]]" = OrderedDict()
        for item in batch:
            threads.setdefault(item.thread_id or item.external_id, []).append(item)

        processed = ProcessedBatch()
        for thread_id, items in threads.items():
            plan = build_thread_plan(ctx.workspace_id, thread_id, items)
            if plan.customer is None:
                for item in items:
                    processed.failures[item.id] = "thread has no customer address"
                continue
            processed.outputs[thread_id] = plan
        return processed

    def persist(self, ctx: PhaseContext, batch: List[WorkItem], processed: ProcessedBatch) -> BatchResult:
        conversations: Dict[str, str] = {}
        for thread_id, plan in processed.outputs.items():
            try:
                conversations[thread_id] = self._write_thread(plan)
            except APIError as exc:
                ctx.log.warning("Failed to convert thread %s: %s", thread_id, exc)
                for item in plan.items:
                    processed.failures[item.id] = f"conversion failed: {exc}"

        per_item = ProcessedBatch(failures=processed.failures)
        for thread_id, conversation_id in conversations.items():
            for item in processed.outputs[thread_id].items:
                per_item.outputs[item.id] = conversation_id
        return super().persist(ctx, batch, per_item)

    def item_fields(self, item: WorkItem, output: Any) -> Dict[str, Any]:
        return {"conversation_id": output}

    def _write_thread(self, plan: ThreadPlan) -> str:
        customer_rows = self._upsert("customers", {
            "workspace_id": plan.conversation["workspace_id"],
            "email": plan.customer["email"],
            "name": plan.customer["name"],
            "preferred_channel": "email",
        }, on_conflict="workspace_id,email")
        conversation = dict(plan.conversation)
        conversation["customer_id"] = customer_rows[0]["id"]
        conversation_rows = self._upsert(
            "conversations",
            conversation,
            on_conflict="workspace_id,external_conversation_id",
        )
        conversation_id = conversation_rows[0]["id"]
        messages = [dict(message, conversation_id=conversation_id) for message in plan.messages]
        self._upsert("messages", messages, on_conflict="workspace_id,external_id")
        return conversation_id

    def _upsert(self, table: str, rows: Any, *, on_conflict: str) -> List[Dict[str, Any]]:
        response = retry_on_network_error(
            self.client.table(table).upsert(rows, on_conflict=on_conflict).execute
        )
        return response.data or []
