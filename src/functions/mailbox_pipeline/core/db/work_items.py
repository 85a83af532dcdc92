"""Work item persistence: idempotent upserts and partitioned, conditional claims."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from src.shared.batch import retry_on_network_error

from ..contracts.jobs import to_iso, utc_now
from ..contracts.work_items import (
    Direction,
    Partition,
    WorkItem,
    WorkItemStatus,
    partition_bucket,
)

logger = logging.getLogger(__name__)

ITEM_CONFLICT_COLUMNS = "workspace_id,external_id"


class WorkItemRepository:
    """Reads and advances rows of one work item table.

    Claims are two-step: select candidate ids in arrival order, then flip them
    from the source status to ``processing`` with the status in the filter,
    so two invocations can never claim the same row.
    """

    TABLE_NAME = "email_import_queue"

    def __init__(
        self,
        client,
        *,
        table_name: Optional[str] = None,
        order_columns: Sequence[str] = ("received_at", "external_id"),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.table_name = table_name or self.TABLE_NAME
        self.order_columns = tuple(order_columns)
        self._clock = clock

    def _table(self):
        return self.client.table(self.table_name)

    def _execute(self, query):
        return retry_on_network_error(query.execute)

    def _rows(self, query) -> List[Dict[str, Any]]:
        return getattr(self._execute(query), "data", None) or []

    def _now(self) -> str:
        return to_iso(self._clock())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_items(self, workspace_id: str, records: Iterable[Dict[str, Any]]) -> int:
        """Insert new items keyed on (workspace_id, external_id).

        Existing rows are left untouched, so re-running a page is harmless.

        Returns:
            Number of rows that were actually inserted
        """
        now = self._now()
        payload = []
        for record in records:
            external_id = str(record["external_id"])
            row = dict(record)
            row.update(
                {
                    "workspace_id": workspace_id,
                    "external_id": external_id,
                    "status": WorkItemStatus.PENDING.value,
                    "retry_count": 0,
                    "partition_bucket": partition_bucket(external_id),
                    "created_at": now,
                }
            )
            payload.append(row)
        if not payload:
            return 0

        inserted = self._rows(
            self._table().upsert(payload, on_conflict=ITEM_CONFLICT_COLUMNS, ignore_duplicates=True)
        )
        logger.debug("Upserted %d items into %s, %d new", len(payload), self.table_name, len(inserted))
        return len(inserted)

    def claim_batch(
        self,
        workspace_id: str,
        *,
        from_status: WorkItemStatus,
        limit: int,
        claimed_by: str,
        partition: Optional[Partition] = None,
    ) -> List[WorkItem]:
        """Claim up to ``limit`` items in ``from_status`` for this invocation."""
        query = self._scoped(workspace_id, partition).eq("status", from_status.value)
        for column in self.order_columns:
            query = query.order(column)
        candidates = self._rows(query.limit(limit))
        if not candidates:
            return []

        ids = [row["id"] for row in candidates]
        claimed = self._rows(
            self._table()
            .update(
                {
                    "status": WorkItemStatus.PROCESSING.value,
                    "claimed_by": claimed_by,
                    "claimed_at": self._now(),
                    "claimed_from": from_status.value,
                }
            )
            .in_("id", ids)
            .eq("status", from_status.value)
        )
        if len(claimed) < len(ids):
            logger.debug("Claimed %d of %d candidates; the rest went to another worker", len(claimed), len(ids))
        items = [WorkItem.from_row(row) for row in claimed]
        position = {item_id: index for index, item_id in enumerate(ids)}
        items.sort(key=lambda item: position.get(item.id, len(ids)))
        return items

    def complete_item(
        self,
        item_id: str,
        *,
        to_status: WorkItemStatus,
        claimed_by: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Finish an item this invocation holds. False if the claim was lost."""
        update = {
            "status": to_status.value,
            "claimed_by": None,
            "claimed_at": None,
            "processed_at": self._now(),
            "last_error": None,
        }
        update.update(fields or {})
        rows = self._rows(
            self._table()
            .update(update)
            .eq("id", item_id)
            .eq("status", WorkItemStatus.PROCESSING.value)
            .eq("claimed_by", claimed_by)
        )
        return bool(rows)

    def fail_item(
        self,
        item: WorkItem,
        *,
        error: str,
        claimed_by: str,
        return_status: WorkItemStatus,
        max_retries: int,
    ) -> WorkItemStatus:
        """Count a transient failure; the item is skipped once it hits the ceiling."""
        retry_count = item.retry_count + 1
        status = WorkItemStatus.SKIPPED if retry_count >= max_retries else return_status
        self._rows(
            self._table()
            .update(
                {
                    "status": status.value,
                    "retry_count": retry_count,
                    "last_error": error[:500],
                    "claimed_by": None,
                    "claimed_at": None,
                }
            )
            .eq("id", item.id)
            .eq("status", WorkItemStatus.PROCESSING.value)
            .eq("claimed_by", claimed_by)
        )
        if status is WorkItemStatus.SKIPPED:
            logger.warning("Skipping item %s after %d failures: %s", item.external_id, retry_count, error)
        return status

    def release_items(self, item_ids: Sequence[str], *, claimed_by: str, to_status: WorkItemStatus) -> int:
        """Hand claimed items back without counting a failure."""
        if not item_ids:
            return 0
        rows = self._rows(
            self._table()
            .update({"status": to_status.value, "claimed_by": None, "claimed_at": None})
            .in_("id", list(item_ids))
            .eq("status", WorkItemStatus.PROCESSING.value)
            .eq("claimed_by", claimed_by)
        )
        return len(rows)

    def release_stale_claims(self, workspace_id: str, *, older_than_seconds: int) -> int:
        """Return items held by crashed invocations to the status they were claimed from."""
        cutoff = to_iso(self._clock() - timedelta(seconds=older_than_seconds))
        stale = self._rows(
            self._table()
            .select("id,claimed_from")
            .eq("workspace_id", workspace_id)
            .eq("status", WorkItemStatus.PROCESSING.value)
            .lt("claimed_at", cutoff)
        )
        released = 0
        by_status: Dict[str, List[str]] = {}
        for row in stale:
            by_status.setdefault(row.get("claimed_from") or WorkItemStatus.PENDING.value, []).append(row["id"])
        for status, ids in by_status.items():
            released += len(
                self._rows(
                    self._table()
                    .update({"status": status, "claimed_by": None, "claimed_at": None})
                    .in_("id", ids)
                    .eq("status", WorkItemStatus.PROCESSING.value)
                    .lt("claimed_at", cutoff)
                )
            )
        if released:
            logger.warning("Released %d stale claims in %s for workspace %s", released, self.table_name, workspace_id)
        return released

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def count(
        self,
        workspace_id: str,
        statuses: Iterable[WorkItemStatus],
        *,
        partition: Optional[Partition] = None,
        direction: Optional[Direction] = None,
        claimed_from: Optional[WorkItemStatus] = None,
    ) -> int:
        query = self._table().select("id", count="exact").eq("workspace_id", workspace_id)
        query = query.in_("status", [status.value for status in statuses])
        if partition is not None and not partition.is_whole:
            query = query.in_("partition_bucket", partition.buckets())
        if direction is not None:
            query = query.eq("direction", direction.value)
        if claimed_from is not None:
            query = query.eq("claimed_from", claimed_from.value)
        response = self._execute(query.limit(1))
        count = getattr(response, "count", None)
        return int(count or 0)

    def backlog(self, workspace_id: str, from_status: WorkItemStatus, *, partition: Optional[Partition] = None) -> int:
        """Items still waiting in ``from_status`` (claimable now)."""
        return self.count(workspace_id, [from_status], partition=partition)

    def in_flight(self, workspace_id: str, from_status: WorkItemStatus, *, partition: Optional[Partition] = None) -> int:
        """Items claimed out of ``from_status`` and not yet finished."""
        return self.count(
            workspace_id,
            [WorkItemStatus.PROCESSING],
            partition=partition,
            claimed_from=from_status,
        )

    def fetch_page(
        self,
        workspace_id: str,
        *,
        statuses: Iterable[WorkItemStatus],
        offset: int,
        limit: int,
        direction: Optional[Direction] = None,
    ) -> List[WorkItem]:
        query = (
            self._table()
            .select("*")
            .eq("workspace_id", workspace_id)
            .in_("status", [status.value for status in statuses])
        )
        if direction is not None:
            query = query.eq("direction", direction.value)
        for column in self.order_columns:
            query = query.order(column)
        rows = self._rows(query.range(offset, offset + limit - 1))
        return [WorkItem.from_row(row) for row in rows]

    def fetch_threads(self, workspace_id: str, thread_ids: Iterable[str]) -> List[WorkItem]:
        ids = sorted({thread_id for thread_id in thread_ids if thread_id})
        if not ids:
            return []
        query = self._table().select("*").eq("workspace_id", workspace_id).in_("thread_id", ids)
        for column in self.order_columns:
            query = query.order(column)
        return [WorkItem.from_row(row) for row in self._rows(query)]

    def _scoped(self, workspace_id: str, partition: Optional[Partition]):
        query = self._table().select("id").eq("workspace_id", workspace_id)
        if partition is not None and not partition.is_whole:
            query = query.in_("partition_bucket", partition.buckets())
        return query
