"""Execution locks in ``pipeline_locks``.

A lock is a row unique on (workspace_id, function_name). Acquiring is an
insert; a unique violation means somebody else holds it. Locks expire after a
TTL that is shorter than the watchdog's staleness threshold, so a crashed
holder never blocks a resurrected phase.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from postgrest.exceptions import APIError

from src.shared.batch import retry_on_network_error

from ..contracts.jobs import to_iso, utc_now

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class ExecutionLockStore:
    TABLE_NAME = "pipeline_locks"

    def __init__(
        self,
        client,
        *,
        ttl_seconds: int = 180,
        table_name: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.table_name = table_name or self.TABLE_NAME
        self._clock = clock

    def _table(self):
        return self.client.table(self.table_name)

    def _cutoff(self) -> str:
        return to_iso(self._clock() - timedelta(seconds=self.ttl_seconds))

    def acquire(self, workspace_id: str, function_name: str, holder: str) -> bool:
        """Try to take the lock; an expired lock is broken and retried once."""
        if self._try_insert(workspace_id, function_name, holder):
            return True

        broken = retry_on_network_error(
            self._table()
            .delete()
            .eq("workspace_id", workspace_id)
            .eq("function_name", function_name)
            .lt("locked_at", self._cutoff())
            .execute
        )
        if getattr(broken, "data", None):
            logger.warning("Broke expired lock %s for workspace %s", function_name, workspace_id)
            return self._try_insert(workspace_id, function_name, holder)
        return False

    def _try_insert(self, workspace_id: str, function_name: str, holder: str) -> bool:
        row = {
            "workspace_id": workspace_id,
            "function_name": function_name,
            "locked_at": to_iso(self._clock()),
            "locked_by": holder,
        }
        try:
            retry_on_network_error(self._table().insert(row).execute)
        except APIError as exc:
            if str(getattr(exc, "code", "")) == UNIQUE_VIOLATION:
                logger.info("Lock %s for workspace %s is held elsewhere", function_name, workspace_id)
                return False
            raise
        return True

    def refresh(self, workspace_id: str, function_name: str, holder: str) -> bool:
        response = retry_on_network_error(
            self._table()
            .update({"locked_at": to_iso(self._clock())})
            .eq("workspace_id", workspace_id)
            .eq("function_name", function_name)
            .eq("locked_by", holder)
            .execute
        )
        return bool(getattr(response, "data", None))

    def release(self, workspace_id: str, function_name: str, holder: str) -> None:
        retry_on_network_error(
            self._table()
            .delete()
            .eq("workspace_id", workspace_id)
            .eq("function_name", function_name)
            .eq("locked_by", holder)
            .execute
        )

    def reclaim_expired(self) -> int:
        """Delete every lock older than the TTL. Returns how many were removed."""
        response = retry_on_network_error(
            self._table().delete().lt("locked_at", self._cutoff()).execute
        )
        removed = len(getattr(response, "data", None) or [])
        if removed:
            logger.warning("Reclaimed %d expired execution locks", removed)
        return removed
