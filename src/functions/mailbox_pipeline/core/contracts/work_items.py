"""Work items, the unit of progress inside a phase."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .jobs import parse_timestamp

# Items are hashed into a fixed number of buckets at insert time; a partition
# is the set of buckets congruent to its id.
PARTITION_BUCKETS = 1024


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CLASSIFIED = "classified"
    PROCESSED = "processed"
    SKIPPED = "skipped"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


def partition_bucket(external_id: str) -> int:
    """Stable bucket for an identifier (independent of PYTHONHASHSEED)."""
    digest = hashlib.sha1(external_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % PARTITION_BUCKETS


@dataclass(frozen=True)
class Partition:
    """A disjoint slice of the backlog owned by one dispatched worker."""
    partition_id: int
    total_partitions: int

    def __post_init__(self) -> None:
        if self.total_partitions < 1:
            raise ValueError("total_partitions must be at least 1")
        if not 0 <= self.partition_id < self.total_partitions:
            raise ValueError(
                f"partition_id {self.partition_id} out of range for {self.total_partitions} partitions"
            )

    @classmethod
    def whole(cls) -> "Partition":
        return cls(0, 1)

    @property
    def is_whole(self) -> bool:
        return self.total_partitions == 1

    def buckets(self) -> List[int]:
        return list(range(self.partition_id, PARTITION_BUCKETS, self.total_partitions))

    def owns(self, external_id: str) -> bool:
        return partition_bucket(external_id) % self.total_partitions == self.partition_id

    def label(self) -> str:
        return f"{self.partition_id + 1}/{self.total_partitions}"


@dataclass
class WorkItem:
    """One imported message (or research site) awaiting processing."""
    id: str
    workspace_id: str
    external_id: str
    status: WorkItemStatus
    retry_count: int = 0
    thread_id: Optional[str] = None
    direction: Optional[Direction] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    to_emails: List[str] = field(default_factory=list)
    subject: Optional[str] = None
    body: Optional[str] = None
    received_at: Optional[datetime] = None
    category: Optional[str] = None
    requires_reply: Optional[bool] = None
    conversation_id: Optional[str] = None
    claimed_by: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WorkItem":
        direction = row.get("direction")
        return cls(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            external_id=str(row["external_id"]),
            status=WorkItemStatus(row.get("status") or WorkItemStatus.PENDING.value),
            retry_count=row.get("retry_count") or 0,
            thread_id=row.get("thread_id"),
            direction=Direction(direction) if direction else None,
            from_email=row.get("from_email"),
            from_name=row.get("from_name"),
            to_emails=list(row.get("to_emails") or []),
            subject=row.get("subject"),
            body=row.get("body"),
            received_at=parse_timestamp(row.get("received_at")),
            category=row.get("category"),
            requires_reply=row.get("requires_reply"),
            conversation_id=row.get("conversation_id"),
            claimed_by=row.get("claimed_by"),
            raw=row,
        )

    @property
    def snippet(self) -> str:
        text = " ".join((self.body or "").split())
        return text[:200]
