"""Partitioned fan-out of the classification phase."""

from .dispatcher import DispatchResult, PartitionDispatcher
from .partitioning import assign, plan_partitions

__all__ = ["DispatchResult", "PartitionDispatcher", "assign", "plan_partitions"]
