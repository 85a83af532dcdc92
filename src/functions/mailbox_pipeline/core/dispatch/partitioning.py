"""Splitting a backlog into disjoint partitions."""

from __future__ import annotations

from typing import Iterable, List

from ..contracts.work_items import Partition


def plan_partitions(workers: int) -> List[Partition]:
    return [Partition(index, workers) for index in range(workers)]


def assign(external_ids: Iterable[str], partitions: List[Partition]) -> List[List[str]]:
    """Group identifiers by the partition that owns them."""
    groups: List[List[str]] = [[] for _ in partitions]
    for external_id in external_ids:
        for index, partition in enumerate(partitions):
            if partition.owns(external_id):
                groups[index].append(external_id)
                break
    return groups
