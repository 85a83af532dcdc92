"""Supabase-backed stores for jobs, work items, locks and progress."""

from .job_store import JobStore
from .lock_store import ExecutionLockStore
from .progress_writer import ProgressWriter
from .work_items import WorkItemRepository

__all__ = ["JobStore", "ExecutionLockStore", "ProgressWriter", "WorkItemRepository"]
