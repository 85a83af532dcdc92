"""Phase handlers for the mailbox pipeline."""

from .analyze import AnalyzeHandler
from .base import (
    BatchResult,
    PhaseContext,
    PhaseDependencies,
    PhaseHandler,
    ProcessedBatch,
)
from .classify import ClassifyHandler
from .convert import ConvertHandler
from .import_phase import ImportHandler
from .research import ResearchHandler
from .work_item_phase import WorkItemPhaseHandler

__all__ = [
    "AnalyzeHandler",
    "BatchResult",
    "ClassifyHandler",
    "ConvertHandler",
    "ImportHandler",
    "PhaseContext",
    "PhaseDependencies",
    "PhaseHandler",
    "ProcessedBatch",
    "ResearchHandler",
    "WorkItemPhaseHandler",
]
