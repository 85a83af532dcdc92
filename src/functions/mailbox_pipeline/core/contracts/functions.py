"""Deployed function names and which one starts each phase."""

from __future__ import annotations

from .jobs import JobKind

IMPORT_FUNCTION = "email-import"
CLASSIFY_FUNCTION = "email-classify"
CONVERT_FUNCTION = "email-convert"
ANALYZE_FUNCTION = "email-analyze"
RESEARCH_FUNCTION = "competitor-research"
DISPATCHER_FUNCTION = "classify-dispatcher"
WATCHDOG_FUNCTION = "pipeline-watchdog"

HANDLER_FUNCTIONS = {
    JobKind.IMPORT: IMPORT_FUNCTION,
    JobKind.CLASSIFY: CLASSIFY_FUNCTION,
    JobKind.CONVERT: CONVERT_FUNCTION,
    JobKind.ANALYZE: ANALYZE_FUNCTION,
    JobKind.RESEARCH: RESEARCH_FUNCTION,
}


def handler_function(kind: JobKind) -> str:
    return HANDLER_FUNCTIONS[kind]


def entry_function(kind: JobKind) -> str:
    """Function to invoke when a phase (re)starts; classification fans out first."""
    if kind is JobKind.CLASSIFY:
        return DISPATCHER_FUNCTION
    return HANDLER_FUNCTIONS[kind]
