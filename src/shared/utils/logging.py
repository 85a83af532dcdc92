"""Shared logging configuration for all functions.

Cloud Logging picks up stdout, so every function configures the root logger
once at import time and uses module loggers afterwards. Pipeline code that
runs on behalf of a workspace wraps its logger with
:func:`get_pipeline_logger` so each line carries the function and workspace.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, MutableMapping, Optional, Tuple

_NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "postgrest", "supabase", "openai", "urllib3")


def setup_logging(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
    include_timestamp: bool = True,
) -> None:
    """Configure root logger with a stdout handler.

    Args:
        level: Logging level name. If None, reads LOG_LEVEL or defaults to INFO.
        format_string: Custom format string. If None, uses default format.
        include_timestamp: Whether to include timestamp in log messages.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    level = level.upper()

    if format_string is None:
        if include_timestamp:
            format_string = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        else:
            format_string = "[%(levelname)s] %(name)s: %(message)s"

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=format_string,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True,
    )

    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


class PipelineLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with ``[function:workspace]``."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        function_name = self.extra.get("function_name", "-")
        workspace_id = self.extra.get("workspace_id") or "-"
        return f"[{function_name}:{workspace_id}] {msg}", kwargs


def get_pipeline_logger(
    name: str,
    function_name: str,
    workspace_id: Optional[str] = None,
) -> PipelineLogAdapter:
    """Return a logger adapter bound to one function invocation."""
    return PipelineLogAdapter(
        logging.getLogger(name),
        {"function_name": function_name, "workspace_id": workspace_id},
    )
