"""Error collection and the pipeline watchdog."""

from .error_handler import ErrorHandler, RecordedError
from .watchdog import Watchdog, WatchdogReport

__all__ = ["ErrorHandler", "RecordedError", "Watchdog", "WatchdogReport"]
