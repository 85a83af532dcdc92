"""Per-item error collection for phase responses."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)

MAX_RECORDED_ERRORS = 25


@dataclass(slots=True)
class RecordedError:
    """An item-level failure captured during a batch."""

    unit: str
    stage: str
    message: str
    retryable: bool
    exception_type: str


class ErrorHandler:
    """Collects item errors so the invocation can report them.

    Only the first ``MAX_RECORDED_ERRORS`` are kept; the rest are counted.
    """

    def __init__(self) -> None:
        self._errors: List[RecordedError] = []
        self.dropped = 0

    def record(self, unit: str, stage: str, error: BaseException | str, *, retryable: bool = True) -> None:
        message = str(error)
        exc_type = type(error).__name__ if isinstance(error, BaseException) else "ItemError"
        logger.debug("Recording %s error for %s: %s", stage, unit, message)
        if len(self._errors) >= MAX_RECORDED_ERRORS:
            self.dropped += 1
            return
        self._errors.append(
            RecordedError(
                unit=unit,
                stage=stage,
                message=message[:500],
                retryable=retryable,
                exception_type=exc_type,
            )
        )

    @property
    def errors(self) -> List[RecordedError]:
        return list(self._errors)

    def as_dict(self) -> List[dict]:
        """Serialise errors for JSON responses."""

        return [
            {
                "unit": error.unit,
                "stage": error.stage,
                "message": error.message,
                "retryable": error.retryable,
                "exception_type": error.exception_type,
            }
            for error in self._errors
        ]
