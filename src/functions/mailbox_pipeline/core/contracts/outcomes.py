"""Result of one phase-handler invocation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .jobs import JobKind


class OutcomeKind(str, Enum):
    CONTINUE = "continue"
    ADVANCE_PHASE = "advance_phase"
    PAUSED = "paused"
    COMPLETE = "complete"
    FAILED = "failed"


# Response ``status`` reported to callers for each outcome.
_RESPONSE_STATUS = {
    OutcomeKind.CONTINUE: "continuing",
    OutcomeKind.ADVANCE_PHASE: "complete",
    OutcomeKind.PAUSED: "paused",
    OutcomeKind.COMPLETE: "complete",
    OutcomeKind.FAILED: "error",
}


@dataclass
class PhaseOutcome:
    """What the invocation decided once its loop stopped.

    Use the constructors (``PhaseOutcome.continue_with`` and friends) rather
    than building instances directly.
    """

    kind: OutcomeKind
    cursor: Dict[str, Any] = field(default_factory=dict)
    next_kind: Optional[JobKind] = None
    next_input: Dict[str, Any] = field(default_factory=dict)
    resume_after_seconds: Optional[float] = None
    reason: Optional[str] = None
    chained: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def continue_with(cls, cursor: Dict[str, Any], *, reason: Optional[str] = None) -> "PhaseOutcome":
        return cls(OutcomeKind.CONTINUE, cursor=dict(cursor), reason=reason)

    @classmethod
    def advance(
        cls,
        next_kind: Optional[JobKind],
        next_input: Optional[Dict[str, Any]] = None,
    ) -> "PhaseOutcome":
        return cls(OutcomeKind.ADVANCE_PHASE, next_kind=next_kind, next_input=dict(next_input or {}))

    @classmethod
    def paused(cls, resume_after_seconds: float, *, reason: Optional[str] = None) -> "PhaseOutcome":
        return cls(OutcomeKind.PAUSED, resume_after_seconds=resume_after_seconds, reason=reason)

    @classmethod
    def complete(cls, reason: Optional[str] = None) -> "PhaseOutcome":
        return cls(OutcomeKind.COMPLETE, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "PhaseOutcome":
        return cls(OutcomeKind.FAILED, reason=reason)

    @classmethod
    def skipped(cls, reason: str) -> "PhaseOutcome":
        """Nothing was done because another invocation holds the phase."""
        return cls(OutcomeKind.COMPLETE, reason=reason, details={"status": "skipped"})

    @property
    def response_status(self) -> str:
        return _RESPONSE_STATUS[self.kind]

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.response_status, "outcome": self.kind.value}
        if self.reason:
            body["reason"] = self.reason
        if self.kind is OutcomeKind.CONTINUE:
            body["chained"] = self.chained
        if self.kind is OutcomeKind.ADVANCE_PHASE:
            body["next_phase"] = self.next_kind.value if self.next_kind else None
        if self.resume_after_seconds is not None:
            body["retry_after_seconds"] = self.resume_after_seconds
        body.update(self.details)
        return body
