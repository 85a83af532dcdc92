"""Exception hierarchy for the mailbox pipeline."""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""


class PhaseFatalError(PipelineError):
    """Invalidates the whole phase (bad configuration, revoked credentials).

    The job is marked failed immediately; the watchdog will not retry it.
    """


class MailProviderError(PipelineError):
    """Transient mail provider failure."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CompletionServiceError(PipelineError):
    """The completion service returned an unusable response."""


class ResearchServiceError(PipelineError):
    """The research extraction service failed for one site."""


class InvalidRequestError(PipelineError):
    """A trigger request was malformed."""
