"""Shared batch processing infrastructure.

- retry_on_network_error: retry wrapper for PostgREST calls with exponential backoff

Usage:
    from src.shared.batch import retry_on_network_error
"""

from .retry import RETRYABLE_ERRORS, retry_on_network_error

__all__ = ["RETRYABLE_ERRORS", "retry_on_network_error"]
