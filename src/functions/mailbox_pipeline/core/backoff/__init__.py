"""Rate-limit and backoff policy."""

from .rate_limit import (
    DEFAULT_RETRY_AFTER_SECONDS,
    Normal,
    RateLimited,
    RateLimitError,
    calculate_backoff_seconds,
    classify_response,
    parse_retry_after,
    parse_retry_delay_from_text,
    raise_for_rate_limit,
)

__all__ = [
    "DEFAULT_RETRY_AFTER_SECONDS",
    "Normal",
    "RateLimited",
    "RateLimitError",
    "calculate_backoff_seconds",
    "classify_response",
    "parse_retry_after",
    "parse_retry_delay_from_text",
    "raise_for_rate_limit",
]
