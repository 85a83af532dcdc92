"""Rate-limit detection and backoff for external collaborators.

Every adapter that calls the mail provider, the completion service or the
research service funnels its HTTP status through :func:`classify_response`
and raises :class:`RateLimitError` on a rate limit. Handlers turn that error
into a ``paused`` job; a rate limit never counts as a retry.
"""

from __future__ import annotations

import math
import random
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Mapping, Optional, Union

DEFAULT_RETRY_AFTER_SECONDS = 30.0
RATE_LIMIT_STATUS_CODES = frozenset({429})

_RETRY_IN_PATTERN = re.compile(r"retry in ([\d.]+)\s*s", re.IGNORECASE)


class RateLimitError(Exception):
    """Raised by adapters when the upstream asks us to slow down."""

    def __init__(self, message: str, retry_after_seconds: float = DEFAULT_RETRY_AFTER_SECONDS) -> None:
        super().__init__(message)
        self.retry_after_seconds = float(retry_after_seconds)


@dataclass(frozen=True)
class Normal:
    """Response may be processed as usual."""


@dataclass(frozen=True)
class RateLimited:
    retry_after_seconds: float


ResponseClassification = Union[Normal, RateLimited]


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        # Plain dicts are case sensitive, httpx.Headers is not.
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def parse_retry_after(
    value: Optional[str],
    *,
    fallback: float = DEFAULT_RETRY_AFTER_SECONDS,
    now: Optional[datetime] = None,
) -> float:
    """Interpret a Retry-After header (delta-seconds or HTTP-date)."""
    if value is None or not str(value).strip():
        return fallback
    text = str(value).strip()
    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds >= 0 else fallback

    try:
        retry_at = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return fallback
    if retry_at is None:
        return fallback
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    delta = (retry_at - now).total_seconds()
    return float(math.ceil(delta)) if delta > 0 else fallback


def parse_retry_delay_from_text(text: Optional[str]) -> Optional[float]:
    """Extract the delay from messages such as ``Please retry in 38.69s``."""
    if not text:
        return None
    match = _RETRY_IN_PATTERN.search(text)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def classify_response(
    status_code: int,
    headers: Optional[Mapping[str, str]] = None,
    *,
    body_text: Optional[str] = None,
    fallback: float = DEFAULT_RETRY_AFTER_SECONDS,
    now: Optional[datetime] = None,
) -> ResponseClassification:
    """Decide whether an upstream response is a rate limit and how long to wait."""
    if status_code not in RATE_LIMIT_STATUS_CODES:
        return Normal()

    header_value = _header(headers, "Retry-After")
    if header_value is not None:
        return RateLimited(parse_retry_after(header_value, fallback=fallback, now=now))

    from_text = parse_retry_delay_from_text(body_text)
    if from_text is not None:
        return RateLimited(from_text)
    return RateLimited(fallback)


def raise_for_rate_limit(
    status_code: int,
    headers: Optional[Mapping[str, str]] = None,
    *,
    body_text: Optional[str] = None,
    source: str = "upstream",
) -> None:
    """Raise :class:`RateLimitError` when ``classify_response`` says so."""
    decision = classify_response(status_code, headers, body_text=body_text)
    if isinstance(decision, RateLimited):
        raise RateLimitError(
            f"{source} rate limited (HTTP {status_code})",
            retry_after_seconds=decision.retry_after_seconds,
        )


def calculate_backoff_seconds(
    attempt: int,
    base_seconds: float = 5.0,
    max_seconds: float = 300.0,
    *,
    jitter: Callable[[], float] = lambda: random.uniform(0, 3),
) -> float:
    """Capped exponential backoff: base * 2^(attempt-1) plus a little jitter."""
    exponent = max(0, attempt - 1)
    return min(max_seconds, base_seconds * (2 ** exponent) + jitter())
