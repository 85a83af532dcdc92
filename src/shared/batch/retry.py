"""Retry helper for PostgREST calls that fail on transient network errors."""

from __future__ import annotations

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

import httpcore
import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    httpx.ConnectError,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
    httpcore.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)


def retry_on_network_error(
    func: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 0.5,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``func`` and retry it on network/protocol errors with exponential backoff.

    Anything that is not a network error (PostgREST ``APIError`` included)
    propagates immediately.

    Args:
        func: Zero-argument callable, usually ``lambda: query.execute()``
        max_retries: Maximum number of attempts
        initial_delay: Delay before the second attempt; doubles afterwards
        sleep: Injected for tests

    Example:
        rows = retry_on_network_error(
            lambda: client.table("pipeline_jobs").select("*").eq("id", job_id).execute(),
        ).data
    """
    delay = initial_delay
    for attempt in range(1, max_retries + 1):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            if attempt >= max_retries:
                logger.error("Network error after %d attempts: %s", max_retries, exc)
                raise
            logger.warning(
                "Network error (attempt %d/%d): %s. Retrying in %.1fs...",
                attempt,
                max_retries,
                exc,
                delay,
            )
            sleep(delay)
            delay *= 2
    raise RuntimeError("retry_on_network_error called with max_retries < 1")
