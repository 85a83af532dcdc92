"""Relay-race self-chaining.

A phase that runs out of time hands its cursor to a fresh invocation of
itself. The hand-off is a :class:`ChainCommand` given to a transport:
production posts it to the function URL and lets go as soon as the request
is accepted, the local transport queues it for a driver loop (CLI, tests).
Delivery is at-least-once at best; the watchdog covers lost hand-offs.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

import httpx

from ..contracts.config import RelaySettings

logger = logging.getLogger(__name__)

WORKER_TOKEN_HEADER = "x-pipeline-worker-token"


@dataclass(frozen=True)
class ChainCommand:
    function_name: str
    payload: Dict[str, Any] = field(default_factory=dict)


class InvocationTransport(Protocol):
    def send(self, command: ChainCommand) -> bool:
        ...


class HttpInvocationTransport:
    """POSTs commands to ``{functions_base_url}/{function_name}``.

    The read timeout is the acknowledgement window: once the request is on
    the wire the target runs regardless, so a read timeout counts as sent.
    """

    def __init__(self, settings: RelaySettings, *, client: Optional[httpx.Client] = None) -> None:
        self.settings = settings
        headers = {"Content-Type": "application/json"}
        if settings.worker_token:
            headers[WORKER_TOKEN_HEADER] = settings.worker_token
        self._client = client or httpx.Client(
            headers=headers,
            timeout=httpx.Timeout(10.0, read=settings.ack_timeout_seconds),
        )
        self._owns_client = client is None

    def send(self, command: ChainCommand) -> bool:
        url = self.settings.function_url(command.function_name)
        try:
            response = self._client.post(url, json=command.payload)
        except httpx.ReadTimeout:
            logger.debug("Chained %s without waiting for completion", command.function_name)
            return True
        except httpx.HTTPError as exc:
            logger.error("Failed to chain %s: %s", command.function_name, exc)
            return False

        if response.status_code >= 400:
            logger.error(
                "Chained call to %s rejected with HTTP %s: %s",
                command.function_name,
                response.status_code,
                response.text[:200],
            )
            return False
        return True

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpInvocationTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class LocalQueueTransport:
    """Keeps commands in memory until :meth:`drain` runs them in order."""

    def __init__(self) -> None:
        self.pending: Deque[ChainCommand] = deque()
        self.sent: List[ChainCommand] = []

    def send(self, command: ChainCommand) -> bool:
        self.pending.append(command)
        self.sent.append(command)
        return True

    def drain(self, run: Callable[[ChainCommand], Any], *, max_commands: int = 10_000) -> int:
        """Run queued commands (including ones queued while draining)."""
        executed = 0
        while self.pending and executed < max_commands:
            run(self.pending.popleft())
            executed += 1
        if self.pending:
            logger.warning("Stopped draining with %d commands still queued", len(self.pending))
        return executed


class RelayChainer:
    """Issues relay hand-offs and one-off invocations."""

    def __init__(self, transport: InvocationTransport, *, max_iterations: int = 200) -> None:
        self.transport = transport
        self.max_iterations = max_iterations

    def chain(self, function_name: str, payload: Dict[str, Any], *, iteration: int) -> bool:
        """Hand the work to the next invocation of ``function_name``.

        Refuses once ``iteration`` reaches ``max_iterations``; the job then
        goes quiet and the watchdog restarts it with a fresh counter.
        """
        if iteration >= self.max_iterations:
            logger.warning(
                "Relay depth %d reached for %s, leaving the job to the watchdog",
                iteration,
                function_name,
            )
            return False
        body = dict(payload)
        body["_iteration"] = iteration
        return self.transport.send(ChainCommand(function_name, body))

    def fire(self, function_name: str, payload: Dict[str, Any]) -> bool:
        """Start ``function_name`` outside of a relay (new phase, dispatch, resurrection)."""
        body = dict(payload)
        body.setdefault("_iteration", 0)
        return self.transport.send(ChainCommand(function_name, body))
