"""Self-chaining of phase invocations."""

from .chainer import (
    WORKER_TOKEN_HEADER,
    ChainCommand,
    HttpInvocationTransport,
    InvocationTransport,
    LocalQueueTransport,
    RelayChainer,
)

__all__ = [
    "WORKER_TOKEN_HEADER",
    "ChainCommand",
    "HttpInvocationTransport",
    "InvocationTransport",
    "LocalQueueTransport",
    "RelayChainer",
]
