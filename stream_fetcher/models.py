"""Data models and enums for the stream fetcher"""

from dataclasses import dataclass
from enum import Enum


class CircuitState(Enum):
    """Circuit breaker states"""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


class ErrorKind(Enum):
    """Closed taxonomy of fetch failures"""

    NETWORK_TIMEOUT = "network_timeout"
    DNS_FAILURE = "dns_failure"
    CONNECTION_ERROR = "connection_error"
    CLIENT_ERROR_4XX = "client_error_4xx"
    SERVER_ERROR_5XX = "server_error_5xx"
    CIRCUIT_OPEN = "circuit_open"
    POLICY_BLOCKED = "policy_blocked"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.NETWORK_TIMEOUT,
        ErrorKind.CONNECTION_ERROR,
        ErrorKind.SERVER_ERROR_5XX,
        ErrorKind.UNKNOWN,
    }
)


class FormatterState(Enum):
    """Lifecycle of a streaming Markdown conversion"""

    STREAMING = "streaming"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    ERRORED = "errored"


@dataclass
class OriginCircuit:
    """Failure-isolation state for one origin (hostname)"""

    origin: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_transition_time: float = 0.0
    half_open_probes_issued: int = 0
    half_open_successes: int = 0


@dataclass(frozen=True)
class QueueMetrics:
    """Snapshot of scheduler load"""

    active: int
    queued: int
    depth: int
