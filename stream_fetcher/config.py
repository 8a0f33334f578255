"""Configuration constants and settings for the stream fetcher"""

import re
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

DEFAULT_USER_AGENT = "stream-fetcher/0.1 (+https://github.com/stream-fetcher)"

# Scheduler
DEFAULT_CONCURRENCY = 10

# Connection pool (seconds)
POOL_CONNECTIONS = 100
POOL_PIPELINING = 1
POOL_KEEPALIVE_TIMEOUT = 4.0
POOL_CONNECT_TIMEOUT = 10.0
POOL_BODY_TIMEOUT = 300.0
POOL_HEADERS_TIMEOUT = 300.0

# Requests
DEFAULT_REQUEST_TIMEOUT = 30.0

# Retry configuration
MAX_RETRIES = 3
INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 10.0
JITTER_FACTOR = 0.3

# Circuit breaker configuration
CIRCUIT_BREAKER_THRESHOLD = 5  # Retryable failures before opening circuit
CIRCUIT_BREAKER_COOLDOWN = 60.0  # Seconds before probing again
HALF_OPEN_MAX_ATTEMPTS = 3  # Probes admitted per half-open window
HALF_OPEN_SUCCESS_THRESHOLD = 2  # Probe successes needed to close

# Streaming
STREAM_CHUNK_SIZE = 16384
STREAM_TIMEOUT = 30.0

# Processed URL results kept in memory
CACHE_MAX_SIZE = 50

# Robots.txt cache (origins)
ROBOTS_CACHE_SIZE = 50
ROBOTS_MAX_BYTES = 1_000_000  # larger robots.txt files are ignored


@dataclass(frozen=True)
class PipelineConfig:
    """Settings for the whole fetch pipeline. Durations are in seconds."""

    concurrency: int = DEFAULT_CONCURRENCY
    queue_timeout: Optional[float] = None
    rate_limit: Optional[int] = None
    rate_interval: Optional[float] = None
    pool_connections: int = POOL_CONNECTIONS
    pool_pipelining: int = POOL_PIPELINING
    pool_keepalive_timeout: float = POOL_KEEPALIVE_TIMEOUT
    pool_connect_timeout: float = POOL_CONNECT_TIMEOUT
    pool_body_timeout: float = POOL_BODY_TIMEOUT
    pool_headers_timeout: float = POOL_HEADERS_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    retry_max_attempts: int = MAX_RETRIES
    retry_initial_delay: float = INITIAL_BACKOFF
    retry_max_delay: float = MAX_BACKOFF
    circuit_breaker_threshold: int = CIRCUIT_BREAKER_THRESHOLD
    circuit_breaker_cooldown: float = CIRCUIT_BREAKER_COOLDOWN
    stream_chunk_size: int = STREAM_CHUNK_SIZE
    stream_timeout: float = STREAM_TIMEOUT
    cache_max_size: int = CACHE_MAX_SIZE
    ignore_robots_txt: bool = False
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if (self.rate_limit is None) != (self.rate_interval is None):
            raise ValueError("rate_limit and rate_interval must be set together")
        if self.rate_limit is not None and self.rate_limit < 1:
            raise ValueError("rate_limit must be at least 1")
        if self.rate_interval is not None and self.rate_interval <= 0:
            raise ValueError("rate_interval must be positive")
        if self.retry_max_attempts < 0:
            raise ValueError("retry_max_attempts cannot be negative")
        if self.circuit_breaker_threshold < 1:
            raise ValueError("circuit_breaker_threshold must be at least 1")
        if self.stream_chunk_size < 1:
            raise ValueError("stream_chunk_size must be at least 1")
        if self.cache_max_size < 1:
            raise ValueError("cache_max_size must be at least 1")

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "PipelineConfig":
        """
        Build settings from option names as supplied by a configuration loader.

        Keys may be camelCase (``poolConnectTimeout``), kebab-case
        (``pool-connect-timeout``) or snake_case. Durations are given in
        milliseconds and converted to seconds.

        Raises:
            ValueError: on unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}

        for key, value in options.items():
            name = _normalize_key(key)
            name = _ALIASES.get(name, name)
            if name not in known:
                raise ValueError(f"Unknown configuration option: {key}")
            if value is None:
                continue
            try:
                values[name] = _coerce(name, value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid value for {key}: {value!r}") from e

        return cls(**values)

    def with_overrides(self, **changes: Any) -> "PipelineConfig":
        return replace(self, **changes)


_MILLISECOND_FIELDS = frozenset(
    {
        "queue_timeout",
        "rate_interval",
        "pool_keepalive_timeout",
        "pool_connect_timeout",
        "pool_body_timeout",
        "pool_headers_timeout",
        "request_timeout",
        "retry_initial_delay",
        "retry_max_delay",
        "circuit_breaker_cooldown",
        "stream_timeout",
    }
)

_INT_FIELDS = frozenset(
    {
        "concurrency",
        "rate_limit",
        "pool_connections",
        "pool_pipelining",
        "retry_max_attempts",
        "circuit_breaker_threshold",
        "stream_chunk_size",
        "cache_max_size",
    }
)

_BOOL_STRINGS = {"true": True, "1": True, "false": False, "0": False}

_ALIASES = {
    "pool_keep_alive_timeout": "pool_keepalive_timeout",
}


def _normalize_key(key: str) -> str:
    key = key.replace("-", "_")
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", key).lower()


def _coerce(name: str, value: Any) -> Any:
    """Convert a loader value to the field's type; raises TypeError/ValueError"""
    if name == "ignore_robots_txt":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in _BOOL_STRINGS:
            return _BOOL_STRINGS[value.lower()]
        raise TypeError("expected a boolean")

    if name == "user_agent":
        if not isinstance(value, str):
            raise TypeError("expected a string")
        return value

    # bool is an int subclass; never accept it as a number
    if isinstance(value, bool):
        raise TypeError("expected a number")

    if name in _INT_FIELDS:
        number = float(value)
        if not number.is_integer():
            raise ValueError("expected a whole number")
        return int(number)

    number = float(value)
    if name in _MILLISECOND_FIELDS:
        return number / 1000.0
    return number
