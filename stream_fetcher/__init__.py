"""Stream Fetcher
Resilient fetch-and-transform pipeline: pooled transport, bounded scheduling,
per-origin circuit breaking, retry with backoff and streaming HTML to Markdown
"""

__version__ = "0.1.0"

from .cache import ResultCache
from .cancellation import CancellationToken, LinkedCancellation
from .circuit_breaker import CircuitBreaker
from .classifier import classify_error, create_http_error
from .config import PipelineConfig
from .connection_pool import TransportPool
from .exceptions import (
    CircuitOpenError,
    ExtractError,
    FetchCancelledError,
    FetchError,
    PolicyBlockedError,
    QueueTimeoutError,
    StreamFetcherError,
)
from .fetch_stream import BodyStream, StreamFetcher, StreamingFetchResult
from .markdown_stream import (
    MarkdownFormatter,
    html_to_markdown_stream,
    html_to_markdown_string,
)
from .models import CircuitState, ErrorKind, FormatterState, QueueMetrics
from .pipeline import process_url
from .retry import RetryConfig, retry_with_backoff
from .robots import RobotsPolicy
from .scheduler import RequestScheduler
from .services import Services, build_services

__all__ = [
    "__version__",
    "BodyStream",
    "CancellationToken",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "ErrorKind",
    "ExtractError",
    "FetchCancelledError",
    "FetchError",
    "FormatterState",
    "LinkedCancellation",
    "MarkdownFormatter",
    "PipelineConfig",
    "PolicyBlockedError",
    "QueueMetrics",
    "QueueTimeoutError",
    "RequestScheduler",
    "ResultCache",
    "RetryConfig",
    "RobotsPolicy",
    "Services",
    "StreamFetcher",
    "StreamFetcherError",
    "StreamingFetchResult",
    "TransportPool",
    "build_services",
    "classify_error",
    "create_http_error",
    "html_to_markdown_stream",
    "html_to_markdown_string",
    "process_url",
    "retry_with_backoff",
]
