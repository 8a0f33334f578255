"""Error classification: raw failures to the closed ErrorKind taxonomy"""

import asyncio
import errno
import socket
from typing import Iterator, Optional

import httpx

from .exceptions import FetchCancelledError, FetchError
from .models import ErrorKind

# Message fragments, consulted only when no structured type matches
_CANCEL_HINTS = ("aborted", "cancelled", "canceled")
_TIMEOUT_HINTS = ("timeout", "timed out")
_DNS_HINTS = (
    "enotfound",
    "getaddrinfo",
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "name resolution",
    "dns",
)
_CONNECTION_HINTS = (
    "econnrefused",
    "econnreset",
    "epipe",
    "connection refused",
    "connection reset",
    "broken pipe",
    "network",
    "socket",
)

_CONNECTION_ERRNOS = frozenset(
    {
        errno.ECONNREFUSED,
        errno.ECONNRESET,
        errno.ECONNABORTED,
        errno.EPIPE,
        errno.ENETUNREACH,
        errno.EHOSTUNREACH,
    }
)


def classify_error(error: BaseException, url: Optional[str] = None) -> FetchError:
    """
    Map a raw failure to a classified FetchError.

    First match wins: cancellation, timeout, DNS, connection, then UNKNOWN
    (retryable). Each rule checks exception types along the
    ``__cause__``/``__context__`` chain before falling back to message
    fragments. An existing FetchError is returned unchanged.
    """
    if isinstance(error, FetchError):
        return error

    chain = list(_exception_chain(error))
    message = " ".join(str(exc).lower() for exc in chain)
    suffix = f" for {url}" if url else ""

    # asyncio timeouts are raised from the CancelledError they interrupted
    timed_out = _is_timeout(chain[:1])

    if not timed_out and (_is_cancellation(chain) or _contains(message, _CANCEL_HINTS)):
        return FetchCancelledError("Request was aborted", url=url, cause=error)

    if timed_out or _is_timeout(chain) or _contains(message, _TIMEOUT_HINTS):
        return FetchError(
            f"Request timed out{suffix}", ErrorKind.NETWORK_TIMEOUT, url=url, cause=error
        )

    if _is_dns_failure(chain) or _contains(message, _DNS_HINTS):
        return FetchError(
            f"DNS resolution failed{suffix}", ErrorKind.DNS_FAILURE, url=url, cause=error
        )

    if _is_connection_failure(chain) or _contains(message, _CONNECTION_HINTS):
        return FetchError(
            f"Connection error{suffix}", ErrorKind.CONNECTION_ERROR, url=url, cause=error
        )

    fetching = f" fetching {url}" if url else ""
    return FetchError(
        f"Unexpected error{fetching}", ErrorKind.UNKNOWN, url=url, cause=error
    )


def create_http_error(url: str, status_code: int, status_text: str = "") -> FetchError:
    """Classify a non-success HTTP status"""
    message = f"HTTP {status_code} {status_text}".rstrip() + f" for {url}"

    if 400 <= status_code < 500:
        return FetchError(
            message, ErrorKind.CLIENT_ERROR_4XX, status_code=status_code, url=url
        )
    if 500 <= status_code < 600:
        return FetchError(
            message, ErrorKind.SERVER_ERROR_5XX, status_code=status_code, url=url
        )
    return FetchError(
        message, ErrorKind.UNKNOWN, retryable=False, status_code=status_code, url=url
    )


def _exception_chain(error: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _contains(message: str, hints) -> bool:
    return any(hint in message for hint in hints)


def _is_cancellation(chain) -> bool:
    return any(isinstance(exc, asyncio.CancelledError) for exc in chain)


def _is_timeout(chain) -> bool:
    timeouts = (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError)
    return any(isinstance(exc, timeouts) for exc in chain)


def _is_dns_failure(chain) -> bool:
    return any(isinstance(exc, socket.gaierror) for exc in chain)


def _is_connection_failure(chain) -> bool:
    for exc in chain:
        if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError, ConnectionError)):
            return True
        if isinstance(exc, OSError) and exc.errno in _CONNECTION_ERRNOS:
            return True
    return False
