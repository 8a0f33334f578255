"""Custom exception classes for the stream fetcher"""

from typing import Optional

from .models import RETRYABLE_KINDS, ErrorKind

_USER_MESSAGES = {
    ErrorKind.NETWORK_TIMEOUT: "The request timed out. The server took too long to respond.",
    ErrorKind.DNS_FAILURE: "Unable to resolve the domain name. Please check the URL.",
    ErrorKind.CONNECTION_ERROR: "Failed to establish a connection to the server.",
    ErrorKind.CIRCUIT_OPEN: (
        "Too many recent failures for this domain. "
        "Temporarily blocking requests to protect the service."
    ),
    ErrorKind.POLICY_BLOCKED: "Access to this URL is blocked by the robots.txt file.",
    ErrorKind.CANCELLED: "The request was aborted or cancelled.",
    ErrorKind.UNKNOWN: "An unexpected error occurred while fetching the URL.",
}

_CLIENT_ERROR_HINTS = {
    400: "Bad request.",
    401: "Authentication required.",
    403: "Access forbidden.",
    404: "Resource not found.",
    429: "Rate limit exceeded. Please try again later.",
}


class StreamFetcherError(Exception):
    """Base exception for stream fetcher errors"""

    pass


class FetchError(StreamFetcherError):
    """A classified fetch failure.

    ``kind`` and ``retryable`` are fixed at construction. The original
    exception, if any, is kept as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        *,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self._kind = kind
        self._retryable = kind in RETRYABLE_KINDS if retryable is None else retryable
        self._status_code = status_code
        self._url = url
        if cause is not None:
            self.__cause__ = cause

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def retryable(self) -> bool:
        return self._retryable

    @property
    def status_code(self) -> Optional[int]:
        return self._status_code

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__

    def to_user_message(self) -> str:
        """Sanitized, user-facing description of this failure"""
        status = self._status_code if self._status_code is not None else "unknown"
        if self._kind is ErrorKind.CLIENT_ERROR_4XX:
            hint = _CLIENT_ERROR_HINTS.get(self._status_code, "The request was invalid.")
            return f"Request failed with client error ({status}). {hint}"
        if self._kind is ErrorKind.SERVER_ERROR_5XX:
            return f"The server encountered an error ({status}). Please try again later."
        return _USER_MESSAGES[self._kind]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, kind={self._kind.value})"


class CircuitOpenError(FetchError):
    """Raised when the circuit for an origin is open"""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, ErrorKind.CIRCUIT_OPEN, url=url)


class FetchCancelledError(FetchError):
    """Raised when a fetch or conversion is cancelled cooperatively"""

    def __init__(
        self,
        message: str = "Request was aborted",
        url: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, ErrorKind.CANCELLED, url=url, cause=cause)


class QueueTimeoutError(FetchError):
    """Raised when a scheduled task exceeds the scheduler's per-task timeout

    Shares ``NETWORK_TIMEOUT`` with transport timeouts; the type tells them
    apart.
    """

    def __init__(self, message: str = "Task timed out in request queue"):
        super().__init__(message, ErrorKind.NETWORK_TIMEOUT)


class PolicyBlockedError(FetchError):
    """Raised when robots.txt disallows a URL"""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, ErrorKind.POLICY_BLOCKED, url=url)


class ExtractError(StreamFetcherError):
    """Raised when HTML cannot be converted to Markdown"""

    pass
