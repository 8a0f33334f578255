"""Streaming fetch: scheduler slot, circuit check, retry loop, pooled transport"""

import asyncio
import codecs
import re
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx
from loguru import logger

from .cancellation import CancellationToken, LinkedCancellation
from .circuit_breaker import CircuitBreaker
from .classifier import classify_error, create_http_error
from .connection_pool import TransportPool
from .retry import RetryConfig, retry
from .scheduler import RequestScheduler

_CHARSET_RE = re.compile(r"charset=([^;]+)", re.IGNORECASE)


def extract_charset(content_type: Optional[str]) -> Optional[str]:
    """Charset parameter of a Content-Type header, lower-cased"""
    if not content_type:
        return None
    match = _CHARSET_RE.search(content_type)
    if not match:
        return None
    return match.group(1).strip().strip("\"'").lower() or None


def make_decoder(charset: Optional[str]) -> codecs.IncrementalDecoder:
    """Incremental decoder for ``charset``, falling back to UTF-8"""
    try:
        factory = codecs.getincrementaldecoder(charset or "utf-8")
    except LookupError:
        logger.debug(f"Unknown charset {charset!r}, decoding as utf-8")
        factory = codecs.getincrementaldecoder("utf-8")
    return factory(errors="replace")


class BodyStream:
    """
    Single-consumption async iterator over a response body as text.

    Raw chunks are decoded incrementally so multi-byte sequences split across
    chunk edges survive. The response is released exactly once: at the end of
    the body, on the first error, or on :meth:`aclose`.
    """

    def __init__(
        self,
        response: httpx.Response,
        pool: TransportPool,
        url: str,
        cancellation: LinkedCancellation,
    ):
        self.url = url
        self._response = response
        self._pool = pool
        self._cancellation = cancellation
        self._token = cancellation.token
        self._decoder = make_decoder(extract_charset(response.headers.get("content-type")))
        self._raw = response.aiter_bytes()
        self._finished = False
        self._released = False
        self.bytes_read = 0

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        while not self._finished:
            try:
                self._token.raise_if_cancelled(self.url)
                raw = await self._token.guard(self._read(), self.url)
            except asyncio.CancelledError:
                await self._release()
                raise
            except Exception as e:
                self._finished = True
                await self._release()
                error = classify_error(e, self.url)
                logger.warning(f"Body read failed for {self.url}: {error.kind.value}")
                if error is e:
                    raise
                raise error from e

            if raw is None:
                self._finished = True
                tail = self._decoder.decode(b"", final=True)
                await self._release()
                if tail:
                    return tail
                break

            self.bytes_read += len(raw)
            text = self._decoder.decode(raw)
            if text:
                return text

        raise StopAsyncIteration

    async def _read(self) -> Optional[bytes]:
        try:
            return await self._raw.__anext__()
        except StopAsyncIteration:
            return None

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self._cancellation.dispose()
        await self._pool.release(self._response)
        logger.debug(f"Released response for {self.url} after {self.bytes_read} bytes")

    async def aclose(self) -> None:
        """Stop reading and release the response (safe to call repeatedly)"""
        self._finished = True
        await self._release()

    @property
    def released(self) -> bool:
        return self._released

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


@dataclass
class StreamingFetchResult:
    """Content type plus the lazily read body"""

    content_type: Optional[str]
    body: BodyStream

    async def aclose(self) -> None:
        await self.body.aclose()


class StreamFetcher:
    """
    Issues requests through the scheduler, the origin circuit breaker and the
    retry loop, then hands the body back as a cancellable text stream.
    """

    def __init__(
        self,
        pool: TransportPool,
        scheduler: RequestScheduler,
        breaker: CircuitBreaker,
        retry_config: Optional[RetryConfig] = None,
        policy=None,
        request_timeout: Optional[float] = None,
    ):
        """
        Initialize fetcher.

        Args:
            pool: Transport pool performing requests
            scheduler: Scheduler bounding concurrent requests
            breaker: Per-origin circuit breaker
            retry_config: Backoff parameters for retryable failures
            policy: Optional object with ``async check(url, user_agent)``
                (see ``RobotsPolicy``)
            request_timeout: Optional seconds allowed for each attempt to
                receive response headers
        """
        self.pool = pool
        self.scheduler = scheduler
        self.breaker = breaker
        self.retry_config = retry_config or RetryConfig()
        self.policy = policy
        self.request_timeout = request_timeout

    async def _perform_once(self, url: str, user_agent: str) -> httpx.Response:
        request = self.pool.perform("GET", url, headers={"User-Agent": user_agent})
        if self.request_timeout is None:
            response = await request
        else:
            response = await asyncio.wait_for(request, self.request_timeout)
        if response.is_success:
            return response
        await self.pool.release(response)
        raise create_http_error(url, response.status_code, response.reason_phrase)

    async def _open(self, url: str, user_agent: str) -> httpx.Response:
        return await self.breaker.execute(
            url,
            lambda: retry(
                lambda: self._perform_once(url, user_agent),
                self.retry_config,
                url=url,
            ),
        )

    async def stream_fetch(
        self,
        url: str,
        user_agent: str,
        cancel: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> StreamingFetchResult:
        """
        Fetch ``url`` and return its body as a lazy text stream.

        Args:
            url: URL to fetch
            user_agent: User-Agent header value
            cancel: Optional caller-owned cancellation token
            timeout: Optional deadline in seconds covering the request and
                every body read

        Raises:
            FetchError: classified failure (CANCELLED, NETWORK_TIMEOUT,
                CIRCUIT_OPEN, CLIENT_ERROR_4XX, ...)
        """
        cancellation = LinkedCancellation(cancel, timeout=timeout)
        token = cancellation.token

        try:
            token.raise_if_cancelled(url)
            if self.policy is not None:
                await token.guard(self.policy.check(url, user_agent), url)
            logger.debug(f"Fetching {url}")
            # Guarding the whole call also covers the wait for a scheduler slot
            response = await token.guard(
                self.scheduler.execute(lambda: self._open(url, user_agent)), url
            )
        except asyncio.CancelledError:
            cancellation.dispose()
            raise
        except Exception as e:
            cancellation.dispose()
            error = classify_error(e, url)
            if error is e:
                raise
            raise error from e

        content_type = response.headers.get("content-type")
        logger.debug(f"Response {response.status_code} for {url} ({content_type})")
        return StreamingFetchResult(
            content_type=content_type,
            body=BodyStream(response, self.pool, url, cancellation),
        )

    async def fetch_stream_to_string(
        self,
        url: str,
        user_agent: str,
        cancel: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[str, Optional[str]]:
        """Fetch ``url`` and join the whole body. Returns (content, content_type)."""
        result = await self.stream_fetch(url, user_agent, cancel=cancel, timeout=timeout)
        return await collect(result.body), result.content_type


async def collect(body: BodyStream) -> str:
    """Join every chunk of ``body``; partial content is dropped on failure"""
    async with body:
        return "".join([chunk async for chunk in body])

