import asyncio

import httpx
import pytest

from stream_fetcher.cancellation import CancellationToken
from stream_fetcher.circuit_breaker import CircuitBreaker
from stream_fetcher.connection_pool import TransportPool
from stream_fetcher.exceptions import FetchCancelledError, FetchError, PolicyBlockedError
from stream_fetcher.fetch_stream import StreamFetcher, collect, extract_charset, make_decoder
from stream_fetcher.models import CircuitState, ErrorKind
from stream_fetcher.retry import RetryConfig
from stream_fetcher.scheduler import RequestScheduler

URL = "https://example.com/page"
UA = "test-agent/1.0"

FAST_RETRY = RetryConfig(max_retries=2, initial_delay=0.001, max_delay=0.002, jitter_factor=0.0)


def make_fetcher(handler, retry_config=FAST_RETRY, policy=None, threshold=5):
    pool = TransportPool(transport=httpx.MockTransport(handler))
    fetcher = StreamFetcher(
        pool,
        RequestScheduler(concurrency=4),
        CircuitBreaker(failure_threshold=threshold),
        retry_config=retry_config,
        policy=policy,
    )
    return fetcher, pool


def chunked(*chunks, hang_after=None):
    """Async body yielding ``chunks``; optionally blocks forever afterwards"""

    async def body():
        for chunk in chunks:
            yield chunk
        if hang_after is not None:
            await hang_after.wait()

    return body()


def test_extract_charset():
    assert extract_charset("text/html; charset=ISO-8859-1") == "iso-8859-1"
    assert extract_charset('text/html; charset="utf-8"') == "utf-8"
    assert extract_charset("text/html") is None
    assert extract_charset(None) is None


def test_unknown_charset_falls_back_to_utf8():
    decoder = make_decoder("x-not-a-charset")
    assert decoder.decode("é".encode("utf-8"), final=True) == "é"


@pytest.mark.asyncio
async def test_stream_fetch_yields_text_and_content_type():
    def handler(request):
        assert request.headers["user-agent"] == UA
        return httpx.Response(
            200,
            headers={"content-type": "text/html; charset=utf-8"},
            content=chunked(b"<p>Hello", b" world</p>"),
        )

    fetcher, pool = make_fetcher(handler)
    result = await fetcher.stream_fetch(URL, UA)
    assert result.content_type == "text/html; charset=utf-8"

    chunks = [chunk async for chunk in result.body]
    assert "".join(chunks) == "<p>Hello world</p>"
    assert all(chunks), "Stream must never yield empty chunks"
    assert result.body.released
    assert pool.active_leases == 0
    await pool.aclose()


@pytest.mark.asyncio
async def test_multibyte_sequence_split_across_chunks():
    encoded = "naïve café ✓".encode("utf-8")
    # Split inside the three-byte check mark and the two-byte é
    pieces = [encoded[:11], encoded[11:14], encoded[14:]]

    def handler(request):
        return httpx.Response(
            200, headers={"content-type": "text/plain"}, content=chunked(*pieces)
        )

    fetcher, pool = make_fetcher(handler)
    content, ctype = await fetcher.fetch_stream_to_string(URL, UA)
    assert content == "naïve café ✓"
    assert "�" not in content
    assert ctype == "text/plain"
    await pool.aclose()


@pytest.mark.asyncio
async def test_latin1_charset_is_honoured():
    def handler(request):
        return httpx.Response(
            200,
            headers={"content-type": "text/html; charset=iso-8859-1"},
            content=chunked("café".encode("iso-8859-1")),
        )

    fetcher, pool = make_fetcher(handler)
    content, _ = await fetcher.fetch_stream_to_string(URL, UA)
    assert content == "café"
    await pool.aclose()


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_succeed():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, content=b"recovered")

    fetcher, pool = make_fetcher(handler)
    content, _ = await fetcher.fetch_stream_to_string(URL, UA)
    assert content == "recovered"
    assert calls["count"] == 3
    assert pool.active_leases == 0, "Failed attempts must release their responses"
    await pool.aclose()


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(404)

    fetcher, pool = make_fetcher(handler)
    with pytest.raises(FetchError) as exc_info:
        await fetcher.stream_fetch(URL, UA)

    assert exc_info.value.kind == ErrorKind.CLIENT_ERROR_4XX
    assert exc_info.value.status_code == 404
    assert calls["count"] == 1
    assert pool.active_leases == 0
    await pool.aclose()


@pytest.mark.asyncio
async def test_exhausted_retries_count_once_against_circuit():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    fetcher, pool = make_fetcher(handler, threshold=2)

    with pytest.raises(FetchError) as exc_info:
        await fetcher.stream_fetch(URL, UA)
    assert exc_info.value.kind == ErrorKind.CONNECTION_ERROR
    assert fetcher.breaker.get_state(URL) == CircuitState.CLOSED

    with pytest.raises(FetchError):
        await fetcher.stream_fetch(URL, UA)
    assert fetcher.breaker.get_state(URL) == CircuitState.OPEN

    with pytest.raises(FetchError) as exc_info:
        await fetcher.stream_fetch(URL, UA)
    assert exc_info.value.kind == ErrorKind.CIRCUIT_OPEN
    await pool.aclose()


@pytest.mark.asyncio
async def test_cancellation_after_first_chunk():
    hang = asyncio.Event()

    def handler(request):
        return httpx.Response(200, content=chunked(b"first", hang_after=hang))

    fetcher, pool = make_fetcher(handler)
    token = CancellationToken()
    result = await fetcher.stream_fetch(URL, UA, cancel=token)

    body = result.body.__aiter__()
    assert await body.__anext__() == "first"

    async def cancel_soon():
        await asyncio.sleep(0.01)
        token.cancel()

    asyncio.create_task(cancel_soon())
    with pytest.raises(FetchCancelledError) as exc_info:
        await body.__anext__()

    assert exc_info.value.kind == ErrorKind.CANCELLED
    assert result.body.released
    assert pool.active_leases == 0
    assert token.listener_count == 0, "Listeners on the caller's token must be removed"
    assert fetcher.breaker.get_state(URL) == CircuitState.CLOSED
    await pool.aclose()


@pytest.mark.asyncio
async def test_pre_cancelled_token_fails_fast():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(200, content=b"x")

    fetcher, pool = make_fetcher(handler)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(FetchCancelledError):
        await fetcher.stream_fetch(URL, UA, cancel=token)
    assert calls["count"] == 0
    await pool.aclose()


@pytest.mark.asyncio
async def test_stream_deadline_surfaces_network_timeout():
    hang = asyncio.Event()

    def handler(request):
        return httpx.Response(200, content=chunked(b"partial", hang_after=hang))

    fetcher, pool = make_fetcher(handler)
    result = await fetcher.stream_fetch(URL, UA, timeout=0.05)

    with pytest.raises(FetchError) as exc_info:
        await collect(result.body)

    assert exc_info.value.kind == ErrorKind.NETWORK_TIMEOUT
    assert not isinstance(exc_info.value, FetchCancelledError)
    assert pool.active_leases == 0
    await pool.aclose()


@pytest.mark.asyncio
async def test_aclose_releases_unconsumed_body_once():
    def handler(request):
        return httpx.Response(200, content=chunked(b"a", b"b"))

    fetcher, pool = make_fetcher(handler)
    result = await fetcher.stream_fetch(URL, UA)
    assert pool.active_leases == 1

    await result.aclose()
    await result.aclose()
    assert pool.active_leases == 0
    assert [chunk async for chunk in result.body] == []
    await pool.aclose()


@pytest.mark.asyncio
async def test_policy_refusal_blocks_before_request():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(200)

    class DenyAll:
        async def check(self, url, user_agent):
            raise PolicyBlockedError("robots.txt disallows", url=url)

    fetcher, pool = make_fetcher(handler, policy=DenyAll())
    with pytest.raises(PolicyBlockedError) as exc_info:
        await fetcher.stream_fetch(URL, UA)

    assert exc_info.value.kind == ErrorKind.POLICY_BLOCKED
    assert calls["count"] == 0
    await pool.aclose()


@pytest.mark.asyncio
async def test_scheduler_slot_is_returned_after_headers():
    def handler(request):
        return httpx.Response(200, content=chunked(b"body"))

    fetcher, pool = make_fetcher(handler)
    result = await fetcher.stream_fetch(URL, UA)
    assert fetcher.scheduler.pending == 0
    assert await collect(result.body) == "body"
    await pool.aclose()


@pytest.mark.asyncio
async def test_request_timeout_bounds_each_attempt():
    calls = {"count": 0}

    async def handler(request):
        calls["count"] += 1
        await asyncio.sleep(1.0)
        return httpx.Response(200)

    pool = TransportPool(transport=httpx.MockTransport(handler))
    fetcher = StreamFetcher(
        pool,
        RequestScheduler(concurrency=1),
        CircuitBreaker(),
        retry_config=FAST_RETRY,
        request_timeout=0.02,
    )

    with pytest.raises(FetchError) as exc_info:
        await fetcher.stream_fetch(URL, UA)

    assert exc_info.value.kind == ErrorKind.NETWORK_TIMEOUT
    assert calls["count"] == 3
    assert pool.active_leases == 0
    await pool.aclose()


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_scheduler_slot():
    def handler(request):
        return httpx.Response(200, content=b"never")

    fetcher, pool = make_fetcher(handler)
    fetcher.scheduler.pause()
    token = CancellationToken()

    fetch = asyncio.create_task(fetcher.stream_fetch(URL, UA, cancel=token))
    await asyncio.sleep(0.01)
    assert fetcher.scheduler.size == 1

    token.cancel()
    with pytest.raises(FetchCancelledError):
        await asyncio.wait_for(fetch, 0.5)

    assert fetcher.scheduler.size == 0
    assert fetcher.scheduler.pending == 0
    assert pool.active_leases == 0
    await pool.aclose()


@pytest.mark.asyncio
async def test_deadline_expires_while_waiting_for_scheduler_slot():
    def handler(request):
        return httpx.Response(200, content=b"never")

    fetcher, pool = make_fetcher(handler)
    fetcher.scheduler.pause()

    with pytest.raises(FetchError) as exc_info:
        await asyncio.wait_for(fetcher.stream_fetch(URL, UA, timeout=0.05), 0.5)

    assert exc_info.value.kind == ErrorKind.NETWORK_TIMEOUT
    assert fetcher.scheduler.size == 0
    await pool.aclose()
