import asyncio

import pytest

from stream_fetcher.circuit_breaker import CircuitBreaker, origin_key
from stream_fetcher.classifier import create_http_error
from stream_fetcher.exceptions import CircuitOpenError, FetchCancelledError, FetchError
from stream_fetcher.models import CircuitState, ErrorKind

URL = "https://a.example/page"
OTHER = "https://b.example/page"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def ok():
    return "ok"


async def server_error():
    raise create_http_error(URL, 503, "Service Unavailable")


async def not_found():
    raise create_http_error(URL, 404, "Not Found")


async def trip(breaker: CircuitBreaker, times: int, url: str = URL):
    for _ in range(times):
        with pytest.raises(FetchError):
            await breaker.execute(url, server_error)


def test_origin_key_uses_hostname():
    assert origin_key("https://Example.com:8443/a?b=c") == "example.com"
    assert origin_key("not a url") == "not a url"


@pytest.mark.asyncio
async def test_opens_after_threshold_and_rejects_without_calling():
    breaker = CircuitBreaker(failure_threshold=3, cooldown_period=60, clock=FakeClock())
    await trip(breaker, 3)
    assert breaker.get_state(URL) == CircuitState.OPEN

    calls = []

    async def op():
        calls.append(1)
        return "never"

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.execute(URL, op)
    assert exc_info.value.kind == ErrorKind.CIRCUIT_OPEN
    assert calls == [], "Open circuit must not invoke the operation"


@pytest.mark.asyncio
async def test_below_threshold_stays_closed():
    breaker = CircuitBreaker(failure_threshold=3, clock=FakeClock())
    await trip(breaker, 2)
    assert breaker.get_state(URL) == CircuitState.CLOSED
    assert breaker.get_stats()["a.example"].consecutive_failures == 2


@pytest.mark.asyncio
async def test_non_retryable_errors_never_trip():
    breaker = CircuitBreaker(failure_threshold=2, clock=FakeClock())
    for _ in range(10):
        with pytest.raises(FetchError) as exc_info:
            await breaker.execute(URL, not_found)
        assert exc_info.value.kind == ErrorKind.CLIENT_ERROR_4XX

    assert breaker.get_state(URL) == CircuitState.CLOSED
    assert breaker.get_stats()["a.example"].consecutive_failures == 0


@pytest.mark.asyncio
async def test_success_decays_failure_count():
    breaker = CircuitBreaker(failure_threshold=5, clock=FakeClock())
    await trip(breaker, 3)
    assert await breaker.execute(URL, ok) == "ok"
    assert breaker.get_stats()["a.example"].consecutive_failures == 2

    for _ in range(5):
        await breaker.execute(URL, ok)
    assert breaker.get_stats()["a.example"].consecutive_failures == 0


@pytest.mark.asyncio
async def test_origins_are_isolated():
    breaker = CircuitBreaker(failure_threshold=2, clock=FakeClock())
    await trip(breaker, 2, URL)
    assert breaker.get_state(URL) == CircuitState.OPEN
    assert breaker.get_state(OTHER) == CircuitState.CLOSED
    assert await breaker.execute(OTHER, ok) == "ok"


@pytest.mark.asyncio
async def test_cooldown_moves_to_half_open_and_two_successes_close():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, cooldown_period=60, clock=clock)
    await trip(breaker, 2)

    clock.advance(59)
    with pytest.raises(CircuitOpenError):
        await breaker.execute(URL, ok)

    clock.advance(1)
    assert await breaker.execute(URL, ok) == "ok"
    assert breaker.get_state(URL) == CircuitState.HALF_OPEN

    assert await breaker.execute(URL, ok) == "ok"
    assert breaker.get_state(URL) == CircuitState.CLOSED
    assert breaker.get_stats()["a.example"].consecutive_failures == 0


@pytest.mark.asyncio
async def test_half_open_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, cooldown_period=60, clock=clock)
    await trip(breaker, 2)
    clock.advance(60)

    with pytest.raises(FetchError):
        await breaker.execute(URL, server_error)
    assert breaker.get_state(URL) == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await breaker.execute(URL, ok)


@pytest.mark.asyncio
async def test_half_open_admits_bounded_probes():
    clock = FakeClock()
    breaker = CircuitBreaker(
        failure_threshold=1, cooldown_period=10, half_open_max_attempts=2, clock=clock
    )
    await trip(breaker, 1)
    clock.advance(10)

    release = asyncio.Event()
    started = []

    async def slow_probe():
        started.append(1)
        await release.wait()
        return "probe"

    probes = [asyncio.create_task(breaker.execute(URL, slow_probe)) for _ in range(2)]
    await asyncio.sleep(0)
    assert len(started) == 2

    with pytest.raises(CircuitOpenError):
        await breaker.execute(URL, ok)

    release.set()
    assert await asyncio.gather(*probes) == ["probe", "probe"]
    assert breaker.get_state(URL) == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_cancelled_calls_do_not_count_as_failures():
    breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())

    async def cancelled():
        raise FetchCancelledError("aborted")

    for _ in range(3):
        with pytest.raises(FetchCancelledError):
            await breaker.execute(URL, cancelled)
    assert breaker.get_state(URL) == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_cancelled_probe_returns_its_slot():
    clock = FakeClock()
    breaker = CircuitBreaker(
        failure_threshold=1, cooldown_period=10, half_open_max_attempts=1, clock=clock
    )
    await trip(breaker, 1)
    clock.advance(10)

    hang = asyncio.Event()

    async def hanging():
        await hang.wait()

    task = asyncio.create_task(breaker.execute(URL, hanging))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert breaker.get_stats()["a.example"].half_open_probes_issued == 0
    assert await breaker.execute(URL, ok) == "ok"


@pytest.mark.asyncio
async def test_raw_exceptions_are_classified():
    breaker = CircuitBreaker(failure_threshold=5, clock=FakeClock())

    async def broken():
        raise ConnectionRefusedError("connection refused")

    with pytest.raises(FetchError) as exc_info:
        await breaker.execute(URL, broken)
    assert exc_info.value.kind == ErrorKind.CONNECTION_ERROR
    assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)


@pytest.mark.asyncio
async def test_reset_forgets_state():
    breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())
    await trip(breaker, 1, URL)
    await trip(breaker, 1, OTHER)

    breaker.reset(URL)
    assert breaker.get_state(URL) == CircuitState.CLOSED
    assert breaker.get_state(OTHER) == CircuitState.OPEN

    breaker.reset()
    assert breaker.get_stats() == {}


@pytest.mark.asyncio
async def test_stats_are_copies():
    breaker = CircuitBreaker(failure_threshold=5, clock=FakeClock())
    await trip(breaker, 1)
    stats = breaker.get_stats()
    stats["a.example"].consecutive_failures = 99
    assert breaker.get_stats()["a.example"].consecutive_failures == 1
