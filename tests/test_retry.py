import pytest

from stream_fetcher.classifier import create_http_error
from stream_fetcher.exceptions import FetchError
from stream_fetcher.models import ErrorKind
from stream_fetcher.retry import RetryConfig, calculate_delay, retry, retry_with_backoff

URL = "https://example.com/"


class Recorder:
    def __init__(self):
        self.sleeps = []

    async def __call__(self, delay):
        self.sleeps.append(delay)


def flaky(failures, error_factory, result="done"):
    calls = {"count": 0}

    async def func():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error_factory()
        return result

    return func, calls


def test_delay_without_jitter_is_exponential_and_capped():
    delays = [calculate_delay(n, 1.0, 10.0, 0.0) for n in range(6)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_delay_jitter_stays_within_bounds():
    for attempt in range(5):
        base = min(0.5 * 2 ** attempt, 4.0)
        for _ in range(200):
            delay = calculate_delay(attempt, 0.5, 4.0, 0.3)
            assert base * 0.7 - 0.001 <= delay <= base * 1.3
            assert delay >= 0


def test_delay_is_whole_milliseconds():
    delay = calculate_delay(0, 0.0123456, 1.0, 0.0)
    assert delay == 0.012


@pytest.mark.asyncio
async def test_succeeds_after_retryable_failures():
    func, calls = flaky(2, lambda: create_http_error(URL, 503))
    sleep = Recorder()

    result = await retry_with_backoff(
        func, max_retries=3, initial_delay=0.1, jitter_factor=0.0, url=URL, sleep=sleep
    )

    assert result == "done"
    assert calls["count"] == 3
    assert sleep.sleeps == [0.1, 0.2]


@pytest.mark.asyncio
async def test_exhaustion_raises_last_error_after_n_plus_one_attempts():
    func, calls = flaky(10, lambda: create_http_error(URL, 500))
    sleep = Recorder()

    with pytest.raises(FetchError) as exc_info:
        await retry_with_backoff(func, max_retries=2, jitter_factor=0.0, url=URL, sleep=sleep)

    assert calls["count"] == 3
    assert len(sleep.sleeps) == 2
    assert exc_info.value.kind == ErrorKind.SERVER_ERROR_5XX


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately():
    func, calls = flaky(10, lambda: create_http_error(URL, 404))
    sleep = Recorder()

    with pytest.raises(FetchError) as exc_info:
        await retry_with_backoff(func, max_retries=5, url=URL, sleep=sleep)

    assert calls["count"] == 1
    assert sleep.sleeps == []
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_raw_exceptions_are_classified_before_deciding():
    func, calls = flaky(1, lambda: ConnectionResetError("connection reset by peer"))
    result = await retry_with_backoff(func, max_retries=1, url=URL, sleep=Recorder())
    assert result == "done"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_zero_retries_means_one_attempt():
    func, calls = flaky(1, lambda: create_http_error(URL, 502))
    with pytest.raises(FetchError):
        await retry_with_backoff(func, max_retries=0, url=URL, sleep=Recorder())
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_on_retry_receives_attempt_error_and_delay():
    func, _ = flaky(2, lambda: create_http_error(URL, 503))
    seen = []

    async def on_retry(attempt, error, delay):
        seen.append((attempt, error.kind, delay))

    await retry_with_backoff(
        func,
        max_retries=3,
        initial_delay=1.0,
        jitter_factor=0.0,
        on_retry=on_retry,
        sleep=Recorder(),
    )
    assert seen == [
        (1, ErrorKind.SERVER_ERROR_5XX, 1.0),
        (2, ErrorKind.SERVER_ERROR_5XX, 2.0),
    ]


@pytest.mark.asyncio
async def test_sync_on_retry_callback():
    func, _ = flaky(1, lambda: create_http_error(URL, 503))
    seen = []
    await retry_with_backoff(
        func, max_retries=1, on_retry=lambda *a: seen.append(a[0]), sleep=Recorder()
    )
    assert seen == [1]


@pytest.mark.asyncio
async def test_retry_uses_config():
    func, calls = flaky(10, lambda: create_http_error(URL, 503))
    sleep = Recorder()
    config = RetryConfig(max_retries=1, initial_delay=0.25, max_delay=1.0, jitter_factor=0.0)

    with pytest.raises(FetchError):
        await retry(func, config, url=URL, sleep=sleep)

    assert calls["count"] == 2
    assert sleep.sleeps == [0.25]
