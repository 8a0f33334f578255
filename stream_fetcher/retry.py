"""Retry logic with exponential backoff"""

import asyncio
import inspect
import math
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from .classifier import classify_error
from .config import INITIAL_BACKOFF, JITTER_FACTOR, MAX_BACKOFF, MAX_RETRIES
from .exceptions import FetchError


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters (seconds)"""

    max_retries: int = MAX_RETRIES
    initial_delay: float = INITIAL_BACKOFF
    max_delay: float = MAX_BACKOFF
    jitter_factor: float = JITTER_FACTOR


def calculate_delay(
    attempt: int,
    initial_delay: float = INITIAL_BACKOFF,
    max_delay: float = MAX_BACKOFF,
    jitter_factor: float = JITTER_FACTOR,
) -> float:
    """
    Backoff before retry number ``attempt`` (0-based).

    The exponential delay is capped at ``max_delay``, then shifted by up to
    ``±jitter_factor`` of itself and floored to whole milliseconds.
    """
    capped = min(initial_delay * (2 ** attempt), max_delay)
    jitter = capped * jitter_factor * random.uniform(-1.0, 1.0)
    return max(0.0, math.floor((capped + jitter) * 1000) / 1000)


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    *args,
    max_retries: int = MAX_RETRIES,
    initial_delay: float = INITIAL_BACKOFF,
    max_delay: float = MAX_BACKOFF,
    jitter_factor: float = JITTER_FACTOR,
    on_retry: Optional[Callable] = None,
    url: Optional[str] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs,
):
    """
    Execute function with exponential backoff retry logic.

    Args:
        func: Async function to execute
        max_retries: Maximum number of retry attempts
        initial_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for the exponential delay
        jitter_factor: Fraction of the delay applied as random jitter
        on_retry: Optional callback on each retry: on_retry(attempt, error, delay);
            may be sync or async
        url: URL used for classification and log context
        sleep: Awaitable sleep used between attempts

    Raises:
        FetchError: the first non-retryable error, or the last error once
            retries are exhausted
    """
    target = url or "unknown URL"
    last_error: Optional[FetchError] = None

    for attempt in range(max_retries + 1):
        try:
            result = await func(*args, **kwargs)

            if attempt > 0:
                logger.success(f"Recovered {target} after {attempt} retries")

            return result

        except Exception as e:
            error = classify_error(e, url)
            last_error = error

            if not error.retryable:
                logger.debug(f"Non-retryable error for {target}: {error.kind.value}")
                if error is e:
                    raise
                raise error from e

            if attempt >= max_retries:
                logger.error(
                    f"All {max_retries} retries exhausted for {target}: {error.kind.value}"
                )
                break

            delay = calculate_delay(attempt, initial_delay, max_delay, jitter_factor)
            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed for {target} "
                f"({error.kind.value}). Retrying in {delay:.3f}s..."
            )

            if on_retry:
                outcome = on_retry(attempt + 1, error, delay)
                if inspect.isawaitable(outcome):
                    await outcome

            await sleep(delay)

    raise last_error


async def retry(func: Callable[[], Awaitable[Any]], config: RetryConfig, **context):
    """Run ``func`` with the backoff parameters of ``config``"""
    return await retry_with_backoff(
        func,
        max_retries=config.max_retries,
        initial_delay=config.initial_delay,
        max_delay=config.max_delay,
        jitter_factor=config.jitter_factor,
        **context,
    )
