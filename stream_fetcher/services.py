"""Wires the pool, scheduler, breaker and fetcher from one PipelineConfig"""

from dataclasses import dataclass
from typing import Any, Optional, Tuple

import httpx
from loguru import logger

from .cache import ResultCache
from .cancellation import CancellationToken
from .circuit_breaker import CircuitBreaker
from .config import HALF_OPEN_MAX_ATTEMPTS, JITTER_FACTOR, PipelineConfig
from .connection_pool import TransportPool
from .fetch_stream import StreamFetcher
from .models import QueueMetrics
from .pipeline import process_url
from .retry import RetryConfig
from .robots import RobotsPolicy
from .scheduler import RequestScheduler


@dataclass
class Services:
    """Everything a caller needs to fetch and convert pages"""

    config: PipelineConfig
    pool: TransportPool
    scheduler: RequestScheduler
    breaker: CircuitBreaker
    fetcher: StreamFetcher
    cache: ResultCache

    def queue_metrics(self) -> QueueMetrics:
        return QueueMetrics(
            active=self.scheduler.pending,
            queued=self.scheduler.size,
            depth=self.scheduler.queue_depth,
        )

    async def reconfigure_pool(self, **options: Any) -> None:
        await self.pool.reconfigure(**options)

    async def process_url(
        self,
        url: str,
        raw: bool = False,
        cancel: Optional[CancellationToken] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        :func:`process_url` with the configured user agent, deadline and chunk
        size. Successful results are cached per URL, user agent and raw mode;
        failures are never cached.
        """
        user_agent = user_agent or self.config.user_agent
        key = ResultCache.key(url, user_agent, raw)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for {url}")
            return cached

        result = await process_url(
            self.fetcher,
            url,
            user_agent,
            raw=raw,
            cancel=cancel,
            timeout=self.config.stream_timeout,
            chunk_size=self.config.stream_chunk_size,
        )
        self.cache.set(key, result)
        return result

    async def aclose(self) -> None:
        self.scheduler.clear()
        self.cache.clear()
        await self.pool.aclose()
        logger.info("Fetch services closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


def build_services(
    config: Optional[PipelineConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """
    Build the fetch pipeline.

    Args:
        config: Pipeline settings (defaults when omitted)
        transport: Optional httpx transport for the pool
    """
    config = config or PipelineConfig()

    pool = TransportPool(
        connections=config.pool_connections,
        pipelining=config.pool_pipelining,
        keep_alive_timeout=config.pool_keepalive_timeout,
        connect_timeout=config.pool_connect_timeout,
        body_timeout=config.pool_body_timeout,
        headers_timeout=config.pool_headers_timeout,
        transport=transport,
    )
    scheduler = RequestScheduler(
        concurrency=config.concurrency,
        timeout=config.queue_timeout,
        interval_cap=config.rate_limit,
        interval=config.rate_interval,
    )
    breaker = CircuitBreaker(
        failure_threshold=config.circuit_breaker_threshold,
        cooldown_period=config.circuit_breaker_cooldown,
        half_open_max_attempts=HALF_OPEN_MAX_ATTEMPTS,
    )
    retry_config = RetryConfig(
        max_retries=config.retry_max_attempts,
        initial_delay=config.retry_initial_delay,
        max_delay=config.retry_max_delay,
        jitter_factor=JITTER_FACTOR,
    )
    policy = None if config.ignore_robots_txt else RobotsPolicy(pool)
    fetcher = StreamFetcher(
        pool,
        scheduler,
        breaker,
        retry_config=retry_config,
        policy=policy,
        request_timeout=config.request_timeout,
    )

    logger.info(
        f"Fetch services ready: concurrency={config.concurrency}, "
        f"retries={config.retry_max_attempts}, robots={'off' if policy is None else 'on'}"
    )
    return Services(
        config=config,
        pool=pool,
        scheduler=scheduler,
        breaker=breaker,
        fetcher=fetcher,
        cache=ResultCache(config.cache_max_size),
    )
