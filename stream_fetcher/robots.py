"""Cached robots.txt policy checked before a page is fetched"""

import asyncio
from collections import OrderedDict
from typing import Dict, Optional
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import httpx
from loguru import logger

from .config import ROBOTS_CACHE_SIZE, ROBOTS_MAX_BYTES
from .connection_pool import TransportPool
from .exceptions import PolicyBlockedError


class RobotsPolicy:
    """
    Fetches, parses and caches robots.txt per origin.

    Parsers are kept in an LRU cache of ``cache_size`` origins. A missing
    robots.txt (404/410) or a failure fetching it allows everything;
    401/403 disallow everything.
    """

    def __init__(self, pool: TransportPool, cache_size: int = ROBOTS_CACHE_SIZE):
        """
        Initialize robots policy.

        Args:
            pool: Transport pool used to download robots.txt
            cache_size: Number of origins whose rules are kept
        """
        self.pool = pool
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, RobotFileParser]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}

    async def check(self, url: str, user_agent: str) -> None:
        """
        Raise if ``user_agent`` may not fetch ``url``.

        Raises:
            PolicyBlockedError: robots.txt disallows the URL
        """
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            return

        origin = f"{parsed.scheme}://{parsed.netloc}"
        parser = await self._parser_for(origin)
        if not parser.can_fetch(user_agent, url):
            logger.warning(f"robots.txt of {origin} disallows {url}")
            raise PolicyBlockedError(
                f"The site's robots.txt specifies that autonomous fetching of this page "
                f"is not allowed ({origin}/robots.txt)",
                url=url,
            )

    async def _parser_for(self, origin: str) -> RobotFileParser:
        parser = self._cache.get(origin)
        if parser is not None:
            self._cache.move_to_end(origin)
            return parser

        lock = self._locks.setdefault(origin, asyncio.Lock())
        async with lock:
            # Fetched while waiting for the lock
            parser = self._cache.get(origin)
            if parser is None:
                parser = await self._load(origin)
                self._store(origin, parser)
        return parser

    def _store(self, origin: str, parser: RobotFileParser) -> None:
        self._cache[origin] = parser
        self._cache.move_to_end(origin)
        while len(self._cache) > self.cache_size:
            evicted, _ = self._cache.popitem(last=False)
            self._locks.pop(evicted, None)

    async def _load(self, origin: str) -> RobotFileParser:
        robots_url = f"{origin}/robots.txt"
        parser = RobotFileParser(robots_url)

        try:
            response = await self.pool.perform("GET", robots_url)
        except (httpx.HTTPError, OSError) as e:
            logger.debug(f"Could not fetch {robots_url}, allowing all: {e}")
            parser.allow_all = True
            return parser

        try:
            status = response.status_code
            if status in (401, 403):
                logger.info(f"{robots_url} returned {status}, disallowing all")
                parser.disallow_all = True
            elif status >= 400:
                logger.debug(f"No robots.txt for {origin} (status {status})")
                parser.allow_all = True
            else:
                body = await self._read_limited(response)
                if body is None:
                    logger.warning(f"{robots_url} is larger than {ROBOTS_MAX_BYTES} bytes, ignoring")
                    parser.allow_all = True
                else:
                    parser.parse(body.decode("utf-8", errors="replace").splitlines())
        except httpx.HTTPError as e:
            logger.debug(f"Failed reading {robots_url}, allowing all: {e}")
            parser.allow_all = True
        finally:
            await self.pool.release(response)

        return parser

    @staticmethod
    async def _read_limited(response: httpx.Response) -> Optional[bytes]:
        """Body bytes, or None as soon as more than ROBOTS_MAX_BYTES arrived"""
        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > ROBOTS_MAX_BYTES:
                return None
        return bytes(body)

    def clear(self) -> None:
        self._cache.clear()
        self._locks.clear()
