"""Pooled HTTP transport shared by every request"""

from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
from loguru import logger

from .config import (
    POOL_BODY_TIMEOUT,
    POOL_CONNECT_TIMEOUT,
    POOL_CONNECTIONS,
    POOL_HEADERS_TIMEOUT,
    POOL_KEEPALIVE_TIMEOUT,
    POOL_PIPELINING,
)


class TransportPool:
    """
    Reusable outbound connections behind a single ``httpx.AsyncClient``.

    Every response returned by :meth:`perform` is leased from the client that
    sent it and must be handed back through :meth:`release`. Reconfiguring
    swaps in a new client; the retired client stays open until its last lease
    is released.
    """

    def __init__(
        self,
        connections: int = POOL_CONNECTIONS,
        pipelining: int = POOL_PIPELINING,
        keep_alive_timeout: float = POOL_KEEPALIVE_TIMEOUT,
        connect_timeout: float = POOL_CONNECT_TIMEOUT,
        body_timeout: float = POOL_BODY_TIMEOUT,
        headers_timeout: float = POOL_HEADERS_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize connection pool.

        Args:
            connections: Maximum open connections
            pipelining: Requests in flight per connection; above 1 enables HTTP/2
            keep_alive_timeout: Seconds an idle connection is kept
            connect_timeout: Seconds allowed to establish a connection
            body_timeout: Seconds allowed between body reads
            headers_timeout: Seconds allowed to receive response headers
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self._transport = transport
        self._options: Dict[str, Any] = {
            "connections": connections,
            "pipelining": pipelining,
            "keep_alive_timeout": keep_alive_timeout,
            "connect_timeout": connect_timeout,
            "body_timeout": body_timeout,
            "headers_timeout": headers_timeout,
        }
        self._client = self._build_client()
        self._leases: Dict[httpx.AsyncClient, int] = {self._client: 0}
        self._owners: Dict[int, Tuple[httpx.Response, httpx.AsyncClient]] = {}

    @property
    def options(self) -> Mapping[str, Any]:
        return dict(self._options)

    @property
    def active_leases(self) -> int:
        return len(self._owners)

    def _build_client(self) -> httpx.AsyncClient:
        opts = self._options
        limits = httpx.Limits(
            max_connections=opts["connections"],
            max_keepalive_connections=opts["connections"],
            keepalive_expiry=opts["keep_alive_timeout"],
        )
        # httpx bounds header and body reads with the same read timeout
        timeout = httpx.Timeout(
            connect=opts["connect_timeout"],
            read=max(opts["headers_timeout"], opts["body_timeout"]),
            write=opts["body_timeout"],
            pool=opts["connect_timeout"],
        )
        http2 = opts["pipelining"] > 1
        logger.debug(
            f"Connection pool configured: connections={opts['connections']}, "
            f"keepalive={opts['keep_alive_timeout']}s, http2={http2}"
        )
        return httpx.AsyncClient(
            limits=limits,
            timeout=timeout,
            http2=http2,
            follow_redirects=True,
            transport=self._transport,
        )

    async def perform(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        """
        Send a request and return once headers arrive; the body stays unread.

        Connection failures propagate as raw httpx exceptions.
        """
        client = self._client
        request = client.build_request(method, url, headers=headers)
        self._leases[client] = self._leases.get(client, 0) + 1
        try:
            response = await client.send(request, stream=True)
        except BaseException:
            await self._return_lease(client)
            raise
        self._owners[id(response)] = (response, client)
        return response

    async def release(self, response: httpx.Response) -> None:
        """Close ``response`` and return its lease. Releasing twice is a no-op."""
        owner = self._owners.pop(id(response), None)
        if owner is None:
            return
        client = owner[1]
        try:
            await response.aclose()
        finally:
            await self._return_lease(client)

    async def _return_lease(self, client: httpx.AsyncClient) -> None:
        remaining = self._leases.get(client, 1) - 1
        self._leases[client] = remaining
        if remaining <= 0 and client is not self._client:
            del self._leases[client]
            await client.aclose()
            logger.debug("Retired HTTP client closed after last lease")

    async def reconfigure(self, **options: Any) -> None:
        """Replace the active client; requests bound to the old one continue"""
        unknown = set(options) - set(self._options)
        if unknown:
            raise ValueError(f"Unknown pool options: {', '.join(sorted(unknown))}")
        self._options.update(options)

        retired = self._client
        self._client = self._build_client()
        self._leases[self._client] = 0
        logger.info("Connection pool reconfigured")

        if self._leases.get(retired, 0) <= 0:
            self._leases.pop(retired, None)
            await retired.aclose()

    async def aclose(self) -> None:
        self._owners.clear()
        clients = list(self._leases)
        self._leases.clear()
        for client in clients:
            await client.aclose()
        logger.debug("Connection pool closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
