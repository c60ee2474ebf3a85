"""ApiProxy — forward ``/api/**`` requests to the supervised backend."""

from __future__ import annotations

import asyncio
import logging

import httpx

from perch.config import PerchConfig
from perch.errors import BadGateway
from perch.http.headers import Headers, proxy_headers
from perch.http.request import Request
from perch.http.response import RawResponse
from perch.supervisor.supervisor import ApiSupervisor

logger = logging.getLogger("perch.api")

# httpx decodes bodies and recomputes lengths, so these are not forwarded back.
_RESPONSE_SKIP = frozenset({"content-length", "content-encoding"})


class ApiProxy:
    """Forwards requests through the supervisor's admission gate.

    One ``httpx.AsyncClient`` is kept per event loop, since production
    workers each run their own loop.
    """

    __slots__ = ("_base", "_clients", "_supervisor", "_timeout", "_transport")

    def __init__(
        self,
        config: PerchConfig,
        supervisor: ApiSupervisor,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base = config.api_base_url
        self._supervisor = supervisor
        self._transport = transport
        self._timeout = timeout
        self._clients: dict[int, httpx.AsyncClient] = {}

    def _client(self) -> httpx.AsyncClient:
        key = id(asyncio.get_running_loop())
        client = self._clients.get(key)
        if client is None:
            client = httpx.AsyncClient(
                base_url=self._base,
                transport=self._transport,
                timeout=self._timeout,
                follow_redirects=False,
            )
            self._clients[key] = client
        return client

    async def forward(self, request: Request) -> RawResponse:
        """Proxy one request.

        Raises:
            ServiceUnavailable: the backend is not ready (from admission).
            BadGateway: the backend could not be reached or broke mid-response.
        """
        headers = proxy_headers(request.headers).without(("host",))
        forwarded = headers.items_list()
        if request.client is not None:
            forwarded.append(("x-forwarded-for", request.client[0]))
        host = request.headers.get("host")
        if host:
            forwarded.append(("x-forwarded-host", host))

        async with self._supervisor.track():
            body = await request.body()
            try:
                upstream = await self._client().request(
                    request.method,
                    request.url,
                    headers=forwarded,
                    content=body,
                )
            except httpx.HTTPError as exc:
                logger.error("Backend request %s %s failed: %s", request.method, request.path, exc)
                raise BadGateway(f"API backend error: {type(exc).__name__}") from exc

        response_headers = proxy_headers(Headers(upstream.headers.raw)).without(_RESPONSE_SKIP)
        return RawResponse(
            body=upstream.content,
            status=upstream.status_code,
            headers=tuple(response_headers.items_list()),
        )

    async def close(self) -> None:
        """Close the client that belongs to the current event loop."""
        client = self._clients.pop(id(asyncio.get_running_loop()), None)
        if client is not None:
            await client.aclose()
