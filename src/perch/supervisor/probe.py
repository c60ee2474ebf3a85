"""Readiness probes for the API backend."""

import asyncio
from typing import Protocol

import httpx


class Probe(Protocol):
    async def __call__(self) -> bool: ...


class HttpProbe:
    """Ready once ``GET <health path>`` answers with a non-5xx status."""

    __slots__ = ("_timeout", "_transport", "url")

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._transport = transport

    async def __call__(self) -> bool:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.get(self.url)
            except httpx.TransportError:
                return False
        return response.status_code < 500


class TcpProbe:
    """Ready once the port accepts a connection."""

    __slots__ = ("host", "port")

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port

    async def __call__(self) -> bool:
        try:
            _reader, writer = await asyncio.open_connection(self.host, self.port)
        except OSError:
            return False
        writer.close()
        await writer.wait_closed()
        return True
