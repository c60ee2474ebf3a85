"""Immutable HTTP request.

Frozen metadata with async body access. The proxy forwards the body as a
stream; the live-update endpoints read it whole.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl

from perch._internal.asgi import Receive, Scope
from perch.http.headers import Headers

PATCH_HEADER = "x-perch-patch"


@dataclass(frozen=True, slots=True)
class Request:
    """An immutable HTTP request.

    ``query`` keeps the first value per key; ``query_string`` keeps the raw
    bytes for forwarding.
    """

    method: str
    path: str
    headers: Headers
    query_string: bytes
    query: dict[str, str]
    http_version: str
    client: tuple[str, int] | None

    # Private: ASGI receive callable for body streaming
    _receive: Receive

    # Private: body cache (the dict is mutable, the field reference is not)
    _cache: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def url(self) -> str:
        """Path plus query string."""
        if self.query_string:
            return f"{self.path}?{self.query_string.decode('latin-1')}"
        return self.path

    @property
    def wants_patch(self) -> bool:
        """True when the live client is re-fetching the page to patch it."""
        return self.headers.get(PATCH_HEADER) == "1"

    async def body(self) -> bytes:
        """Read the full request body (cached after the first call)."""
        if "_body" in self._cache:
            return self._cache["_body"]
        result = b"".join([chunk async for chunk in self.stream()])
        self._cache["_body"] = result
        return result

    async def stream(self) -> AsyncGenerator[bytes]:
        """Stream the request body in chunks."""
        while True:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                break
            body = message.get("body", b"")
            if body:
                yield body
            if not message.get("more_body", False):
                break

    async def json(self) -> Any:
        return json.loads(await self.body())

    @classmethod
    def from_asgi(cls, scope: Scope, receive: Receive) -> Request:
        raw_query = scope.get("query_string", b"")
        query: dict[str, str] = {}
        for key, value in parse_qsl(raw_query.decode("latin-1"), keep_blank_values=True):
            query.setdefault(key, value)
        client = scope.get("client")
        return cls(
            method=scope["method"],
            path=scope["path"],
            headers=Headers(scope.get("headers", ())),
            query_string=raw_query,
            query=query,
            http_version=scope.get("http_version", "1.1"),
            client=tuple(client) if client else None,
            _receive=receive,
        )
