"""HTTP response with a chainable ``.with_*()`` API.

Each transformation returns a new Response.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any


@dataclass(frozen=True, slots=True)
class Response:
    body: str | bytes = ""
    status: int = 200
    content_type: str = "text/html; charset=utf-8"
    headers: tuple[tuple[str, str], ...] = ()

    def with_status(self, status: int) -> Response:
        return replace(self, status=status)

    def with_header(self, name: str, value: str) -> Response:
        return replace(self, headers=(*self.headers, (name, value)))

    def with_headers(self, headers: Mapping[str, str] | tuple[tuple[str, str], ...]) -> Response:
        pairs = tuple(headers.items()) if isinstance(headers, Mapping) else headers
        return replace(self, headers=(*self.headers, *pairs))

    @property
    def body_bytes(self) -> bytes:
        if isinstance(self.body, bytes):
            return self.body
        return self.body.encode("utf-8")

    @classmethod
    def json(cls, data: Any, status: int = 200) -> Response:
        return cls(
            body=json.dumps(data, default=str),
            status=status,
            content_type="application/json",
        )


@dataclass(frozen=True, slots=True)
class RawResponse:
    """A response whose headers are already complete (proxied responses).

    ``content-type`` is taken from ``headers``; nothing is added on send
    except ``content-length``.
    """

    body: bytes
    status: int
    headers: tuple[tuple[str, str], ...] = ()
