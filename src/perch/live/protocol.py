"""Live-update messages and their Server-Sent Events encoding.

Server -> client messages travel as SSE events whose ``event:`` name is
the message kind and whose ``data:`` is JSON. Client -> server messages
(``subscribe`` and ``ack``) arrive as JSON request bodies.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar


class MessageKind(StrEnum):
    SUBSCRIBE = "subscribe"
    PATCH = "patch"
    RELOAD = "reload"
    ACK = "ack"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class SSEEvent:
    """A single Server-Sent Event."""

    data: str
    event: str | None = None
    id: str | None = None
    retry: int | None = None

    def encode(self) -> str:
        """Serialize to SSE wire format."""
        lines: list[str] = []
        if self.event:
            lines.append(f"event: {self.event}")
        if self.id:
            lines.append(f"id: {self.id}")
        if self.retry is not None:
            lines.append(f"retry: {self.retry}")
        lines.extend(f"data: {line}" for line in self.data.split("\n"))
        lines.append("")  # Trailing newline to terminate the event
        return "\n".join(lines) + "\n"


HEARTBEAT = ": heartbeat"


def decode_stream(raw: str) -> tuple[list[SSEEvent], int]:
    """Split an SSE stream back into events, counting heartbeat comments.

    Fields follow the SSE rules: ``name: value`` with one optional space,
    repeated ``data`` fields joined by newlines. Blocks with no ``data``
    (the opening ``retry:`` hint) yield no event.
    """
    events: list[SSEEvent] = []
    heartbeats = 0
    for block in raw.replace("\r\n", "\n").split("\n\n"):
        fields: dict[str, list[str]] = {}
        for line in filter(None, block.split("\n")):
            if line.startswith(":"):
                if line == HEARTBEAT:
                    heartbeats += 1
                continue
            name, _, value = line.partition(":")
            fields.setdefault(name, []).append(value.removeprefix(" "))
        if "data" not in fields:
            continue
        retry = fields.get("retry", [""])[-1]
        events.append(
            SSEEvent(
                data="\n".join(fields["data"]),
                event=fields["event"][-1] if "event" in fields else None,
                id=fields["id"][-1] if "id" in fields else None,
                retry=int(retry) if retry.isdigit() else None,
            )
        )
    return events, heartbeats


# -- Server -> client --


@dataclass(frozen=True, slots=True)
class Patch:
    kind: ClassVar[MessageKind] = MessageKind.PATCH

    entry: str
    hash: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"entry": self.entry, "hash": self.hash, "payload": dict(self.payload)}


@dataclass(frozen=True, slots=True)
class Reload:
    kind: ClassVar[MessageKind] = MessageKind.RELOAD

    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason}


@dataclass(frozen=True, slots=True)
class ErrorMessage:
    kind: ClassVar[MessageKind] = MessageKind.ERROR

    diagnostic: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"diagnostic": dict(self.diagnostic)}


type ServerMessage = Patch | Reload | ErrorMessage


# -- Client -> server --


@dataclass(frozen=True, slots=True)
class Subscribe:
    kind: ClassVar[MessageKind] = MessageKind.SUBSCRIBE

    client_id: str
    entries: frozenset[str]


@dataclass(frozen=True, slots=True)
class Ack:
    kind: ClassVar[MessageKind] = MessageKind.ACK

    client_id: str
    entry: str
    hash: str


type ClientMessage = Subscribe | Ack


class ProtocolError(ValueError):
    """A client message could not be decoded."""


def encode_message(message: ServerMessage, seq: int | None = None) -> SSEEvent:
    """Wrap a server message as an SSE event; *seq* becomes the event id."""
    return SSEEvent(
        data=json.dumps(message.to_dict(), default=str, separators=(",", ":")),
        event=message.kind.value,
        id=str(seq) if seq is not None else None,
    )


def decode_client_message(kind: MessageKind, body: bytes) -> ClientMessage:
    """Parse a ``subscribe`` or ``ack`` request body.

    Raises:
        ProtocolError: malformed JSON or missing fields.
    """
    try:
        data = json.loads(body or b"{}")
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"invalid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ProtocolError("expected a JSON object")

    client_id = data.get("client")
    if not isinstance(client_id, str) or not client_id:
        raise ProtocolError("missing 'client'")

    if kind is MessageKind.SUBSCRIBE:
        entries = data.get("entries")
        if not isinstance(entries, list) or not all(isinstance(e, str) for e in entries):
            raise ProtocolError("'entries' must be a list of strings")
        return Subscribe(client_id, frozenset(entries))

    if kind is MessageKind.ACK:
        entry, digest = data.get("entry"), data.get("hash")
        if not isinstance(entry, str) or not isinstance(digest, str):
            raise ProtocolError("'entry' and 'hash' are required")
        return Ack(client_id, entry, digest)

    raise ProtocolError(f"{kind} is not a client message")
