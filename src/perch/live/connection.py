"""Per-connection live-update state.

Each browser tab is one ``Connection``: a tagged state record plus its own
outbound queue. The broker is the only thing that transitions it::

    connected -> subscribed -> (pushing -> acked)* -> disconnected
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum

from perch.live.protocol import ServerMessage


class ConnectionState(StrEnum):
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    PUSHING = "pushing"
    ACKED = "acked"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class PendingAck:
    """A patch sent to the client and not yet acknowledged."""

    hash: str
    deadline: float


@dataclass(slots=True)
class Connection:
    """Mutable state for one live-update client.

    ``desynced`` is set when a pending patch misses its ack deadline; the
    next event for this connection becomes a single reload. ``streaming``
    is set once an event stream reads the queue.
    """

    client_id: str
    state: ConnectionState = ConnectionState.CONNECTED
    entries: frozenset[str] = frozenset()
    pending: dict[str, PendingAck] = field(default_factory=dict)
    desynced: bool = False
    seq: int = 0
    streaming: bool = False
    queue: asyncio.Queue[tuple[int, ServerMessage] | None] = field(default_factory=asyncio.Queue)

    @property
    def open(self) -> bool:
        return self.state is not ConnectionState.DISCONNECTED

    def enqueue(self, message: ServerMessage) -> int:
        """Queue *message* for delivery; return its sequence number."""
        self.seq += 1
        self.queue.put_nowait((self.seq, message))
        return self.seq

    def expired(self, now: float) -> list[str]:
        """Entries whose pending patch missed its ack deadline."""
        return [entry for entry, ack in self.pending.items() if ack.deadline <= now]

    def close(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.pending.clear()
        self.queue.put_nowait(None)
