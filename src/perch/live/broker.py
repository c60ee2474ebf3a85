"""LiveUpdateBroker — decides, per connection, between patch and reload.

The broker is a dispatcher over ``Connection`` records: a message comes in
(subscribe, ack, build event), the connection transitions, and zero or
more messages go out on that connection's queue. Everything is synchronous
except ``stream()``, so the order messages are queued in is the order the
broker saw events in.

Desync handling: a patch must be acked within ``ack_timeout``. When the
next event arrives for a connection holding an expired patch, that
connection gets exactly one ``reload`` instead of the patch, then normal
patching resumes.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable, Mapping
from typing import Any

from perch.build.events import BuildEvent, Subscription
from perch.config import PerchConfig
from perch.errors import DesyncTimeout
from perch.live.connection import Connection, ConnectionState, PendingAck
from perch.live.protocol import (
    Ack,
    ClientMessage,
    ErrorMessage,
    Patch,
    Reload,
    ServerMessage,
    Subscribe,
)
from perch.watch.changes import requires_full_reload

logger = logging.getLogger("perch.live")

type AssetURL = Callable[[str], str | None]


class LiveUpdateBroker:
    """Tracks live-update connections and routes build results to them.

    Usage::

        broker = LiveUpdateBroker(config)
        conn = broker.connect()
        broker.subscribe(conn.client_id, {"view/page.html"})
        broker.on_build(event)
        async for seq, message in broker.stream(conn):
            ...
    """

    __slots__ = ("_ack_timeout", "_asset_url", "_clock", "_config", "_connections")

    def __init__(
        self,
        config: PerchConfig,
        *,
        asset_url: AssetURL | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._ack_timeout = config.ack_timeout
        self._asset_url = asset_url
        self._clock = clock
        self._connections: dict[str, Connection] = {}

    # -- Connection lifecycle --

    def connect(self, client_id: str | None = None) -> Connection:
        """Attach an event stream for *client_id* and return its connection.

        A connection created by an earlier ``subscribe`` is adopted along
        with anything already queued on it. If another stream already holds
        the connection (an ``EventSource`` reconnect), that stream is closed
        and a fresh connection takes over its subscription.
        """
        client_id = client_id or uuid.uuid4().hex
        conn = self._connections.get(client_id)
        if conn is not None and conn.open and not conn.streaming:
            conn.streaming = True
            return conn

        replacement = Connection(client_id, streaming=True)
        if conn is not None and conn.open:
            conn.close()
            replacement.entries = conn.entries
            replacement.seq = conn.seq
            if conn.entries:
                replacement.state = ConnectionState.SUBSCRIBED
            logger.debug("Live client %s reconnected; previous stream closed", client_id)
        else:
            logger.debug("Live client %s connected", client_id)
        self._connections[client_id] = replacement
        return replacement

    def _ensure(self, client_id: str) -> Connection:
        conn = self._connections.get(client_id)
        if conn is None or not conn.open:
            conn = Connection(client_id)
            self._connections[client_id] = conn
        return conn

    def disconnect(self, client_id: str) -> None:
        conn = self._connections.pop(client_id, None)
        if conn is not None:
            conn.close()
            logger.debug("Live client %s disconnected", client_id)

    def get(self, client_id: str) -> Connection | None:
        return self._connections.get(client_id)

    @property
    def connections(self) -> list[Connection]:
        return [conn for conn in self._connections.values() if conn.open]

    def close(self) -> None:
        for client_id in list(self._connections):
            self.disconnect(client_id)

    # -- Client -> server --

    def handle(self, message: ClientMessage) -> None:
        """Dispatch a decoded client message."""
        if isinstance(message, Subscribe):
            self.subscribe(message.client_id, message.entries)
        elif isinstance(message, Ack):
            self.ack(message.client_id, message.entry, message.hash)

    def subscribe(self, client_id: str, entries: frozenset[str] | set[str]) -> Connection:
        conn = self._ensure(client_id)
        conn.entries = frozenset(entries)
        if conn.state is ConnectionState.CONNECTED:
            conn.state = ConnectionState.SUBSCRIBED
        return conn

    def ack(self, client_id: str, entry: str, digest: str) -> None:
        """Record an acknowledgement. Acks for superseded hashes are ignored."""
        conn = self._connections.get(client_id)
        if conn is None or not conn.open:
            return
        pending = conn.pending.get(entry)
        if pending is None or pending.hash != digest:
            return
        del conn.pending[entry]
        if not conn.pending:
            conn.state = ConnectionState.ACKED

    # -- Server -> client --

    def on_build(self, event: BuildEvent, *, reload: bool | None = None) -> int:
        """Route a build result; return how many connections were messaged.

        Failed builds become ``error`` broadcasts. Successful builds go to
        every connection subscribed to the entry, as a patch or a reload.
        """
        if event.error is not None:
            return self.broadcast_error(event.error.diagnostic())
        if event.hash is None:
            return 0

        if reload is None:
            reload = any(requires_full_reload(path, self._config) for path in event.changed)

        now = self._clock()
        delivered = 0
        for conn in self.connections:
            if event.entry not in conn.entries:
                continue
            self._expire(conn, now)
            if conn.desynced:
                conn.desynced = False
                conn.pending.clear()
                conn.enqueue(Reload(reason="desync"))
            elif reload:
                conn.pending.clear()
                conn.enqueue(Reload(reason="layout"))
            else:
                conn.enqueue(Patch(event.entry, event.hash, self._payload(event)))
                conn.pending[event.entry] = PendingAck(event.hash, now + self._ack_timeout)
                conn.state = ConnectionState.PUSHING
            delivered += 1
        return delivered

    def broadcast_error(self, diagnostic: Mapping[str, Any]) -> int:
        return self._broadcast(ErrorMessage(diagnostic))

    def broadcast_reload(self, reason: str = "") -> int:
        for conn in self.connections:
            conn.pending.clear()
            conn.desynced = False
        return self._broadcast(Reload(reason=reason))

    def _broadcast(self, message: ServerMessage) -> int:
        conns = self.connections
        for conn in conns:
            conn.enqueue(message)
        return len(conns)

    def _expire(self, conn: Connection, now: float) -> None:
        expired = conn.expired(now)
        if not expired:
            return
        for entry in expired:
            logger.warning("%s; forcing a reload", DesyncTimeout(conn.client_id, entry))
            del conn.pending[entry]
        conn.desynced = True

    def _payload(self, event: BuildEvent) -> dict[str, Any]:
        payload: dict[str, Any] = {"changed": sorted(event.changed)}
        if self._asset_url is not None:
            url = self._asset_url(event.entry)
            if url is not None:
                payload["asset"] = url
        return payload

    # -- Delivery --

    async def stream(self, conn: Connection) -> AsyncIterator[tuple[int, ServerMessage]]:
        """Yield ``(seq, message)`` for *conn* until it closes or is replaced."""
        while True:
            item = await conn.queue.get()
            if item is None:
                return
            yield item

    async def pump(self, subscription: Subscription) -> None:
        """Feed build events from a bus subscription until it ends."""
        async for event in subscription:
            self.on_build(event)
