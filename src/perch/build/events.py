"""Build event bus — async broadcast of build completions.

When the build graph finishes a cycle for an entry, a ``BuildEvent`` is
emitted through the ``BuildEventBus``. The live-update broker subscribes to
push patches to browsers; anything else (the terminal reporter, tests)
can subscribe too.

Ordering: events are emitted in build-completion order and every
subscriber gets its own unbounded ``asyncio.Queue``, so nothing is
reordered or dropped.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field

from perch.errors import BuildError


@dataclass(frozen=True, slots=True)
class BuildEvent:
    """The outcome of one build cycle for one entry.

    ``changed`` lists the sources (relative to the project root) that were
    recompiled in this cycle. ``error`` is set when the cycle failed, in
    which case ``hash`` is the last good hash (or ``None``).
    """

    entry: str
    hash: str | None
    changed: frozenset[str] = frozenset()
    error: BuildError | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        return self.error is None


class BuildEventBus:
    """Async broadcast channel for build events.

    ``subscribe()`` registers immediately, so no event emitted after the
    call is missed even if iteration starts later::

        subscription = graph.events.subscribe()
        async for event in subscription:
            if event.ok:
                ...
    """

    __slots__ = ("_lock", "_subscribers")

    def __init__(self) -> None:
        self._subscribers: set[asyncio.Queue[BuildEvent | None]] = set()
        self._lock = threading.Lock()

    def emit(self, event: BuildEvent) -> None:
        """Broadcast an event to all active subscribers."""
        with self._lock:
            subscribers = set(self._subscribers)
        for queue in subscribers:
            queue.put_nowait(event)

    def subscribe(self) -> Subscription:
        """Register a new subscriber queue and return its iterator."""
        queue: asyncio.Queue[BuildEvent | None] = asyncio.Queue()
        with self._lock:
            self._subscribers.add(queue)
        return Subscription(self, queue)

    def _discard(self, queue: asyncio.Queue[BuildEvent | None]) -> None:
        with self._lock:
            self._subscribers.discard(queue)

    def close(self) -> None:
        """Signal all subscribers to stop."""
        with self._lock:
            for queue in self._subscribers:
                queue.put_nowait(None)
            self._subscribers.clear()


class Subscription:
    """One subscriber's view of the bus. Iterate it; close it when done."""

    __slots__ = ("_bus", "_closed", "_queue")

    def __init__(self, bus: BuildEventBus, queue: asyncio.Queue[BuildEvent | None]) -> None:
        self._bus = bus
        self._queue = queue
        self._closed = False

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> BuildEvent:
        if self._closed:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            self.close()
            raise StopAsyncIteration
        return event

    def close(self) -> None:
        self._closed = True
        self._bus._discard(self._queue)

    def pending(self) -> list[BuildEvent]:
        """Events already queued, without waiting."""
        events: list[BuildEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events
