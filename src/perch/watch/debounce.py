"""Debouncer — merges raw notifications into change-sets.

Notifications are keyed by path. Inside one window the net effect per
path is kept:

- created then modified  -> created (still a new file)
- created then deleted   -> dropped (never existed as far as we care)
- deleted then created   -> modified
- anything else          -> the latest operation

The window is trailing: it closes once no notification has arrived for
``debounce_ms``, capped so a constantly-busy tree still flushes.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

from perch.config import PerchConfig
from perch.watch.changes import ChangeKind, ChangeSet, classify

# A window never stays open longer than this many debounce periods.
_MAX_WINDOWS = 10


def merge_kinds(previous: ChangeKind | None, latest: ChangeKind) -> ChangeKind | None:
    """Net change for a path seen twice in one window; ``None`` drops it."""
    if previous is None:
        return latest
    if previous is ChangeKind.CREATED:
        if latest is ChangeKind.DELETED:
            return None
        return ChangeKind.CREATED
    if previous is ChangeKind.DELETED and latest is ChangeKind.CREATED:
        return ChangeKind.MODIFIED
    return latest


class Debouncer:
    """Collects notifications and hands out one change-set per window.

    ``notify`` is synchronous so it can be fed from any watcher loop or
    directly from tests::

        debouncer.notify(path, ChangeKind.MODIFIED)
        change_set = await debouncer.next_change_set()
    """

    __slots__ = ("_config", "_event", "_last", "_pending", "_window")

    def __init__(self, config: PerchConfig, *, window: float | None = None) -> None:
        self._config = config
        self._window = window if window is not None else config.debounce_ms / 1000
        self._pending: dict[Path, ChangeKind] = {}
        self._event = asyncio.Event()
        self._last = 0.0

    def notify(self, path: str | Path, kind: ChangeKind) -> None:
        resolved = Path(path).resolve()
        merged = merge_kinds(self._pending.get(resolved), kind)
        if merged is None:
            self._pending.pop(resolved, None)
        else:
            self._pending[resolved] = merged
        self._last = time.monotonic()
        self._event.set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def next_change_set(self) -> ChangeSet:
        """Wait for the next non-empty change-set."""
        while True:
            await self._event.wait()
            opened = time.monotonic()
            limit = opened + self._window * _MAX_WINDOWS
            while True:
                now = time.monotonic()
                remaining = min(self._last + self._window, limit) - now
                if remaining <= 0:
                    break
                await asyncio.sleep(remaining)

            self._event.clear()
            pending, self._pending = self._pending, {}
            if not pending:
                continue
            return ChangeSet(
                tuple(classify(path, kind, self._config) for path, kind in sorted(pending.items()))
            )
