"""FileWatcher — watchfiles notifications in, change-sets out.

``watchfiles.awatch`` supplies raw notifications for the project root; the
``Debouncer`` coalesces and classifies them; each resulting ``ChangeSet``
is handed to the ``on_change`` callback, one at a time and in order.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

import anyio
from watchfiles import Change, DefaultFilter, awatch

from perch.config import PerchConfig
from perch.watch.changes import ChangeKind, ChangeSet
from perch.watch.debounce import Debouncer

logger = logging.getLogger("perch.watch")

type ChangeHandler = Callable[[ChangeSet], Awaitable[None]]

_KINDS = {
    Change.added: ChangeKind.CREATED,
    Change.modified: ChangeKind.MODIFIED,
    Change.deleted: ChangeKind.DELETED,
}


class ProjectFilter(DefaultFilter):
    """watchfiles' default ignores, plus hidden paths and the build output."""

    def __init__(self, config: PerchConfig) -> None:
        self._root = config.root_path
        super().__init__(ignore_paths=(config.out_path,))

    def __call__(self, change: Change, path: str) -> bool:
        if not super().__call__(change, path):
            return False
        try:
            parts = Path(path).relative_to(self._root).parts
        except ValueError:
            return True
        return not any(part.startswith(".") for part in parts)


class FileWatcher:
    """Watches the project root and emits debounced change-sets.

    Usage::

        watcher = FileWatcher(config, server.handle_change_set)
        task = asyncio.create_task(watcher.run())
        ...
        watcher.stop()
        await task
    """

    __slots__ = ("_config", "_debouncer", "_filter", "_on_change", "_stop")

    def __init__(
        self,
        config: PerchConfig,
        on_change: ChangeHandler,
        *,
        debouncer: Debouncer | None = None,
    ) -> None:
        self._config = config
        self._on_change = on_change
        self._debouncer = debouncer or Debouncer(config)
        self._filter = ProjectFilter(config)
        self._stop = anyio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Watch until ``stop()`` is called."""
        logger.info("Watching %s", self._config.root_path)
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._dispatch)
            await self._pump()
            tg.cancel_scope.cancel()

    async def _pump(self) -> None:
        async for changes in awatch(
            self._config.root_path,
            watch_filter=self._filter,
            stop_event=self._stop,
            debounce=max(self._config.debounce_ms, 1),
        ):
            for change, path in changes:
                kind = _KINDS.get(change)
                if kind is not None:
                    self._debouncer.notify(path, kind)

    async def _dispatch(self) -> None:
        while True:
            change_set = await self._debouncer.next_change_set()
            logger.debug("Change-set: %s", ", ".join(str(c.path) for c in change_set))
            try:
                await self._on_change(change_set)
            except Exception:
                logger.exception("Change handler failed; still watching")
