"""Incremental build graph with single-flight rebuilds.

Tracks source -> artifact nodes and their dependency edges, rebuilds only
what changed, and publishes a new ``Manifest`` snapshot after each fully
successful cycle.

Ownership:
    ``BuildGraph`` is the only writer of ``BuildNode`` records and of the
    manifest reference. Every other component reads ``graph.manifest``,
    which is always a complete, immutable snapshot.

Concurrency:
    - ``ensure_fresh(entry)`` is single-flight per entry: concurrent callers
      await one shared task. The task is shielded, so a caller being
      cancelled (client disconnect) never cancels the build.
    - Build cycles for different entries serialize through one lock, so
      node state is never observed mid-cycle.
    - ``invalidate()`` bumps a generation counter; a caller arriving after
      an invalidation never joins a build that started before it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import time
import traceback
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import anyio.to_thread

from perch._internal.invoke import invoke
from perch.build.compiler import CompileOptions, CompileResult, Compiler
from perch.build.events import BuildEvent, BuildEventBus
from perch.build.manifest import MANIFEST_FILENAME, Manifest, ManifestEntry
from perch.config import PerchConfig
from perch.errors import BuildError, CompileError

logger = logging.getLogger("perch.build")


def content_hash(data: bytes) -> str:
    """Hex digest used for node and entry hashes."""
    return hashlib.sha256(data).hexdigest()


@dataclass(slots=True)
class BuildNode:
    """One source file and its last successful compile.

    ``content_hash`` reflects the last successful compile of
    ``source_path``. ``stat`` caches ``(mtime_ns, size)`` from that compile
    so unchanged files are not re-read on every freshness check.
    """

    source_path: Path
    artifact_path: Path | None = None
    content_hash: str = ""
    depends_on: frozenset[Path] = frozenset()
    last_built_at: float = 0.0
    stat: tuple[int, int] | None = None
    size_bytes: int = 0


class _MissingSource(CompileError):
    """A source file in the closure no longer exists."""


@dataclass(slots=True)
class _Staged:
    """A compile result held back until the whole cycle succeeds."""

    digest: str
    stat: tuple[int, int] | None
    result: CompileResult


@dataclass(slots=True)
class _Cycle:
    """Working state for one ``ensure_fresh`` cycle."""

    staged: dict[Path, _Staged] = field(default_factory=dict)
    digests: dict[Path, str] = field(default_factory=dict)
    stats: dict[Path, tuple[int, int] | None] = field(default_factory=dict)
    dirty: dict[Path, bool] = field(default_factory=dict)
    stack: set[Path] = field(default_factory=set)


class BuildGraph:
    """Dependency-tracked set of source -> artifact compilation nodes.

    Usage::

        graph = BuildGraph(config, AssetCompiler())
        graph.set_entries({"view/page.html": root / "view/page.html"})
        entry = await graph.ensure_fresh("view/page.html")
    """

    def __init__(
        self,
        config: PerchConfig,
        compiler: Compiler,
        *,
        entries: Mapping[str, Path] | None = None,
        events: BuildEventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._compiler = compiler
        self._root = config.root_path
        self._out = config.out_path
        self._options = CompileOptions(
            root=self._root,
            template_root=config.view_path,
            target=config.target,
            minify=config.minify,
            extra={"server_entry": config.server_entry},
        )
        self._entries: dict[str, Path] = {}
        self._nodes: dict[Path, BuildNode] = {}
        self._manifest = Manifest()
        self._inflight: dict[str, tuple[asyncio.Task[ManifestEntry], int]] = {}
        self._failed: dict[str, BuildError] = {}
        self._generation = 0
        self._lock = asyncio.Lock()
        self._clock = clock
        self.events = events or BuildEventBus()
        if entries:
            self.set_entries(entries)

    # -- Read side --

    @property
    def manifest(self) -> Manifest:
        """The last fully published manifest snapshot."""
        return self._manifest

    @property
    def entries(self) -> Mapping[str, Path]:
        return dict(self._entries)

    @property
    def out_dir(self) -> Path:
        return self._out

    def failure(self, entry: str) -> BuildError | None:
        """The error from the entry's last cycle, if it failed."""
        return self._failed.get(entry)

    # -- Entry management --

    def set_entries(self, entries: Mapping[str, Path]) -> None:
        """Replace the entry set (after a route-table rebuild).

        Manifest records for entries that no longer exist are dropped in
        the next published snapshot.
        """
        self._entries = {name: self._normalize(path) for name, path in entries.items()}
        stale = [name for name in self._manifest if name not in self._entries]
        if stale:
            kept = {k: v for k, v in self._manifest.entries.items() if k in self._entries}
            self._manifest = Manifest(entries=kept, version=self._manifest.version + 1)
        for name in list(self._failed):
            if name not in self._entries:
                del self._failed[name]

    def load_manifest(self, manifest: Manifest) -> None:
        """Trust a pre-built manifest (production mode)."""
        self._manifest = manifest

    # -- Invalidation --

    def invalidate(self, paths: Iterable[str | Path]) -> set[str]:
        """Forget cached stat info for *paths* and return affected entries.

        Entries are affected when any of the paths is in their dependency
        closure. Entries whose last cycle failed are always included, since
        a change anywhere may be what fixes them.
        """
        changed = {self._normalize(path) for path in paths}
        self._generation += 1
        for path in changed:
            node = self._nodes.get(path)
            if node is not None:
                node.stat = None

        affected = set(self._failed)
        for name, source in self._entries.items():
            if changed & self._closure(source):
                affected.add(name)
        return affected

    def _closure(self, source: Path) -> set[Path]:
        seen: set[Path] = set()
        pending = [source]
        while pending:
            path = pending.pop()
            if path in seen:
                continue
            seen.add(path)
            node = self._nodes.get(path)
            if node is not None:
                pending.extend(node.depends_on)
        return seen

    # -- Building --

    async def ensure_fresh(self, entry: str) -> ManifestEntry:
        """Rebuild *entry* if anything in its closure is dirty.

        Returns the entry's current manifest record.

        Raises:
            KeyError: *entry* is not registered.
            BuildError: a file in the closure failed to compile; the
                manifest keeps the entry's last good record.
        """
        if entry not in self._entries:
            raise KeyError(entry)

        current = self._inflight.get(entry)
        if current is not None and current[1] == self._generation:
            task = current[0]
        else:
            previous = current[0] if current is not None else None
            task = asyncio.create_task(
                self._run_after(previous, entry), name=f"perch-build:{entry}"
            )
            self._inflight[entry] = (task, self._generation)
            task.add_done_callback(lambda done, name=entry: self._finish(name, done))
        return await asyncio.shield(task)

    def _finish(self, entry: str, task: asyncio.Task[ManifestEntry]) -> None:
        current = self._inflight.get(entry)
        if current is not None and current[0] is task:
            del self._inflight[entry]
        # Mark the exception retrieved: all waiters may have been cancelled.
        if not task.cancelled():
            task.exception()

    async def _run_after(
        self, previous: asyncio.Task[ManifestEntry] | None, entry: str
    ) -> ManifestEntry:
        if previous is not None:
            await asyncio.wait([previous])
        return await self._build(entry)

    async def build_all(self) -> list[BuildError]:
        """Build every registered entry; return the failures (empty on success)."""
        errors: list[BuildError] = []
        for name in sorted(self._entries):
            try:
                await self.ensure_fresh(name)
            except BuildError as exc:
                errors.append(exc)
        return errors

    async def _build(self, entry: str) -> ManifestEntry:
        async with self._lock:
            source = self._entries[entry]
            cycle = _Cycle()
            try:
                await self._visit(source, cycle)
                written = await anyio.to_thread.run_sync(self._write_artifacts, cycle)
            except CompileError as exc:
                error = BuildError.from_compile_error(entry, exc, file=self._relative(exc.path))
                self._failed[entry] = error
                last = self._manifest.get(entry)
                logger.error("Build failed: %s", error)
                self.events.emit(BuildEvent(entry, last.hash if last else None, error=error))
                raise error from exc
            except OSError as exc:
                error = BuildError(entry, self._relative(source), f"cannot write artifact: {exc}")
                self._failed[entry] = error
                logger.error("Build failed: %s", error)
                self.events.emit(BuildEvent(entry, None, error=error))
                raise error from exc

            self._commit(cycle, written)
            was_failed = self._failed.pop(entry, None) is not None

            closure = sorted(cycle.dirty)
            entry_hash = content_hash(
                "\n".join(
                    f"{self._relative(path)}:{self._nodes[path].content_hash}" for path in closure
                ).encode("utf-8")
            )
            previous = self._manifest.get(entry)
            if previous is not None and previous.hash == entry_hash and not was_failed:
                return previous

            node = self._nodes[source]
            assert node.artifact_path is not None
            record = ManifestEntry(
                artifact_path=node.artifact_path.relative_to(self._out).as_posix(),
                hash=entry_hash,
                size_bytes=node.size_bytes,
                source_path=self._relative(source),
            )
            self._manifest = self._manifest.with_entries({entry: record})
            changed = frozenset(self._relative(path) for path in cycle.staged)
            logger.info(
                "Built %s (%d file%s recompiled)",
                entry,
                len(changed),
                "" if len(changed) == 1 else "s",
            )
            self.events.emit(BuildEvent(entry, entry_hash, changed=changed))
            return record

    async def _visit(self, path: Path, cycle: _Cycle) -> bool:
        """Refresh *path* and its dependencies; return whether it was dirty.

        An unchanged node checks its known dependencies first (leaves
        first) and is recompiled only if one of them is dirty. A changed
        node is compiled straight away, and only the dependencies that
        compile reports are visited, so edges it dropped are never
        followed.
        """
        if path in cycle.dirty:
            return cycle.dirty[path]
        if path in cycle.stack:
            # Dependency cycle: the edge back adds nothing new.
            return False
        cycle.stack.add(path)
        try:
            dirty = await self._refresh(path, cycle)
        finally:
            cycle.stack.discard(path)
        cycle.dirty[path] = dirty
        return dirty

    async def _refresh(self, path: Path, cycle: _Cycle) -> bool:
        node = self._nodes.get(path)
        stat = await anyio.to_thread.run_sync(_stat, path)
        if node is not None and stat is not None and node.stat == stat:
            digest = node.content_hash
        else:
            try:
                data = await anyio.to_thread.run_sync(_read, path)
            except OSError as exc:
                msg = f"cannot read source: {exc.strerror or exc}"
                raise CompileError(path, msg) from exc
            if data is None:
                raise _MissingSource(path, "source file not found")
            digest = content_hash(data)
        cycle.digests[path] = digest
        cycle.stats[path] = stat

        dirty = node is None or node.content_hash != digest or node.artifact_path is None
        if not dirty:
            for dep in sorted(node.depends_on):
                try:
                    if await self._visit(dep, cycle):
                        dirty = True
                except _MissingSource as exc:
                    if exc.path != str(dep):
                        raise
                    # The dependency is gone; the recompile reports whether
                    # this node still needs it.
                    dirty = True
        if not dirty:
            return False

        result = await self._compile(path)
        depends_on = frozenset(self._normalize(dep) for dep in result.depends_on)
        cycle.staged[path] = _Staged(
            digest=digest, stat=stat, result=CompileResult(result.artifact_bytes, depends_on)
        )
        for dep in sorted(depends_on):
            await self._visit(dep, cycle)
        return True

    async def _compile(self, path: Path) -> CompileResult:
        try:
            return await invoke(self._compiler.compile, path, self._options)
        except CompileError:
            raise
        except Exception as exc:
            raise CompileError(
                path,
                f"{type(exc).__name__}: {exc}",
                traceback="".join(traceback.format_exception(exc)),
            ) from exc

    def _write_artifacts(self, cycle: _Cycle) -> dict[Path, Path]:
        """Write staged artifacts to content-addressed paths.

        Runs in a worker thread. Existing files are never overwritten, so
        the last good artifacts stay intact whatever happens next.
        """
        written: dict[Path, Path] = {}
        for source, staged in cycle.staged.items():
            data = staged.result.artifact_bytes
            target = self._out / self._artifact_name(source, content_hash(data))
            if not target.exists():
                target.parent.mkdir(parents=True, exist_ok=True)
                tmp = target.with_name(f".{target.name}.tmp")
                tmp.write_bytes(data)
                os.replace(tmp, target)
            written[source] = target
        return written

    def _commit(self, cycle: _Cycle, written: Mapping[Path, Path]) -> None:
        now = self._clock()
        for source, staged in cycle.staged.items():
            node = self._nodes.get(source) or BuildNode(source_path=source)
            node.artifact_path = written[source]
            node.content_hash = staged.digest
            node.depends_on = staged.result.depends_on
            node.last_built_at = now
            node.stat = staged.stat
            node.size_bytes = len(staged.result.artifact_bytes)
            self._nodes[source] = node
        # Clean nodes re-read this cycle get their stat cache refreshed.
        for path, digest in cycle.digests.items():
            node = self._nodes.get(path)
            if node is not None and path not in cycle.staged and node.content_hash == digest:
                node.stat = cycle.stats.get(path)

    def _artifact_name(self, source: Path, digest: str) -> str:
        relative = Path(self._relative(source))
        name = relative.with_suffix("").as_posix()
        pattern = self._config.filename_pattern
        return (
            pattern.replace("[name]", name)
            .replace("[hash]", digest[:12])
            .replace("[ext]", relative.suffix)
        )

    # -- Persistence --

    def write_manifest(self, path: str | Path | None = None) -> Path:
        target = Path(path) if path is not None else self._out / MANIFEST_FILENAME
        self._manifest.dump(target)
        return target

    # -- Helpers --

    def _normalize(self, path: str | Path) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self._root / candidate
        return candidate.resolve()

    def _relative(self, path: str | Path) -> str:
        try:
            return Path(path).relative_to(self._root).as_posix()
        except ValueError:
            return Path(path).as_posix()


def _stat(path: Path) -> tuple[int, int] | None:
    try:
        st = path.stat()
    except OSError:
        return None
    return (st.st_mtime_ns, st.st_size)


def _read(path: Path) -> bytes | None:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None
