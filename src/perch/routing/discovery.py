"""Filesystem route discovery for the view/ and api/ directories.

Walks each subtree and maps files to routes:

- ``view/``: a file whose stem is ``page`` defines a route at its
  directory URL. Every other file is a component, layout, or asset.
- ``api/``: every source file is a route. The stem ``index`` maps to its
  directory URL; any other stem appends itself to the path.

Directory and file names wrapped in ``[brackets]`` become named params;
``[...name]`` becomes a catch-all and must be the last segment. Names
starting with ``_`` or ``.`` are skipped.

Usage::

    entries = discover_routes(Path("view"), RouteKind.VIEW, root=Path("."))
"""

from __future__ import annotations

from pathlib import Path

from perch.errors import ConfigurationError
from perch.routing.route import PathSegment, RouteEntry, RouteKind, SegmentKind
from perch.routing.router import parse_pattern, parse_segment

PAGE_STEM = "page"
INDEX_STEM = "index"

_SKIP_DIRS = frozenset({"__pycache__", "node_modules"})
_SKIP_SUFFIXES = frozenset({".pyc", ".pyo", ".swp", ".tmp"})


def discover_routes(
    directory: str | Path,
    kind: RouteKind,
    *,
    root: str | Path,
    prefix: str = "",
) -> list[RouteEntry]:
    """Walk a route directory and discover every route it declares.

    Args:
        directory: The ``view/`` or ``api/`` directory.
        kind: Route kind recorded on each entry.
        root: Project root; ``artifact_ref`` is relative to it.
        prefix: URL prefix prepended to every pattern (``/api``).

    Returns:
        Entries sorted by source path. A missing directory yields no routes.
    """
    base = Path(directory).resolve()
    if not base.is_dir():
        return []

    root_path = Path(root).resolve()
    prefix_segments = parse_pattern(prefix)
    entries: list[RouteEntry] = []
    _walk_directory(
        base,
        root_path,
        kind=kind,
        url_parts=list(prefix_segments),
        entries=entries,
    )
    entries.sort(key=lambda entry: entry.artifact_ref)
    return entries


def is_route_file(path: Path, kind: RouteKind) -> bool:
    """Whether *path* (already inside the kind's directory) defines a route."""
    if not _is_candidate(path):
        return False
    if kind is RouteKind.VIEW:
        return path.stem == PAGE_STEM
    return True


def _is_candidate(path: Path) -> bool:
    if path.name.startswith(("_", ".")):
        return False
    return path.suffix not in _SKIP_SUFFIXES


def _walk_directory(
    directory: Path,
    root: Path,
    *,
    kind: RouteKind,
    url_parts: list[PathSegment],
    entries: list[RouteEntry],
) -> None:
    """Recursively walk a directory, collecting route entries."""
    for item in sorted(directory.iterdir()):
        if item.is_dir():
            if item.name.startswith(("_", ".")) or item.name in _SKIP_DIRS:
                continue
            _walk_directory(
                item,
                root,
                kind=kind,
                url_parts=[*url_parts, _segment_for(item.name, item)],
                entries=entries,
            )
            continue

        if not item.is_file() or not is_route_file(item, kind):
            continue

        if kind is RouteKind.VIEW or item.stem == INDEX_STEM:
            segments = list(url_parts)
        else:
            segments = [*url_parts, _segment_for(item.stem, item)]

        entries.append(_make_entry(item, root, kind, segments))


def _segment_for(name: str, source: Path) -> PathSegment:
    try:
        return parse_segment(name)
    except ConfigurationError as exc:
        raise ConfigurationError(f"{source}: {exc}") from exc


def _make_entry(
    file: Path,
    root: Path,
    kind: RouteKind,
    segments: list[PathSegment],
) -> RouteEntry:
    for index, seg in enumerate(segments):
        if seg.kind is SegmentKind.CATCH_ALL and index != len(segments) - 1:
            msg = f"{file}: catch-all segment [...{seg.value}] must be the last segment"
            raise ConfigurationError(msg)

    names = [seg.value for seg in segments if seg.kind is not SegmentKind.LITERAL]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"{file}: duplicate parameter names {names}")

    try:
        ref = file.relative_to(root).as_posix()
    except ValueError:
        ref = file.as_posix()

    return RouteEntry(
        pattern=tuple(segments),
        kind=kind,
        artifact_ref=ref,
        param_names=frozenset(names),
    )
