"""Compiled router with trie-based path matching.

Entries are added while a route table is being built and compiled into an
immutable lookup structure before the table is activated. One router
holds one route kind.
"""

from dataclasses import dataclass

from perch.errors import ConfigurationError, RouteConflict
from perch.routing.route import PathSegment, RouteEntry, RouteMatch, SegmentKind


def parse_pattern(path: str) -> tuple[PathSegment, ...]:
    """Parse a pattern string into segments.

    Examples::

        "/users"            -> (PathSegment(LITERAL, "users"),)
        "/users/[id]"       -> (..., PathSegment(PARAM, "id"))
        "/docs/[...slug]"   -> (..., PathSegment(CATCH_ALL, "slug"))
    """
    parts = [part for part in path.strip("/").split("/") if part]
    segments: list[PathSegment] = []
    for index, part in enumerate(parts):
        segment = parse_segment(part)
        if segment.kind is SegmentKind.CATCH_ALL and index != len(parts) - 1:
            msg = f"Catch-all segment {part!r} must be the last segment of {path!r}"
            raise ConfigurationError(msg)
        segments.append(segment)
    return tuple(segments)


def parse_segment(part: str) -> PathSegment:
    """Parse one path component (a directory or file stem)."""
    if part.startswith("[") and part.endswith("]"):
        inner = part[1:-1]
        if inner.startswith("..."):
            name = inner[3:]
            kind = SegmentKind.CATCH_ALL
        else:
            name = inner
            kind = SegmentKind.PARAM
        if not name.isidentifier():
            msg = f"Invalid parameter name in {part!r}: use [name] or [...name]"
            raise ConfigurationError(msg)
        return PathSegment(kind, name)
    if "[" in part or "]" in part:
        msg = f"Brackets must wrap a whole segment, got {part!r}"
        raise ConfigurationError(msg)
    return PathSegment(SegmentKind.LITERAL, part)


class _TrieNode:
    """A node in the route trie. Mutable during compilation only."""

    __slots__ = ("catch_all", "children", "entry", "param_child")

    def __init__(self) -> None:
        # Literal segment children: "users" -> node
        self.children: dict[str, _TrieNode] = {}
        # Single parameter child (param names don't disambiguate)
        self.param_child: _ParamEdge | None = None
        # Catch-all entry consuming the rest of the path
        self.catch_all: _CatchAllEdge | None = None
        # Entry terminating exactly at this node
        self.entry: RouteEntry | None = None


@dataclass(slots=True)
class _ParamEdge:
    node: _TrieNode


@dataclass(slots=True)
class _CatchAllEdge:
    entry: RouteEntry


class Router:
    """Compiled router with trie-based path matching.

    Usage::

        router = Router()
        router.add(entry)
        router.compile()
        match = router.match("/users/42")
    """

    __slots__ = ("_compiled", "_entries", "_root")

    def __init__(self) -> None:
        self._root = _TrieNode()
        self._compiled = False
        self._entries: list[RouteEntry] = []

    def add(self, entry: RouteEntry) -> None:
        """Add an entry. Must be called before compile().

        Raises ``RouteConflict`` when an entry with the same pattern shape
        is already present, regardless of param names.
        """
        if self._compiled:
            msg = "Cannot add routes after compilation."
            raise RuntimeError(msg)

        node = self._root
        for seg in entry.pattern:
            if seg.kind is SegmentKind.CATCH_ALL:
                if node.catch_all is not None:
                    self._conflict(entry, node.catch_all.entry)
                node.catch_all = _CatchAllEdge(entry=entry)
                self._entries.append(entry)
                return

            if seg.kind is SegmentKind.PARAM:
                if node.param_child is None:
                    node.param_child = _ParamEdge(node=_TrieNode())
                node = node.param_child.node
            else:
                if seg.value not in node.children:
                    node.children[seg.value] = _TrieNode()
                node = node.children[seg.value]

        if node.entry is not None:
            self._conflict(entry, node.entry)
        node.entry = entry
        self._entries.append(entry)

    @staticmethod
    def _conflict(entry: RouteEntry, existing: RouteEntry) -> None:
        files = tuple(sorted((existing.artifact_ref, entry.artifact_ref)))
        raise RouteConflict(entry.kind.value, entry.shape, files)

    @property
    def entries(self) -> list[RouteEntry]:
        """All registered entries in insertion order."""
        return list(self._entries)

    def compile(self) -> None:
        """Freeze the router. No more entries can be added."""
        self._compiled = True

    def match(self, path: str) -> RouteMatch | None:
        """Match a request path against the compiled trie.

        Returns ``None`` if no entry matches. The trailing slash and empty
        segments are ignored.
        """
        parts = [p for p in path.strip("/").split("/") if p]
        found = self._match_node(self._root, parts, 0, [])
        if found is None:
            return None
        entry, values = found
        # Names come from the matched entry: siblings may name the same
        # param position differently.
        names = [seg.value for seg in entry.pattern if seg.kind is not SegmentKind.LITERAL]
        return RouteMatch(entry=entry, params=dict(zip(names, values, strict=True)))

    def _match_node(
        self,
        node: _TrieNode,
        parts: list[str],
        index: int,
        values: list[str],
    ) -> tuple[RouteEntry, list[str]] | None:
        """Recursively match path parts against the trie."""
        if index == len(parts):
            if node.entry is not None:
                return node.entry, values
            return None

        part = parts[index]

        # 1. Literal child first (exact match)
        child = node.children.get(part)
        if child is not None:
            result = self._match_node(child, parts, index + 1, values)
            if result is not None:
                return result

        # 2. Named parameter
        if node.param_child is not None:
            result = self._match_node(node.param_child.node, parts, index + 1, [*values, part])
            if result is not None:
                return result

        # 3. Catch-all consumes the remainder
        if node.catch_all is not None:
            return node.catch_all.entry, [*values, "/".join(parts[index:])]

        return None
