"""RouteEntry, PathSegment, and RouteMatch frozen dataclasses."""

from dataclasses import dataclass
from enum import StrEnum


class RouteKind(StrEnum):
    """Which subtree a route was discovered in."""

    VIEW = "view"
    API = "api"


class SegmentKind(StrEnum):
    LITERAL = "literal"
    PARAM = "param"
    CATCH_ALL = "catch_all"


@dataclass(frozen=True, slots=True)
class PathSegment:
    """A parsed segment of a route pattern.

    Literal:   ``users``     (kind=LITERAL, value="users")
    Param:     ``[id]``      (kind=PARAM, value="id")
    Catch-all: ``[...slug]`` (kind=CATCH_ALL, value="slug")
    """

    kind: SegmentKind
    value: str

    @property
    def shape(self) -> str:
        """Segment with param names erased — what makes two patterns ambiguous."""
        if self.kind is SegmentKind.LITERAL:
            return self.value
        if self.kind is SegmentKind.PARAM:
            return "[]"
        return "[...]"

    def __str__(self) -> str:
        if self.kind is SegmentKind.LITERAL:
            return self.value
        if self.kind is SegmentKind.PARAM:
            return f"[{self.value}]"
        return f"[...{self.value}]"


@dataclass(frozen=True, slots=True)
class RouteEntry:
    """A route discovered from one file.

    ``artifact_ref`` is the build entry name (the source path relative to
    the project root) for views, and the source path for API routes.
    """

    pattern: tuple[PathSegment, ...]
    kind: RouteKind
    artifact_ref: str
    param_names: frozenset[str]

    @property
    def path(self) -> str:
        """Display form of the pattern, e.g. ``/users/[id]``."""
        return "/" + "/".join(str(seg) for seg in self.pattern)

    @property
    def shape(self) -> str:
        return "/" + "/".join(seg.shape for seg in self.pattern)

    @property
    def specificity(self) -> tuple[int, ...]:
        """Sort key: literal < param < catch-all at each position."""
        order = {SegmentKind.LITERAL: 0, SegmentKind.PARAM: 1, SegmentKind.CATCH_ALL: 2}
        return tuple(order[seg.kind] for seg in self.pattern)


@dataclass(frozen=True, slots=True)
class RouteMatch:
    """Result of a successful resolution: the entry plus bound params."""

    entry: RouteEntry
    params: dict[str, str]
