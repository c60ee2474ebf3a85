"""Immutable route table for both route kinds.

Built wholesale from the filesystem and swapped in as a unit; never
mutated after construction, so concurrent readers need no locking.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from perch.config import PerchConfig
from perch.routing.discovery import discover_routes
from perch.routing.route import RouteEntry, RouteKind, RouteMatch
from perch.routing.router import Router


@dataclass(frozen=True, slots=True)
class RouteTable:
    """Compiled view and API routers.

    Usage::

        table = build_route_table(config)
        match = table.resolve(RouteKind.VIEW, "/users/42")
    """

    routers: Mapping[RouteKind, Router] = field(default_factory=dict)

    def resolve(self, kind: RouteKind, request_path: str) -> RouteMatch | None:
        """Resolve a path: literal beats param beats catch-all at each segment."""
        router = self.routers.get(kind)
        if router is None:
            return None
        return router.match(request_path)

    def entries(self, kind: RouteKind) -> list[RouteEntry]:
        router = self.routers.get(kind)
        return router.entries if router is not None else []

    def build_entries(self, root: Path) -> dict[str, Path]:
        """Build entry name -> source path for every view route."""
        return {entry.artifact_ref: root / entry.artifact_ref for entry in self.entries(RouteKind.VIEW)}

    def __len__(self) -> int:
        return sum(len(router.entries) for router in self.routers.values())


def build_route_table(config: PerchConfig) -> RouteTable:
    """Discover both subtrees and compile them into a new table.

    Raises:
        RouteConflict: two files map to the same pattern for one kind.
        ConfigurationError: a file or directory name is malformed.
    """
    root = config.root_path
    discovered = {
        RouteKind.VIEW: discover_routes(config.view_path, RouteKind.VIEW, root=root),
        RouteKind.API: discover_routes(
            config.api_path, RouteKind.API, root=root, prefix=config.api_prefix
        ),
    }
    return compile_route_table(discovered)


def compile_route_table(discovered: Mapping[RouteKind, list[RouteEntry]]) -> RouteTable:
    routers: dict[RouteKind, Router] = {}
    for kind, entries in discovered.items():
        router = Router()
        for entry in entries:
            router.add(entry)
        router.compile()
        routers[kind] = router
    return RouteTable(routers=MappingProxyType(routers))


def project_entries(table: RouteTable, config: PerchConfig) -> dict[str, Path]:
    """Every build entry: one per view route, plus the configured client entries."""
    root = config.root_path
    entries = table.build_entries(root)
    for name, source in config.client_entries.items():
        entries[name] = root / source
    return entries
