"""Change-sets: debounced, classified filesystem changes."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from perch.config import PerchConfig
from perch.routing.discovery import is_route_file
from perch.routing.route import RouteKind


class ChangeKind(StrEnum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class AssetClass(StrEnum):
    """What a change means for the running server."""

    VIEW_ASSET = "view_asset"
    API_ASSET = "api_asset"
    CONFIG = "config"
    ROUTE_STRUCTURAL = "route_structural"


@dataclass(frozen=True, slots=True)
class FileChange:
    """One path's net change inside a debounce window.

    ``subtree`` records which route directory the path lives in, so a
    structural change under ``api/`` still restarts the backend.
    """

    path: Path
    kind: ChangeKind
    asset_class: AssetClass
    subtree: RouteKind | None = None


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """All changes from one debounce window, at most one per path."""

    changes: tuple[FileChange, ...]

    def __iter__(self) -> Iterator[FileChange]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    def __bool__(self) -> bool:
        return bool(self.changes)

    @property
    def paths(self) -> list[Path]:
        return [change.path for change in self.changes]

    @property
    def structural(self) -> bool:
        """Whether route files were added or removed."""
        return any(c.asset_class is AssetClass.ROUTE_STRUCTURAL for c in self.changes)

    @property
    def config_changed(self) -> bool:
        return any(c.asset_class is AssetClass.CONFIG for c in self.changes)

    @property
    def view_paths(self) -> list[Path]:
        """Paths that can affect client build entries."""
        return [
            c.path
            for c in self.changes
            if c.asset_class is AssetClass.VIEW_ASSET
            or (c.asset_class is AssetClass.ROUTE_STRUCTURAL and c.subtree is RouteKind.VIEW)
        ]

    @property
    def api_paths(self) -> list[Path]:
        """Paths that require the API backend to restart."""
        return [c.path for c in self.changes if c.subtree is RouteKind.API]


def classify(path: Path, kind: ChangeKind, config: PerchConfig) -> FileChange:
    """Classify one changed path against the project layout."""
    resolved = Path(path).resolve()
    if resolved == config.config_path:
        return FileChange(resolved, kind, AssetClass.CONFIG)

    for subtree, base in ((RouteKind.API, config.api_path), (RouteKind.VIEW, config.view_path)):
        if not resolved.is_relative_to(base):
            continue
        if kind is not ChangeKind.MODIFIED and is_route_file(resolved, subtree):
            return FileChange(resolved, kind, AssetClass.ROUTE_STRUCTURAL, subtree)
        asset = AssetClass.API_ASSET if subtree is RouteKind.API else AssetClass.VIEW_ASSET
        return FileChange(resolved, kind, asset, subtree)

    # Shared sources outside both route trees (client entries, styles).
    return FileChange(resolved, kind, AssetClass.VIEW_ASSET)


def requires_full_reload(path: str | Path, config: PerchConfig) -> bool:
    """Whether a change to *path* needs a full page reload instead of a patch.

    Layout-like files (``reload_stems``) and configuration affect every page
    around them, so browsers reload rather than patching.
    """
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = config.root_path / candidate
    if candidate.resolve() == config.config_path:
        return True
    return candidate.stem in config.reload_stems
