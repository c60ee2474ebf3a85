"""Build manifest — the published snapshot of current artifacts.

A ``Manifest`` is immutable. The build graph replaces its reference with a
new snapshot after each successful build cycle, so readers always observe
either the old or the new manifest in full, never a mix.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from perch.errors import ConfigurationError

MANIFEST_FILENAME = "manifest.json"


@dataclass(frozen=True, slots=True)
class ManifestEntry:
    """Where one entry's current artifact lives.

    Attributes:
        artifact_path: Path relative to the output directory (POSIX form).
        hash: Hash over the entry's whole dependency closure.
        size_bytes: Size of the entry's own artifact.
        source_path: Source file relative to the project root.
    """

    artifact_path: str
    hash: str
    size_bytes: int
    source_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_path": self.artifact_path,
            "hash": self.hash,
            "size_bytes": self.size_bytes,
            "source_path": self.source_path,
        }


@dataclass(frozen=True, slots=True)
class Manifest:
    """Immutable mapping of entry name -> ``ManifestEntry``.

    Usage::

        entry = manifest.get("view/page.html")
        updated = manifest.with_entries({"view/page.html": new_entry})
    """

    entries: Mapping[str, ManifestEntry] = field(default_factory=lambda: MappingProxyType({}))
    version: int = 0

    def get(self, name: str) -> ManifestEntry | None:
        return self.entries.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.entries

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def with_entries(self, updates: Mapping[str, ManifestEntry]) -> Manifest:
        """Return a new snapshot with *updates* applied and the version bumped."""
        merged = {**self.entries, **updates}
        return Manifest(entries=MappingProxyType(merged), version=self.version + 1)

    def find_artifact(self, artifact_path: str) -> ManifestEntry | None:
        """Look up the entry that owns *artifact_path*, if any."""
        for entry in self.entries.values():
            if entry.artifact_path == artifact_path:
                return entry
        return None

    # -- Persistence --

    def to_json(self) -> str:
        payload = {
            "version": self.version,
            "entries": {name: entry.to_dict() for name, entry in sorted(self.entries.items())},
        }
        return json.dumps(payload, indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> Manifest:
        payload = json.loads(text)
        entries = {
            name: ManifestEntry(
                artifact_path=data["artifact_path"],
                hash=data["hash"],
                size_bytes=int(data["size_bytes"]),
                source_path=data.get("source_path", ""),
            )
            for name, data in payload.get("entries", {}).items()
        }
        return cls(entries=MappingProxyType(entries), version=int(payload.get("version", 0)))

    def dump(self, path: str | Path) -> None:
        """Write the manifest atomically (temp file + rename)."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".manifest-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self.to_json())
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    @classmethod
    def load(cls, path: str | Path) -> Manifest:
        return cls.from_json(Path(path).read_text(encoding="utf-8"))


def load_build_manifest(out_dir: str | Path) -> Manifest:
    """Load the manifest ``perch build`` wrote into *out_dir*.

    Raises:
        ConfigurationError: the manifest is missing or unreadable.
    """
    path = Path(out_dir) / MANIFEST_FILENAME
    try:
        return Manifest.load(path)
    except FileNotFoundError as exc:
        msg = f"{path} not found; run `perch build` first"
        raise ConfigurationError(msg) from exc
    except (ValueError, KeyError, TypeError) as exc:
        msg = f"{path} is not a valid build manifest: {exc}"
        raise ConfigurationError(msg) from exc
