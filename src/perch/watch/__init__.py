"""Watch — filesystem notifications as debounced, classified change-sets."""

from perch.watch.changes import AssetClass, ChangeKind, ChangeSet, FileChange, classify
from perch.watch.debounce import Debouncer
from perch.watch.watcher import FileWatcher

__all__ = [
    "AssetClass",
    "ChangeKind",
    "ChangeSet",
    "Debouncer",
    "FileChange",
    "FileWatcher",
    "classify",
]
