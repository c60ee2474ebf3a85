"""Build — incremental compilation into content-addressed artifacts.

The graph rebuilds only what changed and publishes an immutable manifest
snapshot after every successful cycle.
"""

from perch.build.compiler import AssetCompiler, CompileOptions, CompileResult, Compiler
from perch.build.events import BuildEvent, BuildEventBus
from perch.build.graph import BuildGraph, BuildNode
from perch.build.manifest import Manifest, ManifestEntry, load_build_manifest

__all__ = [
    "AssetCompiler",
    "BuildEvent",
    "BuildEventBus",
    "BuildGraph",
    "BuildNode",
    "CompileOptions",
    "CompileResult",
    "Compiler",
    "Manifest",
    "ManifestEntry",
    "load_build_manifest",
]
