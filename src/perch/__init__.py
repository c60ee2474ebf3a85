"""Perch — a development and production layer for file-routed web projects.

Resolves URLs against ``view/`` and ``api/``, rebuilds changed sources on
demand, pushes live updates to open browsers, renders views through a
pluggable renderer, and supervises an API backend process.

Basic usage::

    from perch import DevServer, load_config

    server = DevServer(load_config("."), mode="dev")

Or from the command line::

    perch dev --port 3000
    perch build --output dist
    perch start --workers 4
"""

__version__ = "0.1.0"
__all__ = [
    "ApiSupervisor",
    "BuildError",
    "BuildGraph",
    "ConfigurationError",
    "DevServer",
    "FileWatcher",
    "LiveUpdateBroker",
    "PerchConfig",
    "PerchError",
    "RenderBridge",
    "RenderError",
    "RouteConflict",
    "RouteTable",
    "build_route_table",
    "load_config",
]


def __getattr__(name: str) -> object:
    """Lazy imports for public API.

    Keeps ``import perch`` fast while providing a clean top-level API.
    """
    if name == "DevServer":
        from perch.server.app import DevServer

        return DevServer

    if name in ("PerchConfig", "load_config"):
        from perch import config as _config

        return getattr(_config, name)

    if name in ("RouteTable", "build_route_table"):
        from perch.routing import table as _table

        return getattr(_table, name)

    if name == "BuildGraph":
        from perch.build.graph import BuildGraph

        return BuildGraph

    if name == "FileWatcher":
        from perch.watch.watcher import FileWatcher

        return FileWatcher

    if name == "LiveUpdateBroker":
        from perch.live.broker import LiveUpdateBroker

        return LiveUpdateBroker

    if name == "RenderBridge":
        from perch.render.bridge import RenderBridge

        return RenderBridge

    if name == "ApiSupervisor":
        from perch.supervisor.supervisor import ApiSupervisor

        return ApiSupervisor

    if name in ("PerchError", "ConfigurationError", "RouteConflict", "BuildError", "RenderError"):
        from perch import errors as _errors

        return getattr(_errors, name)

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
