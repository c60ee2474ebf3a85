"""Serve a ``DevServer`` with pounce.

Pounce's ``run()`` takes an import string; perch has a live ASGI object,
so ``pounce.server.Server`` is used directly with the callable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from perch.config import PerchConfig
    from perch.server.app import DevServer


def run_dev_server(app: DevServer, config: PerchConfig) -> None:
    """Single worker, no pounce reload: perch does its own watching.

    Args:
        app: The development ``DevServer``.
        config: Supplies host, port, and log settings.
    """
    from pounce.config import ServerConfig
    from pounce.server import Server

    server_config = ServerConfig(
        host=config.host,
        port=config.port,
        workers=1,
        reload=False,
        log_level=config.log_level,
        log_format=config.log_format,
    )
    Server(server_config, app).run()


def run_production_server(app: DevServer, config: PerchConfig, workers: int | None = None) -> None:
    """Multi-worker serving from a pre-built manifest.

    Args:
        app: The production ``DevServer``.
        config: Supplies host, port, worker count, and log settings.
        workers: Overrides ``config.workers`` (0 = auto-detect from CPU count).
    """
    from pounce.config import ServerConfig
    from pounce.server import Server

    server_config = ServerConfig(
        host=config.host,
        port=config.port,
        workers=config.workers if workers is None else workers,
        lifecycle_logging=True,
        log_format=config.log_format,
        log_level=config.log_level,
    )
    Server(server_config, app).run()
