"""Shared startup checks for the CLI commands.

Each helper prints a diagnostic to stderr and raises ``SystemExit(1)``
when its check fails, so commands read as a straight sequence of steps.
"""

import asyncio
import logging
import socket
import sys
from typing import Any, NoReturn

from perch.build.compiler import AssetCompiler
from perch.build.graph import BuildGraph
from perch.config import PerchConfig, load_config
from perch.errors import ConfigurationError, RouteConflict
from perch.routing.table import RouteTable, build_route_table, project_entries
from perch.server.terminal_errors import format_build_error, format_route_conflict


def fail(message: str) -> NoReturn:
    print(f"Error: {message}", file=sys.stderr)
    raise SystemExit(1)


def load_or_exit(root: str, **overrides: Any) -> PerchConfig:
    try:
        return load_config(root, **overrides)
    except ConfigurationError as exc:
        fail(str(exc))


def configure_logging(config: PerchConfig) -> None:
    """Console logging for commands that do not run under pounce."""
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def route_table_or_exit(config: PerchConfig) -> RouteTable:
    try:
        return build_route_table(config)
    except RouteConflict as exc:
        print(format_route_conflict(exc), file=sys.stderr)
        raise SystemExit(1) from exc
    except ConfigurationError as exc:
        fail(str(exc))


def check_port(host: str, port: int) -> None:
    """Exit if *host*:*port* cannot be bound."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as exc:
            fail(f"cannot listen on {host}:{port} ({exc.strerror or exc}); is the port in use?")


def build_or_exit(config: PerchConfig, table: RouteTable) -> BuildGraph:
    """Build every entry once; print each failure and exit if any."""
    graph = BuildGraph(config, AssetCompiler(), entries=project_entries(table, config))
    errors = asyncio.run(graph.build_all())
    if errors:
        for error in errors:
            print(format_build_error(error), file=sys.stderr)
        fail(f"{len(errors)} of {len(graph.entries)} entries failed to build")
    return graph
