"""``perch dev`` and ``perch start`` — run the server.

Both commands check the port, the configuration, and the route table
before handing control to pounce, so the common failures exit 1 with a
readable message instead of a failed lifespan.
"""

import argparse

from perch.build.manifest import load_build_manifest
from perch.cli._common import (
    build_or_exit,
    check_port,
    configure_logging,
    fail,
    load_or_exit,
    route_table_or_exit,
)
from perch.errors import ConfigurationError


def run_dev(args: argparse.Namespace) -> None:
    """Start the development server.

    The initial build runs here first: a broken project exits 1 before
    the port is ever bound.
    """
    config = load_or_exit(args.root, port=args.port, host=args.host, debug=True)
    configure_logging(config)
    check_port(config.host, config.port)
    table = route_table_or_exit(config)
    build_or_exit(config, table)

    from perch.server.app import DevServer
    from perch.server.runner import run_dev_server

    run_dev_server(DevServer(config, mode="dev"), config)


def run_start(args: argparse.Namespace) -> None:
    """Serve the manifest written by ``perch build`` with multiple workers."""
    config = load_or_exit(
        args.root,
        port=args.port,
        host=args.host,
        workers=args.workers,
        debug=False,
    )
    configure_logging(config)
    check_port(config.host, config.port)
    route_table_or_exit(config)
    try:
        load_build_manifest(config.out_path)
    except ConfigurationError as exc:
        fail(str(exc))

    from perch.server.app import DevServer
    from perch.server.runner import run_production_server

    run_production_server(DevServer(config, mode="production"), config)
