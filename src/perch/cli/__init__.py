"""Perch CLI — development server, production build, and production server.

Entry point registered as ``perch`` in ``pyproject.toml``::

    [project.scripts]
    perch = "perch.cli:main"

Every command exits 0 on success and 1 when the port is taken, the
initial build fails, routes conflict, or the configuration is invalid.
"""

import argparse
import sys


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the ``perch`` command."""
    parser = argparse.ArgumentParser(
        prog="perch",
        description="Perch — file-routed views, live updates, and a supervised API backend.",
    )
    parser.add_argument(
        "--root",
        default=".",
        help="Project root containing perch.toml, view/, and api/ (default: .)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # -- perch dev --------------------------------------------------------
    dev_parser = subparsers.add_parser("dev", help="Start the development server")
    dev_parser.add_argument("--port", type=int, default=None, help="Bind port number")
    dev_parser.add_argument("--host", default=None, help="Bind host address")

    # -- perch build ------------------------------------------------------
    build_parser = subparsers.add_parser("build", help="Build every entry and write the manifest")
    build_parser.add_argument(
        "--output",
        default=None,
        help="Output directory for artifacts and manifest.json",
    )

    # -- perch start ------------------------------------------------------
    start_parser = subparsers.add_parser("start", help="Serve a production build")
    start_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker count (0=auto-detect)",
    )
    start_parser.add_argument("--port", type=int, default=None, help="Bind port number")
    start_parser.add_argument("--host", default=None, help="Bind host address")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "dev":
        from perch.cli._serve import run_dev

        run_dev(args)
    elif args.command == "build":
        from perch.cli._build import run_build

        run_build(args)
    elif args.command == "start":
        from perch.cli._serve import run_start

        run_start(args)
