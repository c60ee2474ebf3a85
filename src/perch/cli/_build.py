"""``perch build`` — compile every entry and write the manifest.

Artifacts land in the output directory under content-addressed names;
``manifest.json`` beside them is what ``perch start`` serves from.
"""

import argparse

from perch.cli._common import build_or_exit, configure_logging, load_or_exit, route_table_or_exit


def run_build(args: argparse.Namespace) -> None:
    config = load_or_exit(args.root, out_dir=args.output)
    configure_logging(config)
    table = route_table_or_exit(config)
    graph = build_or_exit(config, table)
    path = graph.write_manifest()
    print(f"Built {len(graph.manifest)} entries -> {path}")
