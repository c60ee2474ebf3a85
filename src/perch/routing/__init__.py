"""Routing — immutable route tables discovered from the filesystem.

View routes come from ``page`` files under ``view/``; API routes from every
file under ``api/``. Tables are compiled once and replaced wholesale.
"""

from perch.routing.route import PathSegment, RouteEntry, RouteKind, RouteMatch, SegmentKind
from perch.routing.table import RouteTable, build_route_table, project_entries

__all__ = [
    "PathSegment",
    "RouteEntry",
    "RouteKind",
    "RouteMatch",
    "RouteTable",
    "SegmentKind",
    "build_route_table",
    "project_entries",
]
