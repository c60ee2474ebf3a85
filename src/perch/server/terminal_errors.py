"""Terminal formatting for build and render failures.

Replaces raw ``logger.exception()`` with a banner that puts the useful
information first::

    -- Build Error ---------------------------------------------------
    view/page.html:3: unexpected end of template
      Entry: view/page.html
    ------------------------------------------------------------------

Render errors add the route and the traceback, whose verbosity follows the
``PERCH_TRACEBACK`` environment variable (``compact``, ``full``,
``minimal``; default ``compact``).
"""

from __future__ import annotations

import logging
import os

from perch.errors import BuildError, RenderError, RouteConflict

logger = logging.getLogger("perch.server")

# Width of the terminal error banner
_BANNER_WIDTH = 66


def _banner(title: str) -> str:
    return f"-- {title} {'-' * (_BANNER_WIDTH - len(title) - 4)}"


def _location(file: str | None, line: int | None) -> str:
    if not file:
        return "<unknown>"
    return f"{file}:{line}" if line is not None else file


def _trace(traceback: str | None) -> list[str]:
    style = os.environ.get("PERCH_TRACEBACK", "compact").lower()
    if not traceback or style == "minimal":
        return []
    lines = traceback.rstrip().splitlines()
    if style != "full":
        lines = lines[-6:]
    return ["  Trace:", *(f"    {line}" for line in lines)]


def format_build_error(error: BuildError) -> str:
    return "\n".join([
        _banner("Build Error"),
        f"{_location(error.file, error.line)}: {error.message}",
        f"  Entry: {error.entry}",
        *_trace(error.traceback),
        "-" * _BANNER_WIDTH,
    ])


def format_route_conflict(error: RouteConflict) -> str:
    parts = [_banner("Route Conflict"), f"{error.kind} pattern {error.pattern}"]
    parts.extend(f"  {file}" for file in error.files)
    parts.append("-" * _BANNER_WIDTH)
    return "\n".join(parts)


def format_render_error(error: RenderError, method: str = "GET", path: str = "/") -> str:
    parts = [
        _banner("Render Error"),
        f"{_location(error.file, error.line)}: {error.message}",
        f"  Route: {method} {path} ({error.route})",
    ]
    parts.extend(_trace(error.traceback))
    parts.append("-" * _BANNER_WIDTH)
    return "\n".join(parts)


def log_error(error: BuildError | RenderError | RouteConflict, *, method: str = "GET", path: str = "/") -> None:
    """Log a diagnostic with the banner format for its type."""
    if isinstance(error, BuildError):
        logger.error("%s", format_build_error(error))
    elif isinstance(error, RouteConflict):
        logger.error("%s", format_route_conflict(error))
    else:
        logger.error("%s", format_render_error(error, method, path))
