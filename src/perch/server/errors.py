"""Request-level error boundary.

Maps ``HTTPError`` and unexpected failures to responses. API paths get
JSON bodies; everything else gets an HTML page (the development overlay
for internal errors when debugging).
"""

import logging
import traceback

from perch.errors import HTTPError, RenderError
from perch.http.request import Request
from perch.http.response import Response
from perch.render.overlay import render_error_page, render_overlay

logger = logging.getLogger("perch.server")


def handle_http_error(exc: HTTPError, request: Request, *, json_body: bool) -> Response:
    """Map an HTTPError to a status response, keeping its headers."""
    logger.debug("%d %s %s: %s", exc.status, request.method, request.path, exc.detail)
    if json_body:
        response = Response.json({"error": exc.detail or str(exc.status)}, status=exc.status)
    else:
        response = Response(body=render_error_page(exc.status), status=exc.status)
    return response.with_headers(exc.headers)


def handle_internal_error(exc: Exception, request: Request, *, debug: bool) -> Response:
    """Handle unexpected exceptions as 500 errors."""
    logger.exception("500 %s %s", request.method, request.path)
    if not debug:
        return Response(body=render_error_page(500), status=500)
    error = RenderError(
        request.path,
        f"{type(exc).__name__}: {exc}",
        traceback="".join(traceback.format_exception(exc)),
    )
    return Response(body=render_overlay(error, method=request.method, path=request.path), status=500)
