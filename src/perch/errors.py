"""Perch exception hierarchy.

Shared across routing, build, render, supervisor, and the server so every
module raises and catches the same types. Each failure is contained at the
component that detects it and surfaces to callers as one of these.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


class PerchError(Exception):
    """Base for all perch-specific errors."""


class ConfigurationError(PerchError):
    """Raised when project configuration or layout is invalid.

    Typically surfaced by the CLI at startup, which exits non-zero.
    """


class RouteConflict(PerchError):  # noqa: N818
    """Two route files produce the same pattern for the same route kind.

    Raised while building a route table. The table is never activated;
    a running server keeps serving its last valid table.
    """

    def __init__(self, kind: str, pattern: str, files: tuple[str, ...]) -> None:
        self.kind = kind
        self.pattern = pattern
        self.files = files
        joined = ", ".join(files)
        super().__init__(f"Conflicting {kind} routes for {pattern!r}: {joined}")

    def diagnostic(self) -> dict[str, object]:
        return {
            "kind": "route",
            "file": self.files[0] if self.files else None,
            "line": None,
            "message": str(self),
        }


class CompileError(PerchError):
    """A compiler rejected a single source file."""

    def __init__(
        self,
        path: str | Path,
        message: str,
        line: int | None = None,
        *,
        traceback: str | None = None,
    ) -> None:
        self.path = str(path)
        self.message = message
        self.line = line
        self.traceback = traceback
        location = f"{self.path}:{line}" if line is not None else self.path
        super().__init__(f"{location}: {message}")


class BuildError(PerchError):
    """An entry could not be rebuilt.

    Carries the failing file and the compiler diagnostic. The manifest
    record for the entry is left at its last good state.
    """

    def __init__(
        self,
        entry: str,
        file: str,
        message: str,
        line: int | None = None,
        *,
        traceback: str | None = None,
    ) -> None:
        self.entry = entry
        self.file = file
        self.message = message
        self.line = line
        self.traceback = traceback
        location = f"{file}:{line}" if line is not None else file
        super().__init__(f"Build of {entry!r} failed at {location}: {message}")

    @classmethod
    def from_compile_error(
        cls, entry: str, exc: CompileError, *, file: str | None = None
    ) -> BuildError:
        """Attribute *exc* to *entry*; *file* overrides the reported path."""
        return cls(entry, file or exc.path, exc.message, exc.line, traceback=exc.traceback)

    def diagnostic(self) -> dict[str, object]:
        """Structured form sent over the live-update channel."""
        return {
            "kind": "build",
            "entry": self.entry,
            "file": self.file,
            "line": self.line,
            "message": self.message,
        }


class RenderError(PerchError):
    """The renderer failed for one request.

    Never allowed to escape the request boundary: the server turns it into
    an overlay page in development and a generic error page in production.
    """

    def __init__(
        self,
        route: str,
        message: str,
        *,
        file: str | None = None,
        line: int | None = None,
        traceback: str | None = None,
    ) -> None:
        self.route = route
        self.message = message
        self.file = file
        self.line = line
        self.traceback = traceback
        super().__init__(f"Render of {route!r} failed: {message}")

    def diagnostic(self) -> dict[str, object]:
        return {
            "kind": "render",
            "route": self.route,
            "file": self.file,
            "line": self.line,
            "message": self.message,
        }


class RenderTimeout(RenderError):
    """The renderer did not finish within the configured timeout."""

    def __init__(self, route: str, timeout: float, *, file: str | None = None) -> None:
        super().__init__(route, f"Render exceeded {timeout:g}s", file=file)
        self.timeout = timeout


class ProcessCrash(PerchError):  # noqa: N818
    """The supervised backend exited unexpectedly or failed to start."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        self.exit_code = exit_code
        super().__init__(message)


class DesyncTimeout(PerchError):  # noqa: N818
    """A live-update client failed to acknowledge a patch in time."""

    def __init__(self, client_id: str, entry: str) -> None:
        self.client_id = client_id
        self.entry = entry
        super().__init__(f"Client {client_id} did not ack {entry!r}")


@dataclass(frozen=True, slots=True)
class HTTPError(PerchError):
    """An error that maps directly to an HTTP status code.

    Raised by the server pipeline and caught at the request boundary,
    which turns it into a status response.
    """

    status: int
    detail: str = ""
    headers: tuple[tuple[str, str], ...] = ()

    def __str__(self) -> str:
        if self.detail:
            return f"{self.status}: {self.detail}"
        return str(self.status)


class NotFound(HTTPError):  # noqa: N818
    """404 — no route matched the request path."""

    def __init__(self, detail: str = "Not Found") -> None:
        super().__init__(status=404, detail=detail)


class MethodNotAllowed(HTTPError):  # noqa: N818
    """405 — the path exists but not for this HTTP method."""

    def __init__(self, allowed: frozenset[str], detail: str = "") -> None:
        allow_value = ", ".join(sorted(allowed))
        default_detail = f"Method not allowed. Allowed methods: {allow_value}"
        super().__init__(
            status=405,
            detail=detail or default_detail,
            headers=(("Allow", allow_value),),
        )


class ServiceUnavailable(HTTPError):  # noqa: N818
    """503 — the backend is not accepting requests right now.

    ``retry_after`` is sent as a ``Retry-After`` header so clients treat
    the condition as transient.
    """

    def __init__(self, detail: str = "Service Unavailable", retry_after: int = 1) -> None:
        super().__init__(
            status=503,
            detail=detail,
            headers=(("Retry-After", str(retry_after)),),
        )


class BadGateway(HTTPError):  # noqa: N818
    """502 — the backend failed to produce a response."""

    def __init__(self, detail: str = "Bad Gateway") -> None:
        super().__init__(status=502, detail=detail)
