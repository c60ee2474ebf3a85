"""RenderBridge — turns a matched view route into HTML plus initial state.

The renderer itself is pluggable (``Renderer`` protocol). The bridge owns
everything around it: building the request context, enforcing the render
timeout, serializing state, and converting any failure into a structured
``RenderError``.
"""

from __future__ import annotations

import json
import logging
import traceback
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import anyio

from perch._internal.invoke import invoke
from perch.build.manifest import ManifestEntry
from perch.config import PerchConfig
from perch.errors import RenderError, RenderTimeout
from perch.routing.route import RouteMatch

logger = logging.getLogger("perch.render")


@dataclass(frozen=True, slots=True)
class RenderContext:
    """What a renderer gets to see of the request."""

    path: str
    params: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "params": dict(self.params),
            "query": dict(self.query),
            "headers": dict(self.headers),
        }


@dataclass(frozen=True, slots=True)
class RenderOutput:
    """What a renderer returns: markup and the state to hydrate with."""

    html: str
    state: Any = None


@dataclass(frozen=True, slots=True)
class RenderResult:
    html: str
    serialized_state: str


class Renderer(Protocol):
    """Protocol for renderers. Sync implementations run in a worker thread."""

    def render(
        self, artifact_path: Path, context: RenderContext
    ) -> RenderOutput | Awaitable[RenderOutput]: ...


class RenderBridge:
    """Invoke the renderer for one matched route.

    Usage::

        bridge = RenderBridge(config, KidaRenderer(config))
        result = await bridge.render(match, manifest_entry, context)
    """

    __slots__ = ("_out", "_renderer", "_timeout")

    def __init__(
        self,
        config: PerchConfig,
        renderer: Renderer,
        *,
        timeout: float | None = None,
    ) -> None:
        self._renderer = renderer
        self._out = config.out_path
        self._timeout = timeout if timeout is not None else config.render_timeout

    async def render(
        self,
        match: RouteMatch,
        entry: ManifestEntry,
        context: RenderContext,
    ) -> RenderResult:
        """Render *match* using its current artifact.

        Raises:
            RenderTimeout: the renderer exceeded the render timeout.
            RenderError: the renderer raised, or its state was not serializable.
        """
        route = match.entry.path
        artifact = self._out / entry.artifact_path
        source = entry.source_path or match.entry.artifact_ref
        try:
            with anyio.fail_after(self._timeout):
                output = await invoke(self._renderer.render, artifact, context)
        except TimeoutError:
            raise RenderTimeout(route, self._timeout, file=source) from None
        except RenderError:
            raise
        except Exception as exc:
            raise _render_error(route, source, exc) from exc

        if not isinstance(output, RenderOutput):
            msg = f"renderer returned {type(output).__name__}, expected RenderOutput"
            raise RenderError(route, msg, file=source)

        try:
            state = json.dumps(output.state, default=str)
        except (TypeError, ValueError) as exc:
            msg = f"initial state is not serializable: {exc}"
            raise RenderError(route, msg, file=source) from exc
        return RenderResult(html=output.html, serialized_state=state)


def build_context(
    path: str,
    params: Mapping[str, str],
    query: Mapping[str, str],
    headers: Mapping[str, str],
    allowed_headers: tuple[str, ...],
) -> RenderContext:
    """Assemble a ``RenderContext`` keeping only the allowed headers."""
    allowed = {name.lower() for name in allowed_headers}
    subset = {name.lower(): value for name, value in headers.items() if name.lower() in allowed}
    return RenderContext(path=path, params=dict(params), query=dict(query), headers=subset)


def _render_error(route: str, source: str, exc: Exception) -> RenderError:
    """Structured error with the best file/line we can find."""
    file = getattr(exc, "filename", None) or getattr(exc, "template_name", None) or source
    line = getattr(exc, "lineno", None)
    if line is None:
        frames = traceback.extract_tb(exc.__traceback__)
        if frames:
            last = frames[-1]
            file, line = last.filename, last.lineno
    message = getattr(exc, "message", None) or f"{type(exc).__name__}: {exc}"
    return RenderError(
        route,
        str(message),
        file=str(file),
        line=line if isinstance(line, int) else None,
        traceback="".join(traceback.format_exception(exc)),
    )
