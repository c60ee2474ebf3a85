"""Self-contained error overlay pages.

Renders build and render diagnostics without depending on kida or any
project template. Uses plain f-strings so that a broken template or a
failed build cannot prevent error reporting.

Development pages show:
- error kind, file and line (editor-clickable via ``PERCH_EDITOR``)
- source context around the failing line
- the traceback for render errors
- request method, path and path params

Production pages are generic: status code and reason only.
"""

import html
import linecache
import os
from collections.abc import Mapping
from http import HTTPStatus
from pathlib import Path

from perch.errors import BuildError, RenderError, RenderTimeout

_EDITOR_PRESETS: dict[str, str] = {
    "vscode": "vscode://file/__FILE__:__LINE__",
    "cursor": "cursor://file/__FILE__:__LINE__",
    "sublime": "subl://open?url=file://__FILE__&line=__LINE__",
    "idea": "idea://open?file=__FILE__&line=__LINE__",
    "pycharm": "pycharm://open?file=__FILE__&line=__LINE__",
}


def _editor_url(filepath: str, lineno: int) -> str | None:
    """Build a clickable editor URL from the ``PERCH_EDITOR`` env var."""
    pattern = os.environ.get("PERCH_EDITOR", "")
    if not pattern:
        return None
    pattern = _EDITOR_PRESETS.get(pattern.lower(), pattern)
    return pattern.replace("__FILE__", filepath).replace("__LINE__", str(lineno))


_CSS = """\
* { margin: 0; padding: 0; box-sizing: border-box; }
body {
    font-family: ui-monospace, 'Cascadia Code', 'Source Code Pro', Menlo, Consolas, monospace;
    background: #1a1b26; color: #a9b1d6; line-height: 1.6; padding: 2rem; font-size: 14px;
}
.error-page { max-width: 960px; margin: 0 auto; }
h1 { color: #f7768e; font-size: 1.4rem; margin-bottom: 0.5rem; }
h2 { color: #7aa2f7; font-size: 1.1rem; margin: 1.5rem 0 0.5rem; border-bottom: 1px solid #2f3549; }
.message { color: #e0af68; font-size: 1rem; margin-bottom: 1rem; white-space: pre-wrap; word-break: break-word; }
.location a { color: #7dcfff; text-decoration: none; }
.source { border: 1px solid #2f3549; border-radius: 6px; overflow-x: auto; }
.source-line { display: flex; padding: 0 0.8rem; font-size: 0.82rem; }
.source-line .lineno { color: #565f89; min-width: 3.5rem; text-align: right; padding-right: 1rem; }
.source-line .code { white-space: pre; }
.source-line.error-line { background: rgba(247, 118, 142, 0.15); }
.source-line.error-line .lineno { color: #f7768e; }
pre.traceback { background: #24283b; padding: 0.8rem; border-radius: 6px; overflow-x: auto; font-size: 0.8rem; }
.request-line { display: flex; gap: 0.5rem; font-size: 0.85rem; }
.request-line .label { color: #7aa2f7; min-width: 140px; }
"""


def _esc(text: object) -> str:
    return html.escape(str(text), quote=True)


def _source_context(file: str, line: int, root: Path | None, radius: int = 4) -> list[tuple[int, str]]:
    path = Path(file)
    if not path.is_absolute() and root is not None:
        path = root / path
    lines: list[tuple[int, str]] = []
    for number in range(max(1, line - radius), line + radius + 1):
        text = linecache.getline(str(path), number)
        if text:
            lines.append((number, text.rstrip("\n")))
    return lines


def _render_source(lines: list[tuple[int, str]], error_line: int) -> str:
    rows = "".join(
        f'<div class="source-line{" error-line" if number == error_line else ""}">'
        f'<span class="lineno">{number}</span><span class="code">{_esc(code)}</span></div>'
        for number, code in lines
    )
    return f'<div class="source">{rows}</div>'


def _render_location(file: str | None, line: int | None, root: Path | None) -> str:
    if not file:
        return ""
    label = f"{file}:{line}" if line else file
    location = _esc(label)
    if line:
        absolute = str(root / file) if root is not None and not Path(file).is_absolute() else file
        link = _editor_url(absolute, line)
        if link:
            location = f'<a href="{_esc(link)}">{location}</a>'
    return f'<div class="location">{location}</div>'


def render_overlay(
    error: BuildError | RenderError,
    *,
    method: str = "GET",
    path: str = "/",
    params: Mapping[str, str] | None = None,
    root: Path | None = None,
) -> str:
    """Render a full-page development overlay for a build or render failure."""
    if isinstance(error, BuildError):
        title, file, line, tb = "Build Error", error.file, error.line, error.traceback
    elif isinstance(error, RenderTimeout):
        title, file, line, tb = "Render Timeout", error.file, error.line, None
    else:
        title, file, line, tb = "Render Error", error.file, error.line, error.traceback

    sections = [f"<h1>{_esc(title)}</h1>", f'<div class="message">{_esc(error.message)}</div>']
    sections.append(_render_location(file, line, root))
    if file and line:
        context = _source_context(file, line, root)
        if context:
            sections.append(_render_source(context, line))
    if tb:
        sections.append("<h2>Traceback</h2>")
        sections.append(f'<pre class="traceback">{_esc(tb)}</pre>')

    sections.append("<h2>Request</h2>")
    sections.append(
        f'<div class="request-line"><span class="label">Request</span>'
        f"<span>{_esc(method)} {_esc(path)}</span></div>"
    )
    if params:
        shown = ", ".join(f"{k}={v!r}" for k, v in params.items())
        sections.append(
            f'<div class="request-line"><span class="label">Path Params</span>'
            f"<span>{_esc(shown)}</span></div>"
        )

    body = "\n".join(sections)
    return (
        "<!DOCTYPE html>"
        '<html lang="en"><head><meta charset="utf-8">'
        f"<title>{_esc(title)}: {_esc(error.message[:80])}</title>"
        f"<style>{_CSS}</style>"
        f'</head><body><div class="error-page" data-perch="overlay">{body}</div></body></html>'
    )


def render_error_page(status: int) -> str:
    """Generic page for production: no diagnostics leave the server."""
    try:
        reason = HTTPStatus(status).phrase
    except ValueError:
        reason = "Error"
    return (
        "<!DOCTYPE html>"
        f'<html lang="en"><head><meta charset="utf-8"><title>{status} {_esc(reason)}</title>'
        f"<style>{_CSS}</style></head>"
        f'<body><div class="error-page"><h1>{status}</h1>'
        f'<div class="message">{_esc(reason)}</div></div></body></html>'
    )
