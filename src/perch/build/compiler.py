"""Compiler capability and the reference asset compiler.

The build graph treats "compile one source file into one artifact" as a
pluggable operation. Anything with a ``compile(source_path, options)``
method (sync or async) returning a ``CompileResult`` can be used; failures
are reported by raising ``CompileError``.

``AssetCompiler`` is the reference implementation:

- templates (``.html``, ``.kida``) are syntax-checked with kida and their
  ``extends``/``include``/``import``/``from`` references become
  dependencies, resolved against the view directory;
- stylesheets contribute ``@import`` dependencies;
- scripts contribute relative ``import`` dependencies;
- everything else is copied through.

Minification is a whitespace squeeze. ``target`` and ``extra`` are passed
through untouched for compilers that understand them.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from kida import Environment, FileSystemLoader

from perch.errors import CompileError

TEMPLATE_SUFFIXES = frozenset({".html", ".htm", ".kida"})
STYLE_SUFFIXES = frozenset({".css"})
SCRIPT_SUFFIXES = frozenset({".js", ".mjs", ".ts", ".jsx", ".tsx"})

_TEMPLATE_REF_RE = re.compile(
    r"""\{%-?\s*(?:extends|include|import|from)\s+["']([^"']+)["']"""
)
_CSS_IMPORT_RE = re.compile(r"""@import\s+(?:url\()?\s*["']?([^"')\s;]+)["']?\s*\)?""")
_JS_IMPORT_RE = re.compile(
    r"""(?:^|[;\s])(?:import|export)\s+(?:[^'"]*?\s+from\s+)?["'](\.{1,2}/[^"']+)["']""",
    re.MULTILINE,
)
_SCRIPT_RESOLVE_SUFFIXES = (".js", ".mjs", ".ts", ".jsx", ".tsx", "/index.js", "/index.ts")


@dataclass(frozen=True, slots=True)
class CompileOptions:
    """Options handed to every compile call.

    Attributes:
        root: Project root.
        template_root: Directory template references resolve against.
        target: Language level for the compiler (opaque to perch).
        minify: Whether to minify output.
        extra: Further opaque options from configuration.
    """

    root: Path
    template_root: Path
    target: str = "es2020"
    minify: bool = False
    extra: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CompileResult:
    """Artifact bytes plus the sources this file depends on."""

    artifact_bytes: bytes
    depends_on: frozenset[Path] = frozenset()


class Compiler(Protocol):
    """Protocol for compilers.

    Sync implementations run in a worker thread::

        class CopyCompiler:
            def compile(self, source_path: Path, options: CompileOptions) -> CompileResult:
                return CompileResult(source_path.read_bytes())
    """

    def compile(
        self, source_path: Path, options: CompileOptions
    ) -> CompileResult | Awaitable[CompileResult]: ...


class AssetCompiler:
    """Reference compiler for templates, stylesheets, and scripts."""

    __slots__ = ("_env",)

    def __init__(self, env: Environment | None = None) -> None:
        self._env = env

    def compile(self, source_path: Path, options: CompileOptions) -> CompileResult:
        try:
            raw = source_path.read_bytes()
        except FileNotFoundError as exc:
            raise CompileError(source_path, "source file not found") from exc

        suffix = source_path.suffix.lower()
        if suffix in TEMPLATE_SUFFIXES:
            return self._compile_template(source_path, raw, options)
        if suffix in STYLE_SUFFIXES:
            text = _decode(source_path, raw)
            deps = _css_dependencies(source_path, text)
            return CompileResult(_encode(_squeeze_lines(text) if options.minify else text), deps)
        if suffix in SCRIPT_SUFFIXES:
            text = _decode(source_path, raw)
            deps = _script_dependencies(source_path, text)
            return CompileResult(_encode(_squeeze_lines(text) if options.minify else text), deps)
        return CompileResult(raw)

    def _compile_template(
        self, source_path: Path, raw: bytes, options: CompileOptions
    ) -> CompileResult:
        text = _decode(source_path, raw)
        env = self._env or Environment(
            loader=FileSystemLoader(str(options.template_root)),
            autoescape=True,
        )
        try:
            env.from_string(text)
        except Exception as exc:
            if not _is_kida_error(exc):
                raise
            line = getattr(exc, "lineno", None)
            message = getattr(exc, "message", None) or str(exc)
            raise CompileError(source_path, message, line) from exc

        deps: set[Path] = set()
        for lineno, name in _template_references(text):
            dep = (options.template_root / name).resolve()
            if not dep.is_file():
                raise CompileError(source_path, f"template not found: {name!r}", lineno)
            deps.add(dep)

        if options.minify:
            text = re.sub(r">\s+<", "><", text.strip())
        return CompileResult(_encode(text), frozenset(deps))


def _is_kida_error(exc: BaseException) -> bool:
    """Check if an exception originates from the kida template engine."""
    module = type(exc).__module__ or ""
    return "kida" in module


def _decode(source_path: Path, raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CompileError(source_path, f"not valid UTF-8: {exc.reason}") from exc


def _encode(text: str) -> bytes:
    return text.encode("utf-8")


def _template_references(text: str) -> list[tuple[int, str]]:
    refs: list[tuple[int, str]] = []
    for match in _TEMPLATE_REF_RE.finditer(text):
        lineno = text.count("\n", 0, match.start()) + 1
        refs.append((lineno, match.group(1)))
    return refs


def _css_dependencies(source_path: Path, text: str) -> frozenset[Path]:
    deps: set[Path] = set()
    for match in _CSS_IMPORT_RE.finditer(text):
        ref = match.group(1)
        if "://" in ref or ref.startswith("//"):
            continue
        dep = (source_path.parent / ref).resolve()
        if not dep.is_file():
            lineno = text.count("\n", 0, match.start()) + 1
            raise CompileError(source_path, f"stylesheet not found: {ref!r}", lineno)
        deps.add(dep)
    return frozenset(deps)


def _script_dependencies(source_path: Path, text: str) -> frozenset[Path]:
    deps: set[Path] = set()
    for match in _JS_IMPORT_RE.finditer(text):
        ref = match.group(1)
        dep = _resolve_script(source_path.parent / ref)
        if dep is None:
            lineno = text.count("\n", 0, match.start(1)) + 1
            raise CompileError(source_path, f"module not found: {ref!r}", lineno)
        deps.add(dep)
    return frozenset(deps)


def _resolve_script(candidate: Path) -> Path | None:
    if candidate.is_file():
        return candidate.resolve()
    for suffix in _SCRIPT_RESOLVE_SUFFIXES:
        path = Path(str(candidate) + suffix)
        if path.is_file():
            return path.resolve()
    return None


def _squeeze_lines(text: str) -> str:
    return "\n".join(line.strip() for line in text.splitlines() if line.strip())
