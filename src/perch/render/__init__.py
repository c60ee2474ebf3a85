"""Render — view artifacts to HTML plus serialized initial state."""

from perch.render.bridge import (
    RenderBridge,
    RenderContext,
    Renderer,
    RenderOutput,
    RenderResult,
    build_context,
)
from perch.render.kida_renderer import KidaRenderer

__all__ = [
    "KidaRenderer",
    "RenderBridge",
    "RenderContext",
    "RenderOutput",
    "RenderResult",
    "Renderer",
    "build_context",
]
