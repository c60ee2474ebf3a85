"""Reference renderer: view artifacts are kida templates.

Templates see ``params``, ``query``, ``path`` and ``headers`` as
top-level variables. The same values (minus headers) become the page's
initial state. Layouts and partials referenced with ``extends`` or
``include`` load from the view directory.
"""

from pathlib import Path
from typing import Any

from kida import Environment, FileSystemLoader

from perch.config import PerchConfig
from perch.render.bridge import RenderContext, RenderOutput


class KidaRenderer:
    """Render compiled view artifacts with a shared kida environment.

    Artifacts are content-addressed, so a parsed template is cached by its
    artifact path and never goes stale.
    """

    __slots__ = ("_cache", "_env")

    def __init__(self, config: PerchConfig, env: Environment | None = None) -> None:
        self._env = env or Environment(
            loader=FileSystemLoader(str(config.view_path)),
            autoescape=True,
            auto_reload=config.debug,
        )
        self._cache: dict[Path, Any] = {}

    def render(self, artifact_path: Path, context: RenderContext) -> RenderOutput:
        template = self._cache.get(artifact_path)
        if template is None:
            source = artifact_path.read_text(encoding="utf-8")
            template = self._env.from_string(source)
            self._cache[artifact_path] = template
        values = context.as_dict()
        html = template.render(values)
        state = {"path": context.path, "params": values["params"], "query": values["query"]}
        return RenderOutput(html=html, state=state)
