"""Shared fixtures: a project on disk plus fakes for the pluggable parts."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from perch.config import PerchConfig
from perch.render.bridge import RenderContext, RenderOutput


def write(root: Path, relative: str, text: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Scenario A layout: index, about, and a param route."""
    write(tmp_path, "view/page.html", "<html><body><h1>Home</h1></body></html>")
    write(tmp_path, "view/about/page.html", "<html><body><h1>About</h1></body></html>")
    write(tmp_path, "view/users/[id]/page.html", "<html><body>User</body></html>")
    write(tmp_path, "api/users/[id].py", "# user endpoint\n")
    return tmp_path


@pytest.fixture
def config(project: Path) -> PerchConfig:
    return PerchConfig(root=project, debounce_ms=10, ack_timeout=1.0)


class EchoRenderer:
    """Wraps the artifact text and exposes the params as state."""

    def __init__(self) -> None:
        self.calls: list[tuple[Path, RenderContext]] = []

    def render(self, artifact_path: Path, context: RenderContext) -> RenderOutput:
        self.calls.append((artifact_path, context))
        return RenderOutput(html=artifact_path.read_text(encoding="utf-8"), state=dict(context.params))


class FakeHandle:
    """Stands in for ``asyncio.subprocess.Process``."""

    _next_pid = 1000

    def __init__(self, *, ignore_term: bool = False) -> None:
        FakeHandle._next_pid += 1
        self.pid = FakeHandle._next_pid
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False
        self.ignore_term = ignore_term
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_term:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeLauncher:
    """Records launches; ``fail_next`` makes launched processes exit at once."""

    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []
        self.commands: list[tuple[str, ...]] = []
        self.envs: list[Mapping[str, str]] = []
        self.fail_next = 0
        self.ignore_term = False

    async def launch(
        self, command: Sequence[str], *, env: Mapping[str, str] | None = None
    ) -> FakeHandle:
        handle = FakeHandle(ignore_term=self.ignore_term)
        self.handles.append(handle)
        self.commands.append(tuple(command))
        self.envs.append(dict(env or {}))
        if self.fail_next:
            self.fail_next -= 1
            handle.exit(1)
        return handle

    @property
    def current(self) -> FakeHandle:
        return self.handles[-1]


class ReadyProbe:
    def __init__(self) -> None:
        self.ready = True

    async def __call__(self) -> bool:
        return self.ready


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def probe() -> ReadyProbe:
    return ReadyProbe()


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until *predicate* is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.005)
