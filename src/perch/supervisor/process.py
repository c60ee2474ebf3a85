"""Supervised process record and the subprocess launcher."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

logger = logging.getLogger("perch.api")

# Process groups are POSIX only; elsewhere only the direct child is signalled.
_GROUPS = hasattr(os, "killpg")


class ProcessState(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    DRAINING = "draining"
    RESTARTING = "restarting"
    CRASHED = "crashed"


@dataclass(slots=True)
class SupervisedProcess:
    """Bookkeeping for the API backend. Owned by ``ApiSupervisor``."""

    command: tuple[str, ...]
    pid: int | None = None
    state: ProcessState = ProcessState.STOPPED
    started_at: float | None = None
    in_flight: int = 0
    restart_count: int = 0
    failures: int = 0
    exit_code: int | None = None


class ProcessHandle(Protocol):
    """The subset of ``asyncio.subprocess.Process`` the supervisor uses."""

    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class Launcher(Protocol):
    async def launch(
        self, command: Sequence[str], *, env: Mapping[str, str] | None = None
    ) -> ProcessHandle: ...


class SubprocessLauncher:
    """Start the backend with ``asyncio.create_subprocess_exec``.

    The backend leads a new session, so wrapper commands such as
    ``npm run`` and the servers they spawn share one process group that
    is signalled as a whole. stdout and stderr are merged and
    forwarded line by line to the ``perch.api`` logger.
    """

    __slots__ = ("_cwd", "_readers")

    def __init__(self, cwd: str | os.PathLike[str] | None = None) -> None:
        self._cwd = cwd
        self._readers: set[asyncio.Task[None]] = set()

    async def launch(
        self, command: Sequence[str], *, env: Mapping[str, str] | None = None
    ) -> ProcessHandle:
        if not command:
            raise ValueError("empty backend command")
        merged_env = {**os.environ, **(env or {})}
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=self._cwd,
            env=merged_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=_GROUPS,
        )
        if process.stdout is not None:
            task = asyncio.create_task(_forward_output(process.stdout, process.pid))
            self._readers.add(task)
            task.add_done_callback(self._readers.discard)
        return GroupProcess(process) if _GROUPS else process


async def _forward_output(stream: asyncio.StreamReader, pid: int) -> None:
    while True:
        line = await stream.readline()
        if not line:
            return
        logger.info("[%d] %s", pid, line.decode("utf-8", "replace").rstrip())


class GroupProcess:
    """A backend process that leads its own process group.

    ``terminate()`` and ``kill()`` signal the whole group, so children a
    wrapper command started go down with it instead of holding the port.
    """

    __slots__ = ("_process",)

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def wait(self) -> int:
        return await self._process.wait()

    def terminate(self) -> None:
        os.killpg(self._process.pid, signal.SIGTERM)

    def kill(self) -> None:
        os.killpg(self._process.pid, signal.SIGKILL)
