"""ApiSupervisor — lifecycle of the API backend process.

State machine::

    stopped -> starting -> ready -> (draining -> restarting -> starting -> ready)*
                              \\-> crashed   (after restart_threshold failures)

Guarantees:
    - While draining, new requests are rejected with 503 (``drain_policy
      = "reject"``) or held until ready (``"queue"``, bounded by
      ``queue_timeout``).
    - The process is never terminated while requests are in flight,
      unless ``drain_grace`` has elapsed.
    - Restart requests that arrive mid-restart collapse into a single
      follow-up restart.
    - Unexpected exits restart automatically until ``restart_threshold``
      consecutive failures, then the supervisor parks in ``crashed``. The
      next explicit restart (an API change) retries from scratch.

Waiting is done by polling with ``asyncio.sleep`` so request handlers on
any worker's event loop can consult the supervisor safely; the in-flight
counter is guarded by a ``threading.Lock`` for the same reason.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import AsyncIterator, Callable
from typing import Any

from perch.config import PerchConfig
from perch.errors import ProcessCrash, ServiceUnavailable
from perch.supervisor.probe import HttpProbe, Probe, TcpProbe
from perch.supervisor.process import (
    Launcher,
    ProcessHandle,
    ProcessState,
    SubprocessLauncher,
    SupervisedProcess,
)

logger = logging.getLogger("perch.api")

_POLL_INTERVAL = 0.02

# States in which a queued request may still become admissible.
_TRANSIENT = frozenset({ProcessState.STARTING, ProcessState.DRAINING, ProcessState.RESTARTING})


def default_probe(config: PerchConfig) -> Probe:
    if config.api_health_path:
        return HttpProbe(config.api_base_url + config.api_health_path)
    return TcpProbe("127.0.0.1", config.api_port)


class ApiSupervisor:
    """Owns the API backend process and decides who may talk to it.

    Usage::

        supervisor = ApiSupervisor(config)
        await supervisor.start()
        async with supervisor.track():
            ...  # forward one request
        supervisor.request_restart()  # on an api change-set
        await supervisor.stop()
    """

    def __init__(
        self,
        config: PerchConfig,
        *,
        launcher: Launcher | None = None,
        probe: Probe | None = None,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = _POLL_INTERVAL,
    ) -> None:
        self._config = config
        self._launcher = launcher or SubprocessLauncher(cwd=config.root_path)
        self._probe = probe or default_probe(config)
        self._clock = clock
        self._poll = poll_interval
        self._process = SupervisedProcess(command=config.backend_command())
        self._counter_lock = threading.Lock()
        self._handle: ProcessHandle | None = None
        self._retiring: ProcessHandle | None = None
        self._ready_since: float | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[None] | None = None
        self._restart_pending = False
        self._stopping = False

    # -- Read side --

    @property
    def enabled(self) -> bool:
        """Whether a backend command is configured at all."""
        return bool(self._process.command)

    @property
    def state(self) -> ProcessState:
        return self._process.state

    @property
    def process(self) -> SupervisedProcess:
        return self._process

    @property
    def in_flight(self) -> int:
        with self._counter_lock:
            return self._process.in_flight

    def health(self) -> dict[str, Any]:
        """Snapshot for the health endpoint."""
        proc = self._process
        return {
            "state": proc.state.value,
            "pid": proc.pid,
            "in_flight": self.in_flight,
            "restarts": proc.restart_count,
            "failures": proc.failures,
            "exit_code": proc.exit_code,
        }

    # -- Admission --

    async def admit(self) -> None:
        """Return once a request may be forwarded.

        Raises:
            ServiceUnavailable: the backend is not ready and the drain
                policy rejects (or the queue timeout expired).
        """
        if self.state is ProcessState.READY:
            return
        if self._config.drain_policy == "queue" and self.state in _TRANSIENT:
            deadline = self._clock() + self._config.queue_timeout
            while self._clock() < deadline:
                await asyncio.sleep(self._poll)
                if self.state is ProcessState.READY:
                    return
                if self.state not in _TRANSIENT:
                    break
        raise ServiceUnavailable(f"API backend is {self.state}")

    @contextlib.asynccontextmanager
    async def track(self) -> AsyncIterator[None]:
        """Admit a request and count it as in flight until it finishes."""
        await self.admit()
        with self._counter_lock:
            self._process.in_flight += 1
        try:
            yield
        finally:
            with self._counter_lock:
                self._process.in_flight -= 1

    # -- Lifecycle --

    async def start(self) -> None:
        """Launch the backend and wait for readiness.

        A backend that keeps failing leaves the supervisor ``crashed``
        rather than raising; API requests then get 503 until a change
        triggers another attempt.
        """
        if not self.enabled:
            return
        self._stopping = False
        self._process.failures = 0
        await self._recover()

    async def stop(self) -> None:
        """Drain, terminate the backend, and stop supervising."""
        self._stopping = True
        if self._restart_task is not None and not self._restart_task.done():
            self._restart_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._restart_task
        handle = self._handle
        if handle is not None and handle.returncode is None:
            if self.state is ProcessState.READY:
                await self._drain()
            await self._terminate(handle)
        if self._monitor_task is not None:
            await self._monitor_task
            self._monitor_task = None
        self._set_state(ProcessState.STOPPED)

    def request_restart(self, reason: str = "change") -> asyncio.Task[None] | None:
        """Schedule a drain-and-restart; coalesce with one already running."""
        if not self.enabled or self._stopping:
            return None
        if self._restart_task is not None and not self._restart_task.done():
            self._restart_pending = True
            return self._restart_task
        self._restart_task = asyncio.create_task(
            self._restart_cycle(reason), name="perch-api-restart"
        )
        return self._restart_task

    async def restart(self, reason: str = "change") -> None:
        task = self.request_restart(reason)
        if task is not None:
            await asyncio.shield(task)

    # -- Internals --

    def _set_state(self, state: ProcessState) -> None:
        if state is not self._process.state:
            logger.debug("API backend: %s -> %s", self._process.state, state)
        self._process.state = state
        self._ready_since = self._clock() if state is ProcessState.READY else None

    async def _restart_cycle(self, reason: str) -> None:
        while True:
            self._restart_pending = False
            if reason != "crash":
                self._process.failures = 0
            logger.info("Restarting API backend (%s)", reason)
            handle = self._handle
            if handle is not None and handle.returncode is None:
                if self.state is ProcessState.READY:
                    await self._drain()
                self._set_state(ProcessState.RESTARTING)
                await self._terminate(handle)
            else:
                self._set_state(ProcessState.RESTARTING)
            self._process.restart_count += 1
            await self._recover()
            if not self._restart_pending or self._stopping:
                return
            reason = "change"

    async def _drain(self) -> None:
        self._set_state(ProcessState.DRAINING)
        deadline = self._clock() + self._config.drain_grace
        while self.in_flight > 0:
            if self._clock() >= deadline:
                logger.warning(
                    "Drain grace period (%gs) expired with %d request(s) in flight",
                    self._config.drain_grace,
                    self.in_flight,
                )
                return
            await asyncio.sleep(self._poll)

    async def _terminate(self, handle: ProcessHandle) -> None:
        """SIGTERM, then SIGKILL after ``kill_timeout``."""
        self._retiring = handle
        if handle.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                handle.terminate()
            try:
                await asyncio.wait_for(handle.wait(), self._config.kill_timeout)
            except TimeoutError:
                logger.warning("API backend (pid %s) ignored SIGTERM; killing", handle.pid)
                with contextlib.suppress(ProcessLookupError):
                    handle.kill()
                await handle.wait()
        self._process.exit_code = handle.returncode

    async def _recover(self) -> None:
        """Launch until ready or the failure budget is spent."""
        while not self._stopping:
            try:
                await self._launch()
            except ProcessCrash as exc:
                self._process.failures += 1
                logger.error(
                    "API backend failed (%d/%d): %s",
                    self._process.failures,
                    self._config.restart_threshold,
                    exc,
                )
                if self._process.failures >= self._config.restart_threshold:
                    self._set_state(ProcessState.CRASHED)
                    logger.error("API backend crashed; waiting for a change to retry")
                    return
                self._set_state(ProcessState.RESTARTING)
                await asyncio.sleep(self._poll)
            else:
                return

    async def _launch(self) -> None:
        self._set_state(ProcessState.STARTING)
        try:
            handle = await self._launcher.launch(
                self._process.command, env={"PORT": str(self._config.api_port)}
            )
        except OSError as exc:
            raise ProcessCrash(f"cannot start backend: {exc}") from exc
        self._handle = handle
        self._process.pid = handle.pid
        self._process.started_at = time.time()
        self._process.exit_code = None
        self._monitor_task = asyncio.create_task(self._monitor(handle), name="perch-api-monitor")

        deadline = self._clock() + self._config.startup_timeout
        while True:
            if handle.returncode is not None:
                self._process.exit_code = handle.returncode
                msg = f"backend exited with code {handle.returncode} during startup"
                raise ProcessCrash(msg, handle.returncode)
            if await self._probe():
                break
            if self._clock() >= deadline:
                await self._terminate(handle)
                msg = f"backend not ready within {self._config.startup_timeout:g}s"
                raise ProcessCrash(msg, handle.returncode)
            await asyncio.sleep(self._poll)

        self._set_state(ProcessState.READY)
        logger.info("API backend ready (pid %s)", handle.pid)

    async def _monitor(self, handle: ProcessHandle) -> None:
        code = await handle.wait()
        if handle is not self._handle or handle is self._retiring or self._stopping:
            return
        if self.state is not ProcessState.READY:
            return  # startup and restart paths handle their own exits

        self._process.exit_code = code
        crash = ProcessCrash(f"backend exited unexpectedly with code {code}", code)
        logger.error("%s", crash)
        # A process that ran stably resets the consecutive-failure count.
        if (
            self._ready_since is not None
            and self._clock() - self._ready_since >= self._config.startup_timeout
        ):
            self._process.failures = 0
        self._process.failures += 1
        if self._process.failures >= self._config.restart_threshold:
            self._set_state(ProcessState.CRASHED)
            logger.error("API backend crashed; waiting for a change to retry")
            return
        self._set_state(ProcessState.RESTARTING)
        self.request_restart("crash")
