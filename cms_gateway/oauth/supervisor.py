"""
Supervisor for the OAuth helper running as a child process.

Lifecycle:

    STARTING --spawned--> RUNNING --process exits--> EXITED

The child listens on a loopback address only and inherits no file
descriptors from the gateway (in particular not its listening socket).
An unexpected exit is logged and leaves the supervisor in EXITED; the
gateway keeps serving and OAuth requests fail with 502 until an operator
intervenes. Automatic restarts are off by default and, when enabled, are
capped by `max_restarts` for the lifetime of the supervisor.

Shutdown (`stop`) sends SIGTERM exactly once, waits up to
`shutdown_grace_seconds`, and only then falls back to SIGKILL.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


def describe_returncode(returncode: Optional[int]) -> str:
    """`-15` -> `signal=SIGTERM`, `3` -> `code=3`."""
    if returncode is None:
        return "code=None"
    if returncode < 0:
        try:
            return f"signal={signal.Signals(-returncode).name}"
        except ValueError:
            return f"signal={-returncode}"
    return f"code={returncode}"


class OAuthProcessSupervisor:
    def __init__(
        self,
        command: Sequence[str],
        *,
        host: str,
        port: int,
        env: Optional[Mapping[str, str]] = None,
        shutdown_grace_seconds: float = 10.0,
        max_restarts: int = 0,
        restart_delay_seconds: float = 1.0,
        spawn: Callable[..., Any] = asyncio.create_subprocess_exec,
    ) -> None:
        if not command:
            raise ValueError("OAuth command must not be empty")
        self.command = list(command)
        self.host = host
        self.port = int(port)
        self._env = dict(env) if env is not None else None
        self._grace = float(shutdown_grace_seconds)
        self._max_restarts = max(0, int(max_restarts))
        self._restart_delay = float(restart_delay_seconds)
        self._spawn_fn = spawn

        self._state = ProcessState.STARTING
        self._proc: Any = None
        self._monitor: Optional[asyncio.Task] = None
        self._started = False
        self._stopping = False
        self._stopped = False
        self._terminate_sent = False
        self.restarts = 0
        self.returncode: Optional[int] = None

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ProcessState.RUNNING

    @property
    def pid(self) -> Optional[int]:
        return getattr(self._proc, "pid", None)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "host": self.host,
            "port": self.port,
            "state": self._state.value,
            "returncode": self.returncode,
            "restarts": self.restarts,
        }

    def _child_env(self) -> Dict[str, str]:
        base = dict(os.environ) if self._env is None else dict(self._env)
        base["PORT"] = str(self.port)
        base["HOST"] = self.host
        return base

    async def start(self) -> None:
        if self._started:
            raise RuntimeError("OAuthProcessSupervisor already started")
        self._started = True
        await self._spawn()

    async def _spawn(self) -> None:
        self._state = ProcessState.STARTING
        try:
            proc = await self._spawn_fn(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                env=self._child_env(),
                close_fds=True,
            )
        except OSError as e:
            # A missing binary must not take the gateway down with it.
            self._state = ProcessState.EXITED
            logger.error("[oauth] failed to start %s: %s", self.command[0], str(e))
            return

        self._proc = proc
        self.returncode = None
        if self._stopping:
            # Shutdown began while a restart was spawning; do not leave an orphan.
            logger.info("[oauth] shutdown in progress; terminating freshly started pid=%s", proc.pid)
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            self.returncode = await proc.wait()
            self._state = ProcessState.EXITED
            return
        self._state = ProcessState.RUNNING
        logger.info("[oauth] started pid=%s on %s:%d", proc.pid, self.host, self.port)
        self._monitor = asyncio.ensure_future(self._watch(proc))

    async def _watch(self, proc: Any) -> None:
        returncode = await proc.wait()
        self.returncode = returncode
        self._state = ProcessState.EXITED
        if self._stopping:
            logger.info("[oauth] process exited (%s)", describe_returncode(returncode))
            return

        logger.error("[oauth] process exited unexpectedly (%s)", describe_returncode(returncode))
        if self.restarts >= self._max_restarts:
            return
        self.restarts += 1
        logger.warning("[oauth] restarting (%d/%d) in %.1fs", self.restarts, self._max_restarts, self._restart_delay)
        await asyncio.sleep(self._restart_delay)
        if not self._stopping:
            await self._spawn()

    async def stop(self) -> None:
        """Terminate the child (once) and wait for it. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True
        self._stopping = True

        proc = self._proc
        if proc is not None and self._state is not ProcessState.EXITED:
            self._terminate(proc)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._grace)
            except asyncio.TimeoutError:
                logger.warning("[oauth] pid=%s still alive after %.1fs; killing", proc.pid, self._grace)
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

        monitor = self._monitor
        if monitor is not None and not monitor.done():
            # Either about to observe the exit, or sleeping before a restart.
            try:
                await asyncio.wait_for(monitor, timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug("[oauth] monitor did not settle; cancelled")
        self._state = ProcessState.EXITED

    def _terminate(self, proc: Any) -> None:
        if self._terminate_sent:
            return
        self._terminate_sent = True
        logger.info("[oauth] sending SIGTERM to pid=%s", proc.pid)
        try:
            proc.terminate()
        except ProcessLookupError:
            logger.debug("[oauth] pid=%s already gone", proc.pid)
