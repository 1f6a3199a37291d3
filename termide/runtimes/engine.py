from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import uuid
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

from termide.config import (
    kill_grace_s,
    node_interpreter,
    python_interpreter,
    run_timeout_s,
    shell_interpreter,
)
from termide.errors import NotFoundError, SpawnError, UnsupportedKindError
from termide.runtimes.events import (
    EventBus,
    RunFinished,
    RunOutput,
    RunSpawned,
    RunStatus,
    StreamKind,
    Subscription,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 8192
_HISTORY_LIMIT = 256

# Suffix -> argv prefix. Looked up at call time so env overrides apply.
INTERPRETERS: dict[str, Callable[[], list[str]]] = {
    ".py": lambda: [python_interpreter(), "-u"],
    ".js": lambda: [node_interpreter()],
    ".mjs": lambda: [node_interpreter()],
    ".cjs": lambda: [node_interpreter()],
    ".sh": lambda: [shell_interpreter()],
}


def interpreter_for(path: str) -> list[str]:
    """Return the argv prefix used to run ``path``, chosen by its extension."""
    suffix = os.path.splitext(path)[1].lower()
    factory = INTERPRETERS.get(suffix)
    if factory is None:
        raise UnsupportedKindError(f"no interpreter for '{suffix or path}'")
    return factory()


@dataclass(frozen=True)
class RunInfo:
    run_id: str
    argv: tuple[str, ...]
    cwd: str
    status: RunStatus
    pid: int | None
    exit_code: int | None
    reason: str | None


@dataclass
class _Run:
    run_id: str
    argv: list[str]
    cwd: str
    status: RunStatus = RunStatus.SPAWNED
    pid: int | None = None
    exit_code: int | None = None
    reason: str | None = None
    proc: asyncio.subprocess.Process | None = None
    kill_requested: bool = False
    timers: list[asyncio.TimerHandle] = field(default_factory=list)

    def info(self) -> RunInfo:
        return RunInfo(
            run_id=self.run_id,
            argv=tuple(self.argv),
            cwd=self.cwd,
            status=self.status,
            pid=self.pid,
            exit_code=self.exit_code,
            reason=self.reason,
        )


def _signal_process_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    # `start_new_session=True` makes proc.pid the process group id.
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except OSError:
        with contextlib.suppress(ProcessLookupError):
            proc.send_signal(sig)


class RunEngine:
    """Spawns interpreter processes and streams their output onto an EventBus.

    ``start*`` returns the run id as soon as the process exists; output chunks
    and exactly one RunFinished per run are published afterwards from
    background tasks.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        *,
        timeout_s: float | None = None,
        kill_grace: float | None = None,
    ) -> None:
        self._bus = bus or EventBus()
        self._timeout_s = timeout_s
        self._kill_grace = kill_grace
        self._runs: dict[str, _Run] = {}
        self._history: OrderedDict[str, RunInfo] = OrderedDict()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def bus(self) -> EventBus:
        return self._bus

    def _effective_timeout(self) -> float:
        return run_timeout_s() if self._timeout_s is None else max(0.0, self._timeout_s)

    def _effective_grace(self) -> float:
        return kill_grace_s() if self._kill_grace is None else max(0.0, self._kill_grace)

    async def start_file(self, path: str, *, cwd: str | None = None) -> str:
        if not os.path.isfile(path):
            raise NotFoundError(f"not found: {path}")
        argv = [*interpreter_for(path), path]
        return await self.start(argv, cwd=cwd or os.path.dirname(path))

    async def start_command(self, command: str, *, cwd: str) -> str:
        if not (command or "").strip():
            raise SpawnError("empty command")
        return await self.start([shell_interpreter(), "-c", command], cwd=cwd)

    async def start(self, argv: list[str], *, cwd: str) -> str:
        run = _Run(run_id=uuid.uuid4().hex, argv=list(argv), cwd=cwd)
        self._runs[run.run_id] = run
        try:
            proc = await asyncio.create_subprocess_exec(
                *run.argv,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.warning("spawn failed for %s: %s", run.argv[0], exc)
            self._finish(run, RunStatus.FAILED, reason=str(exc))
            raise SpawnError(str(exc), run_id=run.run_id) from exc

        run.proc = proc
        run.pid = proc.pid
        self._bus.publish(
            RunSpawned(run_id=run.run_id, pid=proc.pid, argv=tuple(run.argv), cwd=cwd)
        )
        # No separate "started" signal from the OS; running as soon as spawned.
        run.status = RunStatus.RUNNING
        logger.info("run %s started pid=%s argv=%s", run.run_id, proc.pid, run.argv)

        timeout = self._effective_timeout()
        if timeout > 0:
            loop = asyncio.get_running_loop()
            run.timers.append(loop.call_later(timeout, self._on_timeout, run.run_id))

        task = asyncio.create_task(self._supervise(run), name=f"run-{run.run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return run.run_id

    async def _pump(self, run: _Run, stream: asyncio.StreamReader | None, kind: StreamKind) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            self._bus.publish(RunOutput(run_id=run.run_id, stream=kind, data=chunk))

    async def _supervise(self, run: _Run) -> None:
        proc = run.proc
        assert proc is not None
        try:
            await asyncio.gather(
                self._pump(run, proc.stdout, "stdout"),
                self._pump(run, proc.stderr, "stderr"),
            )
            rc = await proc.wait()
        except asyncio.CancelledError:
            _signal_process_group(proc, signal.SIGKILL)
            self._finish(run, RunStatus.KILLED, reason="cancelled")
            raise
        except Exception as exc:
            logger.exception("run %s supervision failed", run.run_id)
            _signal_process_group(proc, signal.SIGKILL)
            self._finish(run, RunStatus.FAILED, reason=str(exc))
            return

        if run.kill_requested or rc < 0:
            self._finish(run, RunStatus.KILLED, exit_code=rc)
        else:
            self._finish(run, RunStatus.EXITED, exit_code=rc)

    def _finish(
        self,
        run: _Run,
        status: RunStatus,
        *,
        exit_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        if run.status.terminal:
            return
        run.status = status
        run.exit_code = exit_code
        run.reason = reason
        run.proc = None
        for timer in run.timers:
            timer.cancel()
        run.timers.clear()

        self._runs.pop(run.run_id, None)
        self._history[run.run_id] = run.info()
        while len(self._history) > _HISTORY_LIMIT:
            self._history.popitem(last=False)

        logger.info("run %s %s code=%s", run.run_id, status.value, exit_code)
        self._bus.publish(
            RunFinished(run_id=run.run_id, status=status, exit_code=exit_code, reason=reason)
        )

    def _on_timeout(self, run_id: str) -> None:
        logger.warning("run %s exceeded timeout; killing", run_id)
        self.kill(run_id)

    def _escalate(self, run_id: str) -> None:
        run = self._runs.get(run_id)
        if run is None or run.proc is None:
            return
        logger.info("run %s ignored SIGTERM; sending SIGKILL", run_id)
        _signal_process_group(run.proc, signal.SIGKILL)

    def kill(self, run_id: str) -> None:
        """Request termination. Unknown, finished or already-killed runs are a no-op."""
        run = self._runs.get(run_id)
        if run is None or run.proc is None or run.status.terminal or run.kill_requested:
            return
        run.kill_requested = True
        _signal_process_group(run.proc, signal.SIGTERM)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        run.timers.append(loop.call_later(self._effective_grace(), self._escalate, run_id))

    def get(self, run_id: str) -> RunInfo | None:
        run = self._runs.get(run_id)
        if run is not None:
            return run.info()
        return self._history.get(run_id)

    def active_runs(self) -> list[RunInfo]:
        return [r.info() for r in self._runs.values()]

    def subscribe(self, run_id: str) -> Subscription:
        """Subscribe to one run's events; ends after its terminal event.

        A run that already finished gets its terminal event replayed from the
        recorded snapshot.
        """
        sub = self._bus.subscribe(run_id=run_id)
        info = self.get(run_id)
        if info is not None and info.status.terminal:
            sub._offer(
                RunFinished(
                    run_id=info.run_id,
                    status=info.status,
                    exit_code=info.exit_code,
                    reason=info.reason,
                )
            )
        return sub

    async def shutdown(self) -> None:
        for run_id in list(self._runs):
            self.kill(run_id)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
