from __future__ import annotations

import asyncio
import sys

import pytest

from termide.errors import NotFoundError, SpawnError, UnsupportedKindError
from termide.runtimes import (
    RunEngine,
    RunFinished,
    RunOutput,
    RunSpawned,
    RunStatus,
    interpreter_for,
)


async def _collect(sub, run_id: str, *, timeout: float = 15.0) -> list:
    events = []
    while True:
        ev = await sub.next(timeout)
        if ev.run_id != run_id:
            continue
        events.append(ev)
        if isinstance(ev, RunFinished):
            return events


async def _wait_for_output(sub, run_id: str, needle: bytes, *, timeout: float = 15.0) -> list:
    seen = []
    buf = b""
    while needle not in buf:
        ev = await sub.next(timeout)
        if ev.run_id != run_id:
            continue
        seen.append(ev)
        if isinstance(ev, RunOutput):
            buf += ev.data
        assert not isinstance(ev, RunFinished), f"run finished before {needle!r}"
    return seen


def _script(tmp_path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text(body)
    return str(path)


def test_interpreter_for_known_suffixes(monkeypatch) -> None:
    monkeypatch.setenv("TERMIDE_PYTHON", "/opt/py")
    monkeypatch.setenv("TERMIDE_NODE", "/opt/node")
    assert interpreter_for("main.py") == ["/opt/py", "-u"]
    assert interpreter_for("app.JS") == ["/opt/node"]
    assert interpreter_for("mod.mjs") == ["/opt/node"]
    assert interpreter_for("run.sh")[0]


def test_interpreter_for_unknown_suffix() -> None:
    with pytest.raises(UnsupportedKindError):
        interpreter_for("a.bin")
    with pytest.raises(UnsupportedKindError):
        interpreter_for("Makefile")


def test_start_file_rejects_missing_and_unsupported(tmp_path) -> None:
    async def main() -> None:
        engine = RunEngine()
        with pytest.raises(NotFoundError):
            await engine.start_file(str(tmp_path / "missing.py"))
        bogus = _script(tmp_path, "data.bin", "x")
        with pytest.raises(UnsupportedKindError):
            await engine.start_file(bogus)
        assert engine.active_runs() == []

    asyncio.run(main())


def test_run_file_streams_output_then_exit(tmp_path) -> None:
    path = _script(
        tmp_path,
        "hello.py",
        "import os, sys\n"
        "print('hi from', os.path.basename(os.getcwd()))\n"
        "print('oops', file=sys.stderr)\n"
        "sys.exit(3)\n",
    )

    async def main():
        engine = RunEngine()
        with engine.bus.subscribe() as sub:
            run_id = await engine.start_file(path)
            events = await _collect(sub, run_id)
        return engine, run_id, events

    engine, run_id, events = asyncio.run(main())

    assert isinstance(events[0], RunSpawned)
    assert events[0].pid > 0
    finished = events[-1]
    assert finished.status is RunStatus.EXITED
    assert finished.exit_code == 3
    assert not finished.killed
    assert sum(isinstance(e, RunFinished) for e in events) == 1

    stdout = b"".join(e.data for e in events if isinstance(e, RunOutput) and e.stream == "stdout")
    stderr = b"".join(e.data for e in events if isinstance(e, RunOutput) and e.stream == "stderr")
    assert stdout.decode() == f"hi from {tmp_path.name}\n"
    assert stderr.decode() == "oops\n"

    info = engine.get(run_id)
    assert info is not None
    assert info.status is RunStatus.EXITED
    assert info.exit_code == 3
    assert engine.active_runs() == []


def test_start_command_runs_through_shell(tmp_path) -> None:
    async def main():
        engine = RunEngine()
        with engine.bus.subscribe() as sub:
            run_id = await engine.start_command("echo one; echo two", cwd=str(tmp_path))
            return await _collect(sub, run_id)

    events = asyncio.run(main())
    out = b"".join(e.data for e in events if isinstance(e, RunOutput))
    assert out == b"one\ntwo\n"
    assert events[-1].exit_code == 0


def test_empty_command_is_rejected(tmp_path) -> None:
    async def main() -> None:
        with pytest.raises(SpawnError):
            await RunEngine().start_command("   ", cwd=str(tmp_path))

    asyncio.run(main())


def test_kill_reports_exactly_one_killed(tmp_path) -> None:
    path = _script(
        tmp_path,
        "sleepy.py",
        "import time\nprint('ready', flush=True)\ntime.sleep(60)\n",
    )

    async def main():
        engine = RunEngine(kill_grace=5)
        with engine.bus.subscribe() as sub:
            run_id = await engine.start_file(path)
            await _wait_for_output(sub, run_id, b"ready")
            engine.kill(run_id)
            engine.kill(run_id)
            events = await _collect(sub, run_id)
            engine.kill(run_id)
            await asyncio.sleep(0.2)
            leftovers = []
            while sub.pending():
                leftovers.append(await sub.next(1))
        return events, leftovers

    events, leftovers = asyncio.run(main())

    assert events[-1].status is RunStatus.KILLED
    assert events[-1].killed
    assert not any(isinstance(e, RunFinished) for e in leftovers)


def test_kill_escalates_when_sigterm_is_ignored(tmp_path) -> None:
    path = _script(
        tmp_path,
        "stubborn.py",
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(60)\n",
    )

    async def main():
        engine = RunEngine(kill_grace=0.3)
        with engine.bus.subscribe() as sub:
            run_id = await engine.start_file(path)
            await _wait_for_output(sub, run_id, b"ready")
            engine.kill(run_id)
            return await _collect(sub, run_id)

    events = asyncio.run(main())
    assert events[-1].status is RunStatus.KILLED


def test_timeout_kills_run(tmp_path) -> None:
    path = _script(tmp_path, "forever.py", "import time\ntime.sleep(60)\n")

    async def main():
        engine = RunEngine(timeout_s=0.5, kill_grace=1)
        with engine.bus.subscribe() as sub:
            run_id = await engine.start_file(path)
            return await _collect(sub, run_id)

    events = asyncio.run(main())
    assert events[-1].status is RunStatus.KILLED


def test_kill_unknown_run_is_noop() -> None:
    RunEngine().kill("does-not-exist")


def test_concurrent_runs_are_tagged_independently(tmp_path) -> None:
    a = _script(tmp_path, "a.py", "for _ in range(200):\n    print('A' * 40)\n")
    b = _script(tmp_path, "b.py", "for _ in range(200):\n    print('B' * 40)\n")

    async def main():
        engine = RunEngine()
        with engine.bus.subscribe() as sub:
            run_a = await engine.start_file(a)
            run_b = await engine.start_file(b)
            events = []
            finished = set()
            while finished != {run_a, run_b}:
                ev = await sub.next(15)
                events.append(ev)
                if isinstance(ev, RunFinished):
                    finished.add(ev.run_id)
        return run_a, run_b, events

    run_a, run_b, events = asyncio.run(main())

    assert run_a != run_b
    out_a = b"".join(e.data for e in events if isinstance(e, RunOutput) and e.run_id == run_a)
    out_b = b"".join(e.data for e in events if isinstance(e, RunOutput) and e.run_id == run_b)
    assert set(out_a.replace(b"\n", b"")) == {ord("A")}
    assert set(out_b.replace(b"\n", b"")) == {ord("B")}
    assert len(out_a) == len(out_b) == 200 * 41
    assert sum(isinstance(e, RunFinished) for e in events) == 2


def test_spawn_failure_emits_failed_and_raises(tmp_path) -> None:
    async def main():
        engine = RunEngine()
        with engine.bus.subscribe() as sub:
            with pytest.raises(SpawnError) as ei:
                await engine.start([str(tmp_path / "no-such-binary")], cwd=str(tmp_path))
            ev = await sub.next(1)
        return engine, ei.value, ev

    engine, err, ev = asyncio.run(main())

    assert err.run_id
    assert isinstance(ev, RunFinished)
    assert ev.run_id == err.run_id
    assert ev.status is RunStatus.FAILED
    assert engine.get(err.run_id).status is RunStatus.FAILED


def test_filtered_subscription_ends_after_finish(tmp_path) -> None:
    path = _script(tmp_path, "quick.py", "import time\ntime.sleep(0.3)\nprint('done')\n")

    async def main():
        engine = RunEngine()
        run_id = await engine.start_file(path)
        sub = engine.subscribe(run_id)
        events = [ev async for ev in sub]
        return engine, events

    engine, events = asyncio.run(main())
    assert isinstance(events[-1], RunFinished)
    assert engine.bus.subscriber_count() == 0


def test_shutdown_kills_active_runs(tmp_path) -> None:
    path = _script(tmp_path, "forever.py", "import time\ntime.sleep(60)\n")

    async def main():
        engine = RunEngine(kill_grace=1)
        run_id = await engine.start_file(path)
        await engine.shutdown()
        return engine.get(run_id)

    info = asyncio.run(main())
    assert info.status is RunStatus.KILLED


def test_interpreter_uses_current_python_by_default(monkeypatch) -> None:
    monkeypatch.delenv("TERMIDE_PYTHON", raising=False)
    assert interpreter_for("x.py")[0] == sys.executable


def test_subscribe_after_exit_replays_terminal_event(tmp_path) -> None:
    path = _script(tmp_path, "forever.py", "import time\ntime.sleep(60)\n")

    async def main():
        engine = RunEngine(kill_grace=1)
        run_id = await engine.start_file(path)
        await engine.shutdown()
        sub = engine.subscribe(run_id)
        events = [ev async for ev in sub]
        return engine, run_id, events

    engine, run_id, events = asyncio.run(main())

    assert len(events) == 1
    assert isinstance(events[0], RunFinished)
    assert events[0].run_id == run_id
    assert events[0].status is RunStatus.KILLED
    assert engine.bus.subscriber_count() == 0


def test_subscribe_after_spawn_failure_ends(tmp_path) -> None:
    async def main():
        engine = RunEngine()
        with pytest.raises(SpawnError) as ei:
            await engine.start([str(tmp_path / "no-such-binary")], cwd=str(tmp_path))
        sub = engine.subscribe(ei.value.run_id)
        return await asyncio.wait_for(_drain(sub), timeout=5)

    events = asyncio.run(main())
    assert [type(e) for e in events] == [RunFinished]
    assert events[0].status is RunStatus.FAILED
    assert events[0].reason


async def _drain(sub) -> list:
    return [ev async for ev in sub]
