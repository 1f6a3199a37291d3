"""Broadcast channel for run events.

Every subscriber owns an unbounded asyncio.Queue; ``publish`` fans an event
out to all of them without awaiting. Publish and consume on the event loop
thread.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Literal, Union

StreamKind = Literal["stdout", "stderr"]


class RunStatus(str, Enum):
    SPAWNED = "spawned"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.EXITED, RunStatus.FAILED, RunStatus.KILLED)


@dataclass(frozen=True)
class RunSpawned:
    run_id: str
    pid: int
    argv: tuple[str, ...]
    cwd: str


@dataclass(frozen=True)
class RunOutput:
    run_id: str
    stream: StreamKind
    data: bytes


@dataclass(frozen=True)
class RunFinished:
    run_id: str
    status: RunStatus
    exit_code: int | None = None
    reason: str | None = None

    @property
    def killed(self) -> bool:
        return self.status is RunStatus.KILLED


RunEvent = Union[RunSpawned, RunOutput, RunFinished]


class Subscription:
    """Async iterator over bus events.

    With ``run_id`` set, only that run's events are delivered and iteration
    stops after its terminal event. Use ``RunEngine.subscribe`` for a run that
    may already have finished.
    """

    def __init__(self, bus: EventBus, *, run_id: str | None = None) -> None:
        self._bus = bus
        self._run_id = run_id
        self._queue: asyncio.Queue[RunEvent] = asyncio.Queue()
        self._done = False

    @property
    def run_id(self) -> str | None:
        return self._run_id

    def _offer(self, event: RunEvent) -> None:
        if self._done:
            return
        if self._run_id is not None and event.run_id != self._run_id:
            return
        self._queue.put_nowait(event)

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._done = True
        self._bus._unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> RunEvent:
        if self._done and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if self._run_id is not None and isinstance(event, RunFinished):
            self.close()
        return event

    async def next(self, timeout: float | None = None) -> RunEvent:
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *_exc) -> None:
        self.close()


class EventBus:
    def __init__(self) -> None:
        self._subscribers: list[Subscription] = []

    def subscribe(self, *, run_id: str | None = None) -> Subscription:
        sub = Subscription(self, run_id=run_id)
        self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: RunEvent) -> None:
        for sub in list(self._subscribers):
            sub._offer(event)
