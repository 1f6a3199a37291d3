from termide.runtimes.engine import RunEngine, RunInfo, interpreter_for
from termide.runtimes.events import (
    EventBus,
    RunFinished,
    RunOutput,
    RunSpawned,
    RunStatus,
    Subscription,
)

__all__ = [
    "EventBus",
    "RunEngine",
    "RunFinished",
    "RunInfo",
    "RunOutput",
    "RunSpawned",
    "RunStatus",
    "Subscription",
    "interpreter_for",
]
