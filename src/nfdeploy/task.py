"""Build-task runner primitives.

A task reports through the sink and never raises out of `run_task`.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Protocol

from .configuration import ConfigContext
from .logsink import ErrorCounter, LogLevel, LogSink

TaskStatus = Literal["ok", "errors", "failed"]


def _iso_utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class TaskContext:
    sink: LogSink | None
    config_context: ConfigContext
    home: Path

    @classmethod
    def for_home(cls, sink: LogSink | None, home: Path | None = None) -> TaskContext:
        base = home if home is not None else Path.home()
        return cls(sink=sink, config_context=ConfigContext.for_home(base), home=base)


@dataclass(frozen=True)
class TaskResult:
    task: str
    status: TaskStatus
    started_at: str
    finished_at: str
    duration_s: float
    errors: int
    error: str | None


class Task(Protocol):
    @property
    def name(self) -> str: ...

    def execute(self, ctx: TaskContext) -> None: ...


def run_task(task: Task, ctx: TaskContext) -> TaskResult:
    counter = ErrorCounter(ctx.sink)
    task_name = getattr(task, "name", task.__class__.__name__)
    started_at = _iso_utc_now()
    t0 = time.monotonic()
    error: str | None = None

    try:
        task.execute(replace(ctx, sink=counter))
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        counter(
            LogLevel.ERROR,
            f"Task '{task_name}' encountered an unexpected error: {e}",
        )

    if error is not None:
        status: TaskStatus = "failed"
    elif counter.errors:
        status = "errors"
    else:
        status = "ok"

    return TaskResult(
        task=task_name,
        status=status,
        started_at=started_at,
        finished_at=_iso_utc_now(),
        duration_s=max(0.0, time.monotonic() - t0),
        errors=counter.errors,
        error=error,
    )
