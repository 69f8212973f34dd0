"""
Result channel bus.

Background units post immutable result values; the update loop drains them
without blocking once per tick. The set of result variants is closed so the
loop has a single dispatch point.
"""

from __future__ import annotations

import queue
from dataclasses import dataclass

from ..service.types import Message, Task


@dataclass(frozen=True)
class TasksLoaded:
    key: str
    tasks: tuple[Task, ...]


@dataclass(frozen=True)
class TaskCreated:
    key: str
    task: Task
    first_message: str


@dataclass(frozen=True)
class MessageSent:
    key: str
    task_id: str


@dataclass(frozen=True)
class TranscriptLoaded:
    key: str
    task_id: str
    messages: tuple[Message, ...]
    status: str | None


@dataclass(frozen=True)
class TaskPolled:
    key: str
    task_id: str
    messages: tuple[Message, ...]
    status: str | None


@dataclass(frozen=True)
class TaskPollFailed:
    key: str
    task_id: str
    error: str


@dataclass(frozen=True)
class ServiceFailed:
    """A non-poll service call (list/create/send/load) failed."""

    key: str
    operation: str
    error: str
    task_id: str | None = None


@dataclass(frozen=True)
class ProcessOutput:
    key: str
    run_id: str
    line: str
    follow: bool = True


@dataclass(frozen=True)
class ProcessExited:
    key: str
    run_id: str
    exit_code: int


@dataclass(frozen=True)
class ProcessFailed:
    key: str
    run_id: str
    error: str


@dataclass(frozen=True)
class ProcessCancelled:
    key: str
    run_id: str


@dataclass(frozen=True)
class OperationFailed:
    """Fallback for a background unit that raised without a specific mapping."""

    key: str
    error: str


Result = (
    TasksLoaded
    | TaskCreated
    | MessageSent
    | TranscriptLoaded
    | TaskPolled
    | TaskPollFailed
    | ServiceFailed
    | ProcessOutput
    | ProcessExited
    | ProcessFailed
    | ProcessCancelled
    | OperationFailed
)


class ResultBus:
    """Unbounded multi-producer, single-consumer queue of results."""

    def __init__(self) -> None:
        self._queue: queue.Queue[Result] = queue.Queue()

    def post(self, result: Result) -> None:
        self._queue.put(result)

    def drain(self) -> list[Result]:
        """
        Return the results queued at the time of the call, never waiting.

        Results posted while draining stay queued for the next call, so a
        steadily streaming producer cannot hold one tick here.
        """
        drained: list[Result] = []
        for _ in range(self._queue.qsize()):
            try:
                drained.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return drained

    def __len__(self) -> int:
        return self._queue.qsize()
