"""
Application state and user input events.

``AppState`` is owned by the update loop; nothing else writes to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from ..commands.types import CommandExecution
from ..service.types import Message, Task

THINKING_MESSAGE = "Neo is thinking..."

# Ticks a transient status message stays visible (3s at 100ms).
STATUS_TTL_TICKS = 30


class AutoScroll:
    """
    Whether new output should move the viewport to the bottom.

    Only the update loop calls ``set``; background units receive ``reader()``.
    """

    def __init__(self, enabled: bool = True):
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set(self, enabled: bool) -> None:
        self._enabled = enabled

    def reader(self) -> Callable[[], bool]:
        return lambda: self._enabled


@dataclass
class AppState:
    organization: str | None = None
    tasks: list[Task] = field(default_factory=list)
    current_task_id: str | None = None
    is_loading: bool = False
    spinner_message: str | None = None
    status_message: str | None = None
    status_ttl: int = 0
    notice: str | None = None
    error: str | None = None
    # Lines scrolled up from the bottom of the active view.
    scroll_offset: int = 0
    should_quit: bool = False

    @property
    def current_task(self) -> Task | None:
        if self.current_task_id is None:
            return None
        return self.find_task(self.current_task_id)

    @property
    def transcript(self) -> list[Message]:
        task = self.current_task
        return task.messages if task else []

    def find_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def upsert_task(self, task: Task) -> Task:
        """Replace a known task's metadata (keeping its messages) or prepend it."""
        for index, existing in enumerate(self.tasks):
            if existing.id == task.id:
                if not task.messages:
                    task.messages = existing.messages
                self.tasks[index] = task
                return task
        self.tasks.insert(0, task)
        return task

    def set_status(self, message: str, ttl: int = STATUS_TTL_TICKS) -> None:
        self.status_message = message
        self.status_ttl = ttl

    def expire_status(self) -> None:
        if self.status_ttl > 0:
            self.status_ttl -= 1
            if self.status_ttl == 0:
                self.status_message = None

    def start_thinking(self) -> None:
        self.is_loading = True
        self.spinner_message = THINKING_MESSAGE

    def stop_thinking(self) -> None:
        self.is_loading = False
        self.spinner_message = None


# User input events


@dataclass(frozen=True)
class SendMessage:
    content: str


@dataclass(frozen=True)
class SelectTask:
    task_id: str


@dataclass(frozen=True)
class NewTask:
    """Create a task whose first user message is ``content``."""

    content: str


@dataclass(frozen=True)
class CloseTaskView:
    pass


@dataclass(frozen=True)
class RefreshTasks:
    pass


@dataclass(frozen=True)
class RunCommand:
    command: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    execution: CommandExecution | None = None

    @classmethod
    def from_execution(cls, execution: CommandExecution, program: str = "pulumi") -> "RunCommand":
        return cls(
            command=program,
            args=tuple(execution.build_args()),
            cwd=execution.cwd,
            execution=execution,
        )


@dataclass(frozen=True)
class CancelCommand:
    pass


@dataclass(frozen=True)
class DismissCommandOutput:
    pass


@dataclass(frozen=True)
class ScrollUp:
    lines: int = 1


@dataclass(frozen=True)
class ScrollDown:
    lines: int = 1


@dataclass(frozen=True)
class ScrollToBottom:
    pass


@dataclass(frozen=True)
class Quit:
    pass


UserInput = (
    SendMessage
    | SelectTask
    | NewTask
    | CloseTaskView
    | RefreshTasks
    | RunCommand
    | CancelCommand
    | DismissCommandOutput
    | ScrollUp
    | ScrollDown
    | ScrollToBottom
    | Quit
)
