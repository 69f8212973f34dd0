"""
Agent poll controller.

Polling cadence for the currently viewed task is a small state machine:

- IDLE: nothing pending, no polling.
- ACTIVE: a message was just sent (or the task was just created); poll fast
  until the agent has answered or a timeout fires.
- BACKGROUND: the task view is open with nothing pending; poll slowly.

All transitions go through the pure ``transition`` function so they can be
tested without a scheduler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

from ..core.config import PollingConfig
from ..service.types import BUSY_STATUSES

logger = logging.getLogger(__name__)


class PollMode(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    BACKGROUND = "background"


class ExitReason(str, Enum):
    """Why ACTIVE polling ended."""

    COMPLETED = "completed"
    TIMEOUT = "timeout"
    STABLE_TIMEOUT = "stable_timeout"
    SEND_FAILED = "send_failed"

    @property
    def is_timeout(self) -> bool:
        return self in (ExitReason.TIMEOUT, ExitReason.STABLE_TIMEOUT)


@dataclass(frozen=True)
class PollState:
    task_id: str
    mode: PollMode = PollMode.IDLE
    ticks_since_last_poll: int = 0
    stable_polls: int = 0
    poll_count: int = 0
    # poll_count when ACTIVE was last entered; poll_count itself never decreases.
    active_since_poll: int = 0
    # Number of user messages the pending response is answering.
    user_turns: int = 0
    exit_reason: ExitReason | None = None

    @property
    def active_polls(self) -> int:
        return self.poll_count - self.active_since_poll


# Events


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class PollDispatched:
    pass


@dataclass(frozen=True)
class Activated:
    """A message was sent to the task, or the task was just created."""

    user_turns: int = 1


@dataclass(frozen=True)
class PollSucceeded:
    new_messages: int
    status: str | None
    assistant_replied: bool


@dataclass(frozen=True)
class PollErrored:
    error: str = ""


@dataclass(frozen=True)
class SendFailed:
    pass


@dataclass(frozen=True)
class ViewClosed:
    pass


PollEvent = Tick | PollDispatched | Activated | PollSucceeded | PollErrored | SendFailed | ViewClosed

_DEFAULT_CONFIG = PollingConfig()


def interval_for(mode: PollMode, config: PollingConfig = _DEFAULT_CONFIG) -> int | None:
    if mode is PollMode.ACTIVE:
        return config.active_interval_ticks
    if mode is PollMode.BACKGROUND:
        return config.background_interval_ticks
    return None


def poll_due(state: PollState, config: PollingConfig = _DEFAULT_CONFIG) -> bool:
    interval = interval_for(state.mode, config)
    return interval is not None and state.ticks_since_last_poll >= interval


def _after_poll(
    state: PollState,
    new_messages: int,
    status: str | None,
    assistant_replied: bool,
    config: PollingConfig,
) -> PollState:
    stable = 0 if new_messages > 0 else state.stable_polls + 1
    state = replace(state, poll_count=state.poll_count + 1, stable_polls=stable)

    if state.mode is not PollMode.ACTIVE:
        return state

    # (a) is checked first: a finished task with an answer is a completion,
    # even when the stability fallback would also fire.
    if status is not None and status not in BUSY_STATUSES and assistant_replied:
        return replace(
            state,
            mode=PollMode.BACKGROUND,
            ticks_since_last_poll=0,
            exit_reason=ExitReason.COMPLETED,
        )
    if state.active_polls >= config.max_active_polls:
        return replace(state, mode=PollMode.IDLE, exit_reason=ExitReason.TIMEOUT)
    if state.stable_polls >= config.stable_poll_limit and status != "running":
        return replace(state, mode=PollMode.IDLE, exit_reason=ExitReason.STABLE_TIMEOUT)
    return state


def transition(
    state: PollState,
    event: PollEvent,
    config: PollingConfig = _DEFAULT_CONFIG,
) -> PollState:
    """Return the state that follows ``state`` after ``event``."""
    if isinstance(event, Tick):
        if state.mode is PollMode.IDLE:
            return state
        return replace(state, ticks_since_last_poll=state.ticks_since_last_poll + 1)

    if isinstance(event, PollDispatched):
        return replace(state, ticks_since_last_poll=0)

    if isinstance(event, Activated):
        return replace(
            state,
            mode=PollMode.ACTIVE,
            ticks_since_last_poll=0,
            stable_polls=0,
            active_since_poll=state.poll_count,
            user_turns=event.user_turns,
            exit_reason=None,
        )

    if isinstance(event, PollSucceeded):
        return _after_poll(
            state, event.new_messages, event.status, event.assistant_replied, config
        )

    if isinstance(event, PollErrored):
        # A failed poll still counts toward the timeouts.
        return _after_poll(state, 0, None, False, config)

    if isinstance(event, SendFailed):
        if state.mode is not PollMode.ACTIVE:
            return state
        return replace(state, mode=PollMode.IDLE, exit_reason=ExitReason.SEND_FAILED)

    if isinstance(event, ViewClosed):
        return replace(state, mode=PollMode.IDLE, ticks_since_last_poll=0)

    raise TypeError(f"Unknown poll event: {event!r}")


class PollController:
    """Holds the single PollState of the currently viewed task."""

    def __init__(self, config: PollingConfig | None = None):
        self.config = config or PollingConfig()
        self.state: PollState | None = None
        # Last mode recorded for tasks that are no longer viewed.
        self._last_modes: dict[str, PollMode] = {}

    @property
    def task_id(self) -> str | None:
        return self.state.task_id if self.state else None

    @property
    def mode(self) -> PollMode:
        return self.state.mode if self.state else PollMode.IDLE

    def apply(self, event: PollEvent) -> PollState | None:
        if self.state is None:
            return None
        before = self.state
        self.state = transition(before, event, self.config)
        if self.state.mode is not before.mode:
            logger.info(
                f"task {before.task_id}: {before.mode.value} -> {self.state.mode.value}"
                f" (polls={self.state.poll_count}, stable={self.state.stable_polls},"
                f" reason={self.state.exit_reason.value if self.state.exit_reason else None})"
            )
        return self.state

    def view(self, task_id: str, status: str | None) -> PollState:
        """Make ``task_id`` the viewed task with a fresh state in its natural mode."""
        if self.state is not None and self.state.task_id != task_id:
            self.close_view()

        mode = PollMode.BACKGROUND if self._resumes(task_id, status) else PollMode.IDLE
        self.state = PollState(task_id=task_id, mode=mode)
        return self.state

    def _resumes(self, task_id: str, status: str | None) -> bool:
        last_mode = self._last_modes.get(task_id, PollMode.IDLE)
        had_session = last_mode in (PollMode.ACTIVE, PollMode.BACKGROUND)
        return had_session and status not in BUSY_STATUSES

    def resolve(self, status: str | None) -> PollState | None:
        """
        Re-check the natural mode of a freshly opened view against a status
        fetched after opening it.

        Only a view still untouched since ``view`` (IDLE, no polls, no exit
        reason) is moved; an unknown status changes nothing.
        """
        state = self.state
        if (
            state is None
            or status is None
            or state.mode is not PollMode.IDLE
            or state.poll_count
            or state.exit_reason is not None
        ):
            return state
        if self._resumes(state.task_id, status):
            self.state = replace(state, mode=PollMode.BACKGROUND, ticks_since_last_poll=0)
            logger.info(f"task {state.task_id}: idle -> background (status {status})")
        return self.state

    def close_view(self) -> str | None:
        """Drop the viewed task's state, remembering its mode. Returns its id."""
        if self.state is None:
            return None
        task_id = self.state.task_id
        self._last_modes[task_id] = self.state.mode
        self.apply(ViewClosed())
        self.state = None
        return task_id

    def tick(self) -> bool:
        """Advance one tick; True when a poll should be dispatched now."""
        if self.state is None:
            return False
        self.apply(Tick())
        return poll_due(self.state, self.config)
