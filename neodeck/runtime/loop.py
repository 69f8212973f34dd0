"""
Update loop.

One tick, in order:

1. drain every result already on the bus and fold it into state
2. advance the viewed task's poll state, dispatching a poll when due
3. handle at most one user input
4. render

The loop itself never touches the network or a process; every blocking call
runs in a unit started by the spawner and comes back as a bus result.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from ..commands.types import validate_execution
from ..core.config import NeodeckConfig
from ..core.exceptions import CommandValidationError, NeodeckError
from ..service.client import TaskServiceClient
from ..service.types import (
    Message,
    assistant_replied_since,
    count_user_turns,
    merge_transcript,
    preview_name,
)
from .bus import (
    MessageSent,
    OperationFailed,
    ProcessCancelled,
    ProcessExited,
    ProcessFailed,
    ProcessOutput,
    Result,
    ResultBus,
    ServiceFailed,
    TaskCreated,
    TaskPolled,
    TaskPollFailed,
    TasksLoaded,
    TranscriptLoaded,
)
from .executor import ProcessExecutor
from .polling import (
    Activated,
    ExitReason,
    PollController,
    PollDispatched,
    PollErrored,
    PollMode,
    PollSucceeded,
    SendFailed,
)
from .spawner import BackgroundSpawner, OperationContext
from .state import (
    AppState,
    AutoScroll,
    CancelCommand,
    CloseTaskView,
    DismissCommandOutput,
    NewTask,
    Quit,
    RefreshTasks,
    RunCommand,
    ScrollDown,
    ScrollToBottom,
    ScrollUp,
    SelectTask,
    SendMessage,
    UserInput,
)

logger = logging.getLogger(__name__)

LIST_KEY = "tasks:list"
CREATE_KEY = "tasks:create"

TIMEOUT_NOTICE = "No response from Neo yet. Refresh the task to check again."


def poll_key(task_id: str) -> str:
    return f"poll:{task_id}"


def load_key(task_id: str) -> str:
    return f"load:{task_id}"


def send_key(task_id: str) -> str:
    return f"send:{task_id}"


def fetch_task_snapshot(
    client: TaskServiceClient, org: str | None, task_id: str
) -> tuple[list[Message], str | None]:
    """
    Fetch a task's events and status concurrently.

    The events are required; a failed status lookup degrades to ``None``.
    """
    with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"neodeck-{task_id}") as pool:
        events_future = pool.submit(client.list_events, org, task_id)
        status_future = pool.submit(client.get_task, org, task_id)
        messages = events_future.result()
        try:
            status = status_future.result().status
        except NeodeckError as e:
            logger.warning(f"Status lookup for task {task_id} failed: {e}")
            status = None
    return messages, status


class UpdateLoop:
    """Single-threaded driver that owns AppState."""

    def __init__(
        self,
        config: NeodeckConfig | None = None,
        client: TaskServiceClient | None = None,
        render: Callable[["UpdateLoop"], None] | None = None,
        bus: ResultBus | None = None,
    ):
        self.config = config or NeodeckConfig()
        self.client = client
        self.render = render
        self.bus = bus or ResultBus()
        self.spawner = BackgroundSpawner(self.bus)
        self.state = AppState(
            organization=client.organization if client else self.config.service.organization
        )
        self.auto_scroll = AutoScroll()
        self.polls = PollController(self.config.polling)
        self.executor = ProcessExecutor(
            self.spawner, self.config.executor, follow=self.auto_scroll.reader()
        )
        self.tick_count = 0
        self._inputs: queue.Queue[UserInput] = queue.Queue()

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def submit_input(self, event: UserInput) -> None:
        """Queue a user input; safe to call from any thread."""
        self._inputs.put(event)

    def start(self) -> None:
        if self.client is not None:
            self.refresh_tasks()

    def tick(self) -> None:
        self.tick_count += 1

        for result in self.bus.drain():
            self.apply_result(result)

        self.advance_polls()

        try:
            event = self._inputs.get_nowait()
        except queue.Empty:
            event = None
        if event is not None:
            self.handle_input(event)

        self.state.expire_status()
        if self.render is not None:
            self.render(self)

    def run(self, stop: threading.Event) -> None:
        """Tick at the configured period until ``stop`` is set or Quit is handled."""
        period = self.config.polling.tick_seconds
        logger.info(f"Update loop running every {period:.3f}s")
        while not stop.is_set() and not self.state.should_quit:
            started = time.monotonic()
            self.tick()
            stop.wait(max(0.0, period - (time.monotonic() - started)))
        self.shutdown()

    def shutdown(self) -> None:
        self.executor.dismiss()
        self.spawner.shutdown()
        logger.info("Update loop stopped")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def advance_polls(self) -> None:
        if not self.polls.tick() or self.client is None:
            return

        task_id = self.polls.task_id
        key = poll_key(task_id)
        client = self.client
        org = self.state.organization

        def operation(context: OperationContext) -> Result:
            messages, status = fetch_task_snapshot(client, org, task_id)
            return TaskPolled(key=key, task_id=task_id, messages=tuple(messages), status=status)

        def on_error(error: Exception) -> Result:
            return TaskPollFailed(key=key, task_id=task_id, error=str(error))

        # A rejected spawn leaves the tick counter alone, so the poll is retried next tick.
        if self.spawner.spawn(key, operation, on_error=on_error).accepted:
            self.polls.apply(PollDispatched())

    def _after_poll(self, before: PollMode) -> None:
        state = self.polls.state
        if state is None or before is not PollMode.ACTIVE or state.mode is PollMode.ACTIVE:
            return
        self.state.stop_thinking()
        if state.exit_reason is not None and state.exit_reason.is_timeout:
            logger.warning(
                f"Gave up waiting on task {state.task_id} after {state.active_polls} polls"
                f" ({state.exit_reason.value})"
            )
            self.state.notice = TIMEOUT_NOTICE
        elif state.exit_reason is ExitReason.COMPLETED:
            self.state.set_status("Neo responded")

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def apply_result(self, result: Result) -> None:
        if isinstance(result, TasksLoaded):
            self._apply_tasks_loaded(result)
        elif isinstance(result, TaskCreated):
            self._apply_task_created(result)
        elif isinstance(result, MessageSent):
            self.state.set_status("Message sent")
        elif isinstance(result, TranscriptLoaded):
            self._apply_transcript(result.task_id, result.messages, result.status)
            if result.task_id == self.polls.task_id:
                self.polls.resolve(result.status)
        elif isinstance(result, TaskPolled):
            self._apply_poll(result)
        elif isinstance(result, TaskPollFailed):
            self._apply_poll_failure(result)
        elif isinstance(result, ServiceFailed):
            self._apply_service_failure(result)
        elif isinstance(result, (ProcessOutput, ProcessExited, ProcessFailed, ProcessCancelled)):
            self._apply_process(result)
        elif isinstance(result, OperationFailed):
            self.state.error = result.error
        else:
            logger.error(f"Unhandled result: {result!r}")

    def _apply_tasks_loaded(self, result: TasksLoaded) -> None:
        known = {task.id: task for task in self.state.tasks}
        tasks = []
        for task in result.tasks:
            previous = known.pop(task.id, None)
            if previous is not None and not task.messages:
                task.messages = previous.messages
            tasks.append(task)

        current = self.state.current_task_id
        if current in known:
            # Viewed task the listing does not know about yet.
            tasks.insert(0, known[current])
        self.state.tasks = tasks
        self.state.is_loading = self.polls.mode is PollMode.ACTIVE
        self.state.set_status(f"Loaded {len(result.tasks)} tasks")

    def _apply_task_created(self, result: TaskCreated) -> None:
        task = result.task
        if not task.name:
            task.name = preview_name(result.first_message)
        task.status = "running"
        task.messages = [Message.user(result.first_message)]
        self.state.upsert_task(task)

        self._open_task(task.id, load=False)
        self.polls.apply(Activated(user_turns=count_user_turns(task.messages)))
        self.state.start_thinking()
        logger.info(f"Task {task.id} created, polling actively")

    def _apply_transcript(self, task_id: str, messages: tuple[Message, ...], status: str | None) -> int:
        task = self.state.find_task(task_id)
        if task is None:
            return 0
        merged, new_count = merge_transcript(task.messages, list(messages))
        task.messages = merged
        if status is not None:
            task.status = status
        if new_count and self.auto_scroll.enabled:
            self.state.scroll_offset = 0
        return new_count

    def _apply_poll(self, result: TaskPolled) -> None:
        if result.task_id != self.polls.task_id:
            logger.debug(f"Ignoring poll for task {result.task_id} that is no longer viewed")
            return
        new_count = self._apply_transcript(result.task_id, result.messages, result.status)
        task = self.state.find_task(result.task_id)
        messages = task.messages if task else []

        before = self.polls.mode
        replied = assistant_replied_since(messages, self.polls.state.user_turns)
        self.polls.apply(PollSucceeded(new_count, result.status, replied))
        self._after_poll(before)

    def _apply_poll_failure(self, result: TaskPollFailed) -> None:
        if result.task_id != self.polls.task_id:
            return
        self.state.set_status(f"Poll failed: {result.error}")
        before = self.polls.mode
        self.polls.apply(PollErrored(result.error))
        self._after_poll(before)

    def _apply_service_failure(self, result: ServiceFailed) -> None:
        logger.warning(f"{result.operation} failed: {result.error}")
        self.state.error = f"Failed to {result.operation}: {result.error}"
        if result.operation == "send message" and result.task_id == self.polls.task_id:
            self.polls.apply(SendFailed())
            self.state.stop_thinking()
        elif result.operation in ("create task", "load tasks"):
            self.state.stop_thinking()

    def _apply_process(self, result: Result) -> None:
        if not self.executor.apply(result):
            return
        if isinstance(result, ProcessOutput):
            if result.follow:
                self.state.scroll_offset = 0
            else:
                # Keep the lines the user scrolled to in view.
                self.state.scroll_offset += 1
        elif isinstance(result, ProcessExited):
            self.state.set_status(f"Command exited with code {result.exit_code}")
        elif isinstance(result, ProcessFailed):
            self.state.error = result.error
        elif isinstance(result, ProcessCancelled):
            self.state.set_status("Command cancelled")

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def handle_input(self, event: UserInput) -> None:
        self.state.error = None
        if isinstance(event, SendMessage):
            self.send_message(event.content)
        elif isinstance(event, SelectTask):
            if self.state.find_task(event.task_id) is None:
                self.state.error = f"Unknown task: {event.task_id}"
            else:
                self._open_task(event.task_id)
        elif isinstance(event, NewTask):
            self.create_task(event.content)
        elif isinstance(event, CloseTaskView):
            self._close_task_view()
        elif isinstance(event, RefreshTasks):
            self.refresh_tasks()
        elif isinstance(event, RunCommand):
            self.run_command(event)
        elif isinstance(event, CancelCommand):
            if self.executor.cancel():
                self.state.set_status("Cancelling command...")
        elif isinstance(event, DismissCommandOutput):
            self.executor.dismiss()
            self._scroll_to_bottom()
        elif isinstance(event, ScrollUp):
            self.state.scroll_offset += event.lines
            self.auto_scroll.set(False)
        elif isinstance(event, ScrollDown):
            self.state.scroll_offset = max(0, self.state.scroll_offset - event.lines)
            if self.state.scroll_offset == 0:
                self.auto_scroll.set(True)
        elif isinstance(event, ScrollToBottom):
            self._scroll_to_bottom()
        elif isinstance(event, Quit):
            self.state.should_quit = True
        else:
            logger.error(f"Unhandled input: {event!r}")

    def _scroll_to_bottom(self) -> None:
        self.state.scroll_offset = 0
        self.auto_scroll.set(True)

    def _require_client(self) -> TaskServiceClient | None:
        if self.client is None:
            self.state.error = "Task service unavailable: no access token configured"
        return self.client

    def refresh_tasks(self) -> None:
        client = self._require_client()
        if client is None:
            return
        org = self.state.organization

        def operation(context: OperationContext) -> Result:
            return TasksLoaded(key=LIST_KEY, tasks=tuple(client.list_tasks(org)))

        def on_error(error: Exception) -> Result:
            return ServiceFailed(key=LIST_KEY, operation="load tasks", error=str(error))

        if self.spawner.spawn(LIST_KEY, operation, on_error=on_error).accepted:
            self.state.is_loading = True

    def create_task(self, content: str) -> None:
        content = content.strip()
        if not content:
            return
        client = self._require_client()
        if client is None:
            return
        org = self.state.organization

        def operation(context: OperationContext) -> Result:
            task = client.create_task(org, content)
            return TaskCreated(key=CREATE_KEY, task=task, first_message=content)

        def on_error(error: Exception) -> Result:
            return ServiceFailed(key=CREATE_KEY, operation="create task", error=str(error))

        if self.spawner.spawn(CREATE_KEY, operation, on_error=on_error).accepted:
            self.state.start_thinking()
        else:
            self.state.set_status("Already creating a task")

    def send_message(self, content: str) -> None:
        content = content.strip()
        if not content:
            return
        task = self.state.current_task
        if task is None:
            self.state.error = "No task selected"
            return
        client = self._require_client()
        if client is None:
            return

        key = send_key(task.id)
        if self.spawner.in_flight(key):
            self.state.set_status("Still sending the previous message")
            return

        task_id = task.id
        org = self.state.organization

        def operation(context: OperationContext) -> Result:
            client.send_message(org, task_id, content)
            return MessageSent(key=key, task_id=task_id)

        def on_error(error: Exception) -> Result:
            return ServiceFailed(key=key, operation="send message", error=str(error), task_id=task_id)

        task.messages.append(Message.user(content))
        self._scroll_to_bottom()
        self.polls.apply(Activated(user_turns=count_user_turns(task.messages)))
        self.state.notice = None
        self.state.start_thinking()
        self.spawner.spawn(key, operation, on_error=on_error)

    def _open_task(self, task_id: str, load: bool = True) -> None:
        if self.polls.task_id == task_id:
            if load:
                self._load_transcript(task_id)
            return

        self._close_task_view()
        task = self.state.find_task(task_id)
        self.state.current_task_id = task_id
        self.state.notice = None
        self._scroll_to_bottom()
        self.polls.view(task_id, task.status if task else None)
        if load:
            self._load_transcript(task_id)

    def _close_task_view(self) -> None:
        previous = self.polls.close_view()
        if previous is not None:
            self.spawner.cancel(poll_key(previous))
            self.spawner.cancel(load_key(previous))
        self.state.current_task_id = None
        self.state.stop_thinking()

    def _load_transcript(self, task_id: str) -> None:
        if self.client is None:
            return
        key = load_key(task_id)
        client = self.client
        org = self.state.organization

        def operation(context: OperationContext) -> Result:
            messages, status = fetch_task_snapshot(client, org, task_id)
            return TranscriptLoaded(key=key, task_id=task_id, messages=tuple(messages), status=status)

        def on_error(error: Exception) -> Result:
            return ServiceFailed(key=key, operation="load task", error=str(error), task_id=task_id)

        self.spawner.spawn(key, operation, on_error=on_error)

    def run_command(self, event: RunCommand) -> None:
        if event.execution is not None:
            try:
                validate_execution(event.execution)
            except CommandValidationError as e:
                self.state.error = str(e)
                return
        self._scroll_to_bottom()
        self.executor.run(event.command, event.args, cwd=event.cwd)
        self.state.set_status(f"Running {' '.join([event.command, *event.args])}")
