"""
Tests for the update loop, driven tick by tick against a fake task service.
"""

import os
import sys
import threading

import pytest

from neodeck.commands import CommandExecution, CommandParam, CommandSpec
from neodeck.core.exceptions import ServiceConnectionError, ServiceResponseError
from neodeck.runtime.bus import ProcessOutput
from neodeck.runtime.executor import ProcessRun
from neodeck.runtime.loop import TIMEOUT_NOTICE, UpdateLoop, load_key, poll_key
from neodeck.runtime.polling import ExitReason, PollMode
from neodeck.runtime.state import (
    THINKING_MESSAGE,
    CancelCommand,
    CloseTaskView,
    NewTask,
    Quit,
    RunCommand,
    ScrollDown,
    ScrollToBottom,
    ScrollUp,
    SelectTask,
    SendMessage,
)
from neodeck.service.types import Message, MessageType, Task


def user(text):
    return Message(MessageType.USER, text)


def assistant(text):
    return Message(MessageType.ASSISTANT, text)


class FakeClient:
    """
    Scripted stand-in for TaskServiceClient.

    Event and status scripts are consumed one entry per call; the last entry
    repeats once the script runs out.
    """

    organization = "acme"

    def __init__(self):
        self.tasks: list[Task] = []
        self.events: dict[str, list] = {}
        self.statuses: dict[str, list] = {}
        self.blockers: dict[str, threading.Event] = {}
        self.sent: list[tuple[str, str]] = []
        self.event_calls: dict[str, int] = {}
        self.fail_send = False
        self.fail_events = False
        self._lock = threading.Lock()

    @staticmethod
    def _next(script):
        if not script:
            return None
        return script.pop(0) if len(script) > 1 else script[0]

    def list_tasks(self, org=None):
        return [Task(id=t.id, name=t.name, status=t.status) for t in self.tasks]

    def get_task(self, org, task_id):
        with self._lock:
            status = self._next(self.statuses.get(task_id))
        return Task(id=task_id, status=status)

    def create_task(self, org, content):
        with self._lock:
            self.events.setdefault("new-1", [[user(content)]])
        return Task(id="new-1")

    def send_message(self, org, task_id, content):
        if self.fail_send:
            raise ServiceResponseError(500, "backend down")
        self.sent.append((task_id, content))

    def list_events(self, org, task_id):
        blocker = self.blockers.get(task_id)
        if blocker is not None:
            blocker.wait(5)
        with self._lock:
            self.event_calls[task_id] = self.event_calls.get(task_id, 0) + 1
            if self.fail_events:
                raise ServiceConnectionError("reset by peer")
            return list(self._next(self.events.get(task_id)) or [])


def step(loop, count=1):
    for _ in range(count):
        loop.tick()
        loop.spawner.join(5)


def run_until(loop, predicate, max_ticks=2000):
    for _ in range(max_ticks):
        step(loop)
        if predicate():
            return True
    return False


@pytest.fixture
def fake():
    return FakeClient()


@pytest.fixture
def loop(config, fake):
    update_loop = UpdateLoop(config, client=fake)
    yield update_loop
    update_loop.shutdown()


def open_task(loop, fake, task_id="t1", status="idle", messages=()):
    fake.tasks.append(Task(id=task_id, status=status))
    fake.events[task_id] = [list(messages)]
    fake.statuses[task_id] = [status]
    loop.state.tasks.append(Task(id=task_id, status=status))
    loop.submit_input(SelectTask(task_id))
    step(loop, 2)


class TestTaskLifecycle:
    def test_refresh_loads_tasks(self, loop, fake):
        fake.tasks = [Task(id="a", name="one"), Task(id="b")]
        loop.start()
        loop.spawner.join(5)
        step(loop)
        assert [t.id for t in loop.state.tasks] == ["a", "b"]
        assert loop.state.status_message == "Loaded 2 tasks"
        assert not loop.state.is_loading

    def test_create_polls_until_answered_then_backs_off(self, loop, fake):
        fake.events["new-1"] = [
            [user("deploy dev")],
            [user("deploy dev")],
            [user("deploy dev"), assistant("Deployed.")],
        ]
        fake.statuses["new-1"] = ["running", "running", "idle"]

        loop.submit_input(NewTask("deploy dev"))
        step(loop)
        assert loop.state.spinner_message == THINKING_MESSAGE
        step(loop)

        task = loop.state.current_task
        assert task.id == "new-1"
        assert task.name == "deploy dev"
        # Local echo shows before the service reports anything.
        assert [m.content for m in task.messages] == ["deploy dev"]
        assert loop.polls.mode is PollMode.ACTIVE

        assert run_until(loop, lambda: loop.polls.mode is not PollMode.ACTIVE)
        state = loop.polls.state
        assert state.mode is PollMode.BACKGROUND
        assert state.poll_count == 3
        assert state.exit_reason is ExitReason.COMPLETED
        assert not loop.state.is_loading
        assert loop.state.spinner_message is None
        assert loop.state.status_message == "Neo responded"
        assert [m.content for m in loop.state.transcript] == ["deploy dev", "Deployed."]

        # Background polling is slow.
        calls = fake.event_calls["new-1"]
        step(loop, 25)
        assert fake.event_calls["new-1"] == calls
        step(loop, 10)
        assert fake.event_calls["new-1"] == calls + 1

    def test_active_polling_times_out(self, config, fake):
        config.polling.active_interval_ticks = 1
        loop = UpdateLoop(config, client=fake)
        try:
            fake.events["new-1"] = [[user("hello")]]
            fake.statuses["new-1"] = ["running"]
            loop.submit_input(NewTask("hello"))

            assert run_until(
                loop,
                lambda: loop.polls.state is not None and loop.polls.mode is PollMode.IDLE,
            )
            state = loop.polls.state
            assert state.exit_reason is ExitReason.TIMEOUT
            assert state.active_polls == config.polling.max_active_polls
            assert loop.state.notice == TIMEOUT_NOTICE
            assert not loop.state.is_loading
        finally:
            loop.shutdown()

    def test_send_message_echoes_and_activates(self, loop, fake):
        open_task(loop, fake, messages=[user("first"), assistant("answer")])
        assert [m.content for m in loop.state.transcript] == ["first", "answer"]

        loop.submit_input(SendMessage("  second  "))
        step(loop)
        assert [m.content for m in loop.state.transcript] == ["first", "answer", "second"]
        assert loop.polls.mode is PollMode.ACTIVE
        assert loop.polls.state.user_turns == 2
        step(loop)
        assert fake.sent == [("t1", "second")]
        assert loop.state.status_message == "Message sent"

        # The remote transcript has not caught up; the echo stays.
        assert run_until(loop, lambda: loop.polls.state.poll_count >= 1)
        assert [m.content for m in loop.state.transcript] == ["first", "answer", "second"]

    def test_send_failure_stops_active_polling(self, loop, fake):
        open_task(loop, fake)
        fake.fail_send = True

        loop.submit_input(SendMessage("hello"))
        step(loop, 2)

        assert loop.polls.mode is PollMode.IDLE
        assert loop.polls.state.exit_reason is ExitReason.SEND_FAILED
        assert loop.state.error.startswith("Failed to send message")
        assert not loop.state.is_loading
        assert loop.polls.state.poll_count == 0

    def test_blank_messages_are_ignored(self, loop, fake):
        open_task(loop, fake)
        loop.submit_input(SendMessage("   "))
        step(loop)
        assert loop.polls.mode is PollMode.IDLE
        assert fake.sent == []

    def test_poll_failure_reports_status_and_counts(self, loop, fake):
        open_task(loop, fake)
        fake.fail_events = True
        loop.submit_input(SendMessage("hello"))
        assert run_until(loop, lambda: loop.polls.state.poll_count == 1)
        assert loop.state.status_message.startswith("Poll failed")
        assert loop.polls.mode is PollMode.ACTIVE


class TestTaskSwitching:
    def test_switch_cancels_in_flight_work_for_previous_task(self, loop, fake, wait_for):
        fake.tasks = [Task(id="t1"), Task(id="t2")]
        loop.state.tasks = [Task(id="t1"), Task(id="t2")]
        fake.events["t1"] = [[user("from t1")]]
        fake.events["t2"] = [[user("from t2")]]
        blocker = fake.blockers["t1"] = threading.Event()

        loop.submit_input(SelectTask("t1"))
        loop.tick()
        assert loop.spawner.in_flight(load_key("t1"))

        loop.submit_input(SelectTask("t2"))
        loop.tick()
        assert not loop.spawner.in_flight(load_key("t1"))
        assert not loop.spawner.in_flight(poll_key("t1"))
        assert loop.state.current_task_id == "t2"
        assert loop.polls.task_id == "t2"

        blocker.set()
        assert wait_for(lambda: fake.event_calls.get("t1") == 1)
        loop.spawner.join(5)
        step(loop, 2)

        # The abandoned load never lands.
        assert loop.state.find_task("t1").messages == []
        assert [m.content for m in loop.state.transcript] == ["from t2"]

    def test_returning_to_task_finished_elsewhere_resumes_background(self, loop, fake):
        fake.events["new-1"] = [[user("deploy")]]
        fake.statuses["new-1"] = ["running"]
        loop.submit_input(NewTask("deploy"))
        step(loop, 2)
        assert run_until(loop, lambda: loop.polls.state.poll_count >= 1)
        assert loop.polls.mode is PollMode.ACTIVE

        loop.state.tasks.append(Task(id="t2", status="idle"))
        fake.events["t2"] = [[]]
        loop.submit_input(SelectTask("t2"))
        step(loop, 2)

        # The agent finishes while the user looks elsewhere.
        fake.events["new-1"] = [[user("deploy"), assistant("Deployed.")]]
        fake.statuses["new-1"] = ["completed"]
        loop.submit_input(SelectTask("new-1"))
        step(loop)
        assert loop.polls.mode is PollMode.IDLE
        step(loop)

        assert loop.state.current_task.status == "completed"
        assert loop.polls.mode is PollMode.BACKGROUND
        assert [m.content for m in loop.state.transcript] == ["deploy", "Deployed."]

    def test_close_view_goes_idle(self, loop, fake):
        open_task(loop, fake)
        loop.submit_input(SendMessage("hi"))
        step(loop)
        loop.submit_input(CloseTaskView())
        step(loop)
        assert loop.polls.state is None
        assert loop.state.current_task_id is None
        assert not loop.state.is_loading

    def test_selecting_unknown_task_is_an_error(self, loop):
        loop.submit_input(SelectTask("missing"))
        step(loop)
        assert loop.state.error == "Unknown task: missing"


class TestScrolling:
    def test_scroll_toggles_auto_scroll(self, loop):
        loop.submit_input(ScrollUp(3))
        step(loop)
        assert loop.state.scroll_offset == 3
        assert not loop.auto_scroll.enabled

        loop.submit_input(ScrollDown(2))
        step(loop)
        assert loop.state.scroll_offset == 1
        assert not loop.auto_scroll.enabled

        loop.submit_input(ScrollDown(5))
        step(loop)
        assert loop.state.scroll_offset == 0
        assert loop.auto_scroll.enabled

    def test_output_keeps_scrolled_view_in_place(self, loop):
        loop.executor.current = ProcessRun(run_id="7", command="pulumi")
        loop.state.scroll_offset = 4
        loop.apply_result(ProcessOutput(key="run:7", run_id="7", line="Updating", follow=False))
        assert loop.state.scroll_offset == 5

        loop.apply_result(ProcessOutput(key="run:7", run_id="7", line="Done", follow=True))
        assert loop.state.scroll_offset == 0
        assert loop.executor.current.output == ["Updating", "Done"]

    def test_suppressed_duplicate_does_not_move_scrolled_view(self, loop):
        loop.executor.current = ProcessRun(run_id="7", command="pulumi")
        loop.state.scroll_offset = 4
        line = ProcessOutput(key="run:7", run_id="7", line="Updating", follow=False)
        loop.apply_result(line)
        loop.apply_result(line)
        assert loop.state.scroll_offset == 5
        assert loop.executor.current.output == ["Updating"]

    def test_output_for_old_run_is_ignored(self, loop):
        loop.executor.current = ProcessRun(run_id="2", command="pulumi")
        loop.state.scroll_offset = 4
        loop.apply_result(ProcessOutput(key="run:1", run_id="1", line="stale", follow=False))
        assert loop.state.scroll_offset == 4
        assert loop.executor.current.output == []

    def test_scroll_to_bottom(self, loop):
        loop.submit_input(ScrollUp(10))
        loop.submit_input(ScrollToBottom())
        step(loop, 2)
        assert loop.state.scroll_offset == 0
        assert loop.auto_scroll.enabled


class TestCommands:
    def test_invalid_execution_is_rejected(self, loop):
        spec = CommandSpec("stack select", "Select stack", ("stack", "select"), (CommandParam("name", required=True),))
        loop.submit_input(RunCommand.from_execution(CommandExecution(spec)))
        step(loop)
        assert loop.state.error == "Required parameter 'name' is missing"
        assert loop.executor.current is None

    @pytest.mark.skipif(not hasattr(os, "openpty") or sys.platform == "win32", reason="requires a pty")
    def test_runs_command_to_completion(self, loop):
        loop.submit_input(RunCommand("/bin/sh", ("-c", "echo hi; echo hi; echo bye")))
        assert run_until(loop, lambda: loop.executor.current is not None and loop.executor.current.finished)
        assert loop.executor.current.output == ["hi", "bye"]
        assert loop.executor.current.exit_code == 0
        assert loop.state.status_message == "Command exited with code 0"

    def test_cancel_without_run_is_noop(self, loop):
        loop.submit_input(CancelCommand())
        step(loop)
        assert loop.state.status_message is None


class TestDriving:
    def test_without_client_task_features_are_disabled(self, config):
        loop = UpdateLoop(config)
        loop.submit_input(NewTask("hello"))
        step(loop)
        assert loop.state.error.startswith("Task service unavailable")

    def test_one_input_per_tick_and_errors_clear(self, config):
        loop = UpdateLoop(config)
        loop.submit_input(SelectTask("nope"))
        loop.submit_input(ScrollUp())
        loop.tick()
        assert loop.state.error == "Unknown task: nope"
        assert loop.state.scroll_offset == 0
        loop.tick()
        assert loop.state.error is None
        assert loop.state.scroll_offset == 1

    def test_render_called_every_tick(self, config):
        frames = []
        loop = UpdateLoop(config, render=lambda lp: frames.append(lp.tick_count))
        step(loop, 3)
        assert frames == [1, 2, 3]

    def test_quit_stops_run(self, config):
        loop = UpdateLoop(config)
        loop.submit_input(Quit())
        loop.run(threading.Event())
        assert loop.state.should_quit
        assert loop.spawner.pending_keys() == set()

    def test_status_message_expires(self, config):
        loop = UpdateLoop(config)
        loop.state.set_status("hello", ttl=2)
        step(loop)
        assert loop.state.status_message == "hello"
        step(loop)
        assert loop.state.status_message is None
