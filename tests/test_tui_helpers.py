"""Tests for the TUI's pure rendering and input helpers."""

import pytest
from hypothesis import given, strategies as st

from neodeck.runtime.executor import ProcessRun
from neodeck.runtime.state import THINKING_MESSAGE, AppState, NewTask, RunCommand, SendMessage
from neodeck.ui.tui_app import parse_chat_input, render_run, render_status_line, visible_window


class TestVisibleWindow:
    def test_bottom_when_not_scrolled(self):
        assert visible_window(list(range(10)), 3, 0) == [7, 8, 9]

    def test_scrolled_up(self):
        assert visible_window(list(range(10)), 3, 2) == [5, 6, 7]

    def test_offset_clamped_to_top(self):
        assert visible_window(list(range(10)), 3, 100) == [0, 1, 2]

    def test_short_content(self):
        assert visible_window([1, 2], 5, 3) == [1, 2]
        assert visible_window([1, 2], 0, 0) == []

    @given(
        size=st.integers(min_value=0, max_value=50),
        height=st.integers(min_value=1, max_value=20),
        offset=st.integers(min_value=0, max_value=100),
    )
    def test_window_is_contiguous_and_bounded(self, size, height, offset):
        lines = list(range(size))
        window = visible_window(lines, height, offset)
        assert len(window) == min(size, height)
        if window:
            assert window == list(range(window[0], window[0] + len(window)))
            assert window[-1] <= size - 1


class TestParseChatInput:
    def test_blank_is_none(self):
        assert parse_chat_input("   ", has_task=True) is None

    @pytest.mark.parametrize("value", ["!pulumi preview --diff", "!preview --diff"])
    def test_bang_runs_command(self, value):
        assert parse_chat_input(value, has_task=True) == RunCommand(command="pulumi", args=("preview", "--diff"))

    def test_bang_keeps_quoted_args(self):
        event = parse_chat_input('!config set greeting "hello world"', has_task=False)
        assert event.args == ("config", "set", "greeting", "hello world")

    def test_new_prefix_always_creates(self):
        assert parse_chat_input("/new deploy prod", has_task=True) == NewTask("deploy prod")

    def test_plain_text_targets_task_or_creates(self):
        assert parse_chat_input("status?", has_task=True) == SendMessage("status?")
        assert parse_chat_input("status?", has_task=False) == NewTask("status?")


def test_render_run_footer_tracks_state():
    run = ProcessRun(run_id="1", command="pulumi", args=("up",))
    header, footer = render_run(run)
    assert header.plain == "$ pulumi up"
    assert footer.plain == "running..."

    run.exit_code = 1
    assert render_run(run)[1].plain == "exit code 1"
    run.error = "boom"
    assert render_run(run)[1].plain == "failed: boom"


def test_status_line_prefers_error_over_notice():
    state = AppState(notice="No response yet", status_message="ok")
    assert render_status_line(state, 0).plain == "No response yet"

    state.error = "Failed"
    state.start_thinking()
    line = render_status_line(state, 0).plain
    assert THINKING_MESSAGE in line
    assert line.endswith("Failed")
