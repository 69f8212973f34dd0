"""
Textual-based TUI for neodeck.

Features:
- Task list with the viewed task's transcript
- Chat input: plain text goes to the viewed task (or creates one), ``!args``
  runs a command, ``/new text`` always starts a new task
- Streaming command output pane and log tail view
"""

from __future__ import annotations

import logging
import shlex
from typing import Any

from rich.console import Group
from rich.text import Text

from ..core.config import ConfigManager
from ..core.exceptions import NeodeckError
from ..core.logging import read_log_lines
from ..runtime.executor import ProcessRun
from ..runtime.loop import UpdateLoop
from ..runtime.state import (
    AppState,
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
)
from ..service.client import TaskServiceClient
from ..service.types import Message, MessageType, Task

logger = logging.getLogger(__name__)

SPINNER_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]
LOG_VIEW_LINES = 200
PAGE_LINES = 10

_MESSAGE_STYLES: dict[MessageType, tuple[str, str]] = {
    MessageType.USER: ("You", "bold #7dd3fc"),
    MessageType.ASSISTANT: ("Neo", "bold #c4b5fd"),
    MessageType.TOOL_CALL: ("Tool", "#fbbf24"),
    MessageType.TOOL_RESPONSE: ("Result", "#a3a3a3"),
    MessageType.APPROVAL_REQUEST: ("Approval", "bold #f87171"),
    MessageType.NAME_CHANGE: ("Info", "#86efac"),
}


def _status_style(status: str | None) -> str:
    if status in ("running", "in_progress", "pending"):
        return "#fbbf24"
    if status == "failed":
        return "#f87171"
    if status == "completed":
        return "#86efac"
    return "#a3a3a3"


def render_message(message: Message) -> Text:
    label, style = _MESSAGE_STYLES.get(message.type, ("?", ""))
    text = Text()
    text.append(f"{label}: ", style=style)
    text.append(message.content)
    for call in message.tool_calls:
        text.append(f"\n  -> {call.name}", style="#fbbf24")
    return text


def render_task_label(task: Task, current: bool) -> Text:
    text = Text()
    text.append("> " if current else "  ")
    text.append(task.display_name, style="bold" if current else "")
    text.append(f"  [{task.status or '?'}]", style=_status_style(task.status))
    return text


def visible_window(lines: list[Any], height: int, scroll_offset: int) -> list[Any]:
    """Slice ``lines`` to ``height`` rows, ``scroll_offset`` rows up from the bottom."""
    if height <= 0:
        return []
    offset = min(scroll_offset, max(0, len(lines) - height))
    end = len(lines) - offset
    return lines[max(0, end - height) : end]


def render_run(run: ProcessRun) -> tuple[Text, Text]:
    if run.error:
        footer = Text(f"failed: {run.error}", style="#f87171")
    elif run.cancelled:
        footer = Text("cancelled", style="#fbbf24")
    elif run.exit_code is not None:
        style = "#86efac" if run.exit_code == 0 else "#f87171"
        footer = Text(f"exit code {run.exit_code}", style=style)
    else:
        footer = Text("running...", style="#7dd3fc")
    header = Text(f"$ {run.display}", style="bold")
    return header, footer


def render_status_line(state: AppState, frame: int) -> Text:
    text = Text()
    if state.is_loading and state.spinner_message:
        text.append(f"{SPINNER_FRAMES[frame % len(SPINNER_FRAMES)]} {state.spinner_message}  ", style="#c4b5fd")
    if state.error:
        text.append(state.error, style="bold #f87171")
    elif state.notice:
        text.append(state.notice, style="#fbbf24")
    elif state.status_message:
        text.append(state.status_message, style="#a3a3a3")
    return text


def parse_chat_input(value: str, has_task: bool, program: str = "pulumi"):
    """Map a submitted input line to a user input event (None when empty)."""
    value = value.strip()
    if not value:
        return None
    if value.startswith("!"):
        args = shlex.split(value[1:])
        if args and args[0] == program:
            args = args[1:]
        return RunCommand(command=program, args=tuple(args))
    if value.startswith("/new "):
        return NewTask(value[len("/new ") :])
    if has_task:
        return SendMessage(value)
    return NewTask(value)


def run_textual_tui(config_manager: ConfigManager) -> None:
    """Launch the Textual TUI mode."""
    try:
        from textual.app import App, ComposeResult
        from textual.binding import Binding
        from textual.containers import Horizontal, Vertical
        from textual.widgets import Footer, Header, Input, OptionList, Static
        from textual.widgets.option_list import Option
    except ImportError as exc:  # pragma: no cover - depends on local environment
        raise NeodeckError(
            "Textual TUI requires the 'textual' package.\nInstall with: pip install textual"
        ) from exc

    class NeodeckApp(App):
        TITLE = "neodeck"

        CSS = """
        #main_row { height: 1fr; }
        #task_pane { width: 38; border: round #4b5563; }
        #task_list { height: 1fr; }
        #center_pane { width: 1fr; border: round #4b5563; }
        #transcript { height: 1fr; padding: 0 1; }
        #output_pane { height: 14; border: round #4b5563; padding: 0 1; display: none; }
        #status_strip { height: 1; padding: 0 1; }
        #chat_input { dock: bottom; }
        """

        BINDINGS = [
            Binding("ctrl+r", "refresh_tasks", "Refresh"),
            Binding("escape", "close_task", "Close Task"),
            Binding("ctrl+x", "cancel_command", "Cancel Cmd"),
            Binding("ctrl+d", "dismiss_output", "Dismiss Output"),
            Binding("ctrl+l", "toggle_logs", "Logs"),
            Binding("pageup", "scroll_up", "Up", show=False),
            Binding("pagedown", "scroll_down", "Down", show=False),
            Binding("ctrl+end", "scroll_bottom", "Bottom", show=False),
            Binding("ctrl+q", "quit_app", "Quit"),
        ]

        def __init__(self, cfg: ConfigManager):
            super().__init__()
            self.config_manager = cfg
            config = cfg.config
            client = None
            self._startup_error: str | None = None
            try:
                client = TaskServiceClient.from_config(config)
            except NeodeckError as e:
                self._startup_error = getattr(e, "user_message", str(e))
                logger.warning(f"Task service disabled: {e}")
            self.update_loop = UpdateLoop(config, client=client, render=self._render_state)
            self._show_logs = False
            self._task_signature: tuple | None = None
            self._frame = 0

        def compose(self) -> ComposeResult:
            yield Header(show_clock=True)
            with Horizontal(id="main_row"):
                with Vertical(id="task_pane"):
                    yield Static("Tasks", classes="pane_title")
                    yield OptionList(id="task_list")
                with Vertical(id="center_pane"):
                    yield Static(id="transcript")
                    yield Static(id="output_pane")
            yield Static(id="status_strip")
            yield Input(placeholder="Message Neo, !<args> to run a command, /new to start a task", id="chat_input")
            yield Footer()

        def on_mount(self) -> None:
            if self._startup_error:
                self.update_loop.state.error = self._startup_error
            self.update_loop.start()
            self.set_interval(self.update_loop.config.polling.tick_seconds, self.update_loop.tick)
            self.query_one("#chat_input", Input).focus()

        def on_unmount(self) -> None:
            self.update_loop.shutdown()
            if self.update_loop.client is not None:
                self.update_loop.client.close()

        # -- rendering -------------------------------------------------

        def _render_state(self, loop: UpdateLoop) -> None:
            state = loop.state
            self._frame += 1
            if state.should_quit:
                self.exit()
                return
            self._render_tasks(state)
            self._render_transcript(state)
            self._render_output(loop)
            self.query_one("#status_strip", Static).update(render_status_line(state, self._frame))

        def _render_tasks(self, state: AppState) -> None:
            signature = (
                state.current_task_id,
                tuple((t.id, t.name, t.status) for t in state.tasks),
            )
            if signature == self._task_signature:
                return
            self._task_signature = signature
            task_list = self.query_one("#task_list", OptionList)
            task_list.clear_options()
            task_list.add_options(
                [Option(render_task_label(t, t.id == state.current_task_id), id=t.id) for t in state.tasks]
            )

        def _transcript_height(self) -> int:
            return max(1, self.query_one("#transcript", Static).size.height)

        def _render_transcript(self, state: AppState) -> None:
            panel = self.query_one("#transcript", Static)
            if self._show_logs:
                lines = read_log_lines(LOG_VIEW_LINES)
                window = visible_window(lines, self._transcript_height(), state.scroll_offset)
                panel.update(Text("\n".join(window), style="#a3a3a3"))
                return

            task = state.current_task
            if task is None:
                panel.update(Text("Select a task or type a message to start one.", style="#a3a3a3"))
                return
            rendered = [render_message(m) for m in task.messages]
            if not rendered:
                rendered = [Text("Loading transcript...", style="#a3a3a3")]
            window = visible_window(rendered, self._transcript_height(), state.scroll_offset)
            panel.update(Group(*window))

        def _render_output(self, loop: UpdateLoop) -> None:
            pane = self.query_one("#output_pane", Static)
            run = loop.executor.current
            pane.display = run is not None
            if run is None:
                return
            header, footer = render_run(run)
            height = max(1, pane.size.height - 2)
            window = visible_window(run.output, height, loop.state.scroll_offset)
            pane.update(Group(header, Text("\n".join(window)), footer))

        # -- input -----------------------------------------------------

        def on_input_submitted(self, event: Input.Submitted) -> None:
            value = event.value
            event.input.value = ""
            program = self.update_loop.config.executor.default_command
            try:
                request = parse_chat_input(value, self.update_loop.state.current_task is not None, program)
            except ValueError as e:
                self.update_loop.state.error = f"Could not parse command: {e}"
                return
            if request is not None:
                self.update_loop.submit_input(request)

        def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
            if event.option.id:
                self._show_logs = False
                self.update_loop.submit_input(SelectTask(event.option.id))

        def action_refresh_tasks(self) -> None:
            self.update_loop.submit_input(RefreshTasks())

        def action_close_task(self) -> None:
            if self._show_logs:
                self._show_logs = False
                return
            self.update_loop.submit_input(CloseTaskView())

        def action_cancel_command(self) -> None:
            self.update_loop.submit_input(CancelCommand())

        def action_dismiss_output(self) -> None:
            self.update_loop.submit_input(DismissCommandOutput())

        def action_toggle_logs(self) -> None:
            self._show_logs = not self._show_logs
            self.update_loop.submit_input(ScrollToBottom())

        def action_scroll_up(self) -> None:
            self.update_loop.submit_input(ScrollUp(PAGE_LINES))

        def action_scroll_down(self) -> None:
            self.update_loop.submit_input(ScrollDown(PAGE_LINES))

        def action_scroll_bottom(self) -> None:
            self.update_loop.submit_input(ScrollToBottom())

        def action_quit_app(self) -> None:
            self.update_loop.submit_input(Quit())

    NeodeckApp(config_manager).run()
