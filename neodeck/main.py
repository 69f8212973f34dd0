"""
Command line entry point for neodeck.

Subcommands:
  tui   (default) interactive Textual client
  tasks list the organization's agent tasks
  exec  run a command through the pty executor and stream its output
  logs  print the tail of the log file
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path

from rich.console import Console
from rich.table import Table

from .core.config import ConfigManager, NeodeckConfig
from .core.exceptions import NeodeckError
from .core.logging import read_log_lines, setup_logging
from .runtime.loop import UpdateLoop
from .runtime.state import RunCommand
from .service.client import TaskServiceClient

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

COLORS = {
    "primary": "#7AA2F7",
    "success": "#9ECE6A",
    "warning": "#E0AF68",
    "error": "#F7768E",
    "muted": "#565F89",
}

DEFAULT_LOG_LINES = 50


def print_error(error: Exception) -> None:
    message = getattr(error, "user_message", None) or str(error)
    err_console.print(f"[bold {COLORS['error']}]Error:[/] {message}", highlight=False)
    hint = getattr(error, "recovery_hint", None)
    if hint:
        err_console.print(f"[{COLORS['muted']}]{hint}[/]", highlight=False)


def _init_logging(config: NeodeckConfig, console_output: bool) -> Path:
    return setup_logging(
        log_file=config.logging.log_file,
        level=config.logging.level,
        console=console_output,
    )


def cmd_tui(manager: ConfigManager, args: argparse.Namespace) -> int:
    from .ui import run_textual_tui

    _init_logging(manager.config, console_output=False)
    run_textual_tui(manager)
    return 0


def cmd_tasks(manager: ConfigManager, args: argparse.Namespace) -> int:
    config = manager.config
    _init_logging(config, console_output=True)
    client = TaskServiceClient.from_config(config)
    try:
        with console.status("Fetching tasks..."):
            tasks = client.list_tasks(args.org)
    finally:
        client.close()

    table = Table(title=f"Tasks ({len(tasks)})", header_style=f"bold {COLORS['primary']}")
    table.add_column("ID", style=COLORS["muted"], no_wrap=True)
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Created", style=COLORS["muted"])
    table.add_column("Updated", style=COLORS["muted"])
    for task in tasks:
        table.add_row(
            task.id,
            task.name or "",
            task.status or "",
            task.created_at or "",
            task.updated_at or "",
        )
    console.print(table)
    return 0


def _exit_status(exit_code: int) -> int:
    # Popen reports death by signal N as -N.
    return 128 - exit_code if exit_code < 0 else exit_code


def cmd_exec(manager: ConfigManager, args: argparse.Namespace) -> int:
    argv = list(args.command)
    if argv and argv[0] == "--":
        argv = argv[1:]
    if not argv:
        err_console.print(f"[{COLORS['error']}]exec needs a command to run[/]")
        return 2

    config = manager.config
    _init_logging(config, console_output=True)

    stop = threading.Event()
    printed = 0

    def render(loop: UpdateLoop) -> None:
        nonlocal printed
        run = loop.executor.current
        if run is None:
            return
        for line in run.output[printed:]:
            console.print(line, markup=False, highlight=False)
        printed = len(run.output)
        if run.finished:
            stop.set()

    loop = UpdateLoop(config, render=render)
    loop.submit_input(RunCommand(command=argv[0], args=tuple(argv[1:]), cwd=args.cwd))
    try:
        loop.run(stop)
    except KeyboardInterrupt:
        loop.shutdown()
        return 130

    run = loop.executor.current
    if run is None or run.cancelled:
        return 130
    if run.error:
        err_console.print(f"[{COLORS['error']}]{run.error}[/]", highlight=False)
        return 127
    return _exit_status(run.exit_code or 0)


def cmd_logs(manager: ConfigManager, args: argparse.Namespace) -> int:
    # No setup_logging here: it would truncate the file being read.
    log_file = manager.config.logging.log_file
    for line in read_log_lines(args.lines, log_file=log_file):
        console.print(line, markup=False, highlight=False)
    return 0


COMMANDS = {
    "tui": cmd_tui,
    "tasks": cmd_tasks,
    "exec": cmd_exec,
    "logs": cmd_logs,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="neodeck",
        description="neodeck: terminal client for Pulumi Neo agent tasks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the interactive client
  neodeck

  # List tasks for an organization
  neodeck tasks --org my-org

  # Run a command with live, deduplicated output
  neodeck exec --cwd ./infra -- pulumi preview
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to the configuration file (default: ~/.config/neodeck/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        help="Log level for the log file (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="subcommand")
    subparsers.add_parser("tui", help="Launch the interactive client (default)")

    tasks = subparsers.add_parser("tasks", help="List agent tasks")
    tasks.add_argument("--org", type=str, help="Organization (default: configured organization)")

    exec_parser = subparsers.add_parser("exec", help="Run a command through the pty executor")
    exec_parser.add_argument("--cwd", type=str, help="Working directory for the command")
    exec_parser.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments")

    logs = subparsers.add_parser("logs", help="Show the end of the log file")
    logs.add_argument(
        "-n",
        "--lines",
        type=int,
        default=DEFAULT_LOG_LINES,
        help=f"Number of lines to show (default: {DEFAULT_LOG_LINES})",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    manager = ConfigManager(args.config)
    try:
        config = manager.load_config()
        if args.log_level:
            config.logging.level = args.log_level
        handler = COMMANDS[args.subcommand or "tui"]
        return handler(manager, args)
    except NeodeckError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print_error(e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
