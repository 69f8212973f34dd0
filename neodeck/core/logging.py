"""
File-based logging.

The TUI owns the terminal, so log records go to a file. Non-interactive
subcommands can additionally mirror records to stderr.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

_LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that are chatty at DEBUG/INFO.
_NOISY_LOGGERS = ("urllib3", "requests", "textual", "asyncio")

_active_log_file: Path | None = None


def default_log_file() -> Path:
    return Path.home() / ".cache" / "neodeck" / "app.log"


def log_file_path() -> Path:
    """Return the file the current process logs to."""
    return _active_log_file or default_log_file()


def setup_logging(
    log_file: str | Path | None = None,
    level: str | int = "INFO",
    console: bool = False,
) -> Path:
    """
    Configure root logging for the process.

    Args:
        log_file: Target file; truncated on every start
        level: Level name or number for the file handler
        console: Also emit WARNING+ records to stderr

    Returns:
        The path that is being written to
    """
    global _active_log_file

    path = Path(log_file) if log_file else default_log_file()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler: logging.Handler = logging.FileHandler(str(path), mode="w", encoding="utf-8")
    except OSError:
        path = Path("/tmp/neodeck.log")
        file_handler = logging.FileHandler(str(path), mode="w", encoding="utf-8")

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    fmt = logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
    file_handler.setLevel(level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setLevel(logging.WARNING)
        stream.setFormatter(fmt)
        root.addHandler(stream)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.captureWarnings(True)
    _active_log_file = path
    logging.getLogger(__name__).info(f"neodeck started - logging to {path}")
    return path


def read_log_lines(max_lines: int | None = None, log_file: str | Path | None = None) -> list[str]:
    """Read the last ``max_lines`` lines of the log (all lines if None)."""
    path = Path(log_file) if log_file else log_file_path()
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            lines = [line.rstrip("\n") for line in f]
    except OSError:
        return ["Log file not found"]

    if max_lines is not None and len(lines) > max_lines:
        return lines[-max_lines:]
    return lines
