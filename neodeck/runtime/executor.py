"""
Process executor.

Runs an external command attached to a pseudo-terminal so the child sees an
interactive terminal, frames its output into lines and streams them onto the
result bus. Consecutive identical lines are collapsed, which absorbs the
redraw-in-place progress output most CLIs emit on a tty.
"""

from __future__ import annotations

import codecs
import errno
import logging
import os
import re
import select
import signal
import struct
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Callable

from ..core.config import ExecutorConfig
from ..core.exceptions import ProcessSpawnError
from .bus import (
    ProcessCancelled,
    ProcessExited,
    ProcessFailed,
    ProcessOutput,
    Result,
)
from .spawner import BackgroundSpawner, OperationContext

logger = logging.getLogger(__name__)

# Only available on Unix-like systems.
_HAS_PTY = hasattr(os, "openpty")

# Seconds between cancellation checks while waiting for output.
READ_POLL_SECONDS = 0.05

CHILD_ENV = {
    "TERM": "xterm-256color",
    "PYTHONUNBUFFERED": "1",
    "PULUMI_SKIP_UPDATE_CHECK": "true",
    "PULUMI_COLOR": "never",
}

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b\].*?(?:\x07|\x1b\\)|\x1b[()][A-Za-z0-9]|\x1b[=>]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def clean_line(raw: str) -> str:
    return _CONTROL_RE.sub("", strip_ansi(raw)).strip()


class LineFramer:
    """
    Incremental bytes-to-lines splitter.

    ``\\r\\n``, ``\\n`` and a lone ``\\r`` all end a line. When a chunk ends
    in ``\\r``, a ``\\n`` opening the next chunk belongs to the same break.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._skip_lf = False

    def feed(self, data: bytes) -> list[str]:
        return self._push(self._decoder.decode(data), final=False)

    def flush(self) -> list[str]:
        return self._push(self._decoder.decode(b"", final=True), final=True)

    def _push(self, text: str, final: bool) -> list[str]:
        if self._skip_lf and text:
            if text.startswith("\n"):
                text = text[1:]
            self._skip_lf = False
        if text.endswith("\r"):
            self._skip_lf = True

        parts = _LINE_BREAK_RE.split(self._buffer + text)
        rest = parts.pop()
        if final and rest:
            parts.append(rest)
            rest = ""
        self._buffer = rest
        return parts


class LineDeduper:
    """Suppresses a line identical to the one emitted immediately before it."""

    def __init__(self) -> None:
        self.last_line: str | None = None

    def accept(self, line: str) -> bool:
        if line == self.last_line:
            return False
        self.last_line = line
        return True


def frame_output(chunks: list[bytes]) -> list[str]:
    """Clean, filter and dedup a whole byte stream (headless helper)."""
    framer = LineFramer()
    deduper = LineDeduper()
    lines: list[str] = []
    raw_lines: list[str] = []
    for chunk in chunks:
        raw_lines.extend(framer.feed(chunk))
    raw_lines.extend(framer.flush())
    for raw in raw_lines:
        line = clean_line(raw)
        if line and deduper.accept(line):
            lines.append(line)
    return lines


@dataclass
class ProcessRun:
    run_id: str
    command: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    output: list[str] = field(default_factory=list)
    last_line: str | None = None
    exit_code: int | None = None
    cancelled: bool = False
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.exit_code is not None or self.cancelled or self.error is not None

    @property
    def display(self) -> str:
        return " ".join([self.command, *self.args])

    def append(self, line: str) -> bool:
        if line == self.last_line:
            return False
        self.output.append(line)
        self.last_line = line
        return True


class ProcessHandle:
    """Cancellation handle for one run."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.key = f"run:{run_id}"
        self._cancel_requested = threading.Event()
        self._done = threading.Event()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> bool:
        """Ask the run to terminate. False when it already finished or was cancelled."""
        if self._done.is_set() or self._cancel_requested.is_set():
            return False
        self._cancel_requested.set()
        logger.info(f"Cancel requested for {self.key}")
        return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def _mark_done(self) -> None:
        self._done.set()


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    import fcntl
    import termios

    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


class ProcessExecutor:
    """
    Owns at most one ProcessRun at a time.

    ``run`` hands the blocking pty work to the spawner; output and the single
    terminal result come back through the bus and are folded in by ``apply``.
    """

    def __init__(
        self,
        spawner: BackgroundSpawner,
        config: ExecutorConfig | None = None,
        follow: Callable[[], bool] | None = None,
    ):
        self.spawner = spawner
        self.config = config or ExecutorConfig()
        self._follow = follow or (lambda: True)
        self._counter = 0
        self.current: ProcessRun | None = None
        self.handle: ProcessHandle | None = None

    def child_env(self, env: dict[str, str] | None = None) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(CHILD_ENV)
        merged.update(self.config.env)
        if env:
            merged.update(env)
        return merged

    def run(
        self,
        command: str,
        args: list[str] | tuple[str, ...] = (),
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        """Start ``command``; an active run is cancelled first."""
        if self.handle is not None:
            self.handle.cancel()

        self._counter += 1
        run_id = f"{self._counter}"
        handle = ProcessHandle(run_id)
        run = ProcessRun(run_id=run_id, command=command, args=tuple(args), cwd=cwd)
        self.current = run
        self.handle = handle

        child_env = self.child_env(env)
        logger.info(f"Running {run.display} (run {run_id}, cwd={cwd or os.getcwd()})")

        def operation(context: OperationContext) -> Result:
            try:
                return self._execute(context, handle, run, child_env)
            finally:
                handle._mark_done()

        def on_error(error: Exception) -> Result:
            return ProcessFailed(key=handle.key, run_id=run_id, error=str(error))

        self.spawner.spawn(handle.key, operation, on_error=on_error)
        return handle

    def _spawn_child(
        self, run: ProcessRun, env: dict[str, str]
    ) -> tuple[subprocess.Popen, int]:
        if not _HAS_PTY:
            raise ProcessSpawnError(run.command, "PTY not available on this platform")
        try:
            master_fd, slave_fd = os.openpty()
        except OSError as e:
            raise ProcessSpawnError(run.command, f"pty allocation failed: {e}") from e

        try:
            _set_winsize(slave_fd, self.config.rows, self.config.cols)
            proc = subprocess.Popen(
                [run.command, *run.args],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=run.cwd,
                env=env,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as e:
            os.close(master_fd)
            raise ProcessSpawnError(run.command, str(e)) from e
        finally:
            os.close(slave_fd)
        return proc, master_fd

    def _execute(
        self,
        context: OperationContext,
        handle: ProcessHandle,
        run: ProcessRun,
        env: dict[str, str],
    ) -> Result:
        proc, master_fd = self._spawn_child(run, env)
        logger.debug(f"{handle.key}: pid {proc.pid}")

        framer = LineFramer()
        deduper = LineDeduper()

        def emit(raw_lines: list[str]) -> None:
            for raw in raw_lines:
                line = clean_line(raw)
                if line and deduper.accept(line):
                    context.post(
                        ProcessOutput(
                            key=handle.key, run_id=run.run_id, line=line, follow=self._follow()
                        )
                    )

        cancelled = False
        try:
            while True:
                if handle.cancel_requested:
                    cancelled = True
                    break
                ready, _, _ = select.select([master_fd], [], [], READ_POLL_SECONDS)
                if not ready:
                    # Grandchildren can keep the slave open after the child exits.
                    if proc.poll() is not None:
                        break
                    continue
                try:
                    data = os.read(master_fd, self.config.read_chunk)
                except OSError as e:
                    # Linux reports EIO on the master once the slave side is closed.
                    if e.errno == errno.EIO:
                        break
                    raise
                if not data:
                    break
                emit(framer.feed(data))
            emit(framer.flush())
        except Exception as e:
            logger.warning(f"{handle.key}: reading output failed ({e}), stopping pid {proc.pid}")
            self._terminate(proc)
            raise
        finally:
            os.close(master_fd)

        if cancelled:
            self._terminate(proc)
            logger.info(f"{handle.key} cancelled")
            return ProcessCancelled(key=handle.key, run_id=run.run_id)

        exit_code = proc.wait()
        logger.info(f"{handle.key} exited with {exit_code}")
        return ProcessExited(key=handle.key, run_id=run.run_id, exit_code=exit_code)

    def _terminate(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
            proc.wait(timeout=self.config.terminate_grace_seconds)
        except ProcessLookupError:
            proc.wait()
        except subprocess.TimeoutExpired:
            logger.warning(f"pid {proc.pid} ignored SIGTERM, killing")
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            proc.wait()

    def apply(self, result: Result) -> bool:
        """Fold a process result into the current run.

        False when it belongs to an old run or repeats the previous line.
        """
        run = self.current
        if run is None or getattr(result, "run_id", None) != run.run_id:
            return False

        if isinstance(result, ProcessOutput):
            return run.append(result.line)
        elif isinstance(result, ProcessExited):
            run.exit_code = result.exit_code
        elif isinstance(result, ProcessFailed):
            run.error = result.error
        elif isinstance(result, ProcessCancelled):
            run.cancelled = True
        else:
            return False
        return True

    def cancel(self) -> bool:
        if self.handle is None:
            return False
        return self.handle.cancel()

    def dismiss(self) -> None:
        """Drop the current run, terminating it if still running."""
        if self.handle is not None:
            self.handle.cancel()
        self.current = None
        self.handle = None
