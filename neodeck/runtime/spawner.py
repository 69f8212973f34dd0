"""
Background task spawner.

Runs one concurrent unit of work per operation key and refuses a second
spawn while the key is in flight. The pending set, the key's removal and
the delivery of the terminal result happen under one lock, so a key is
released exactly once and only together with its result.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .bus import OperationFailed, Result, ResultBus

logger = logging.getLogger(__name__)


class SpawnOutcome(str, Enum):
    OK = "ok"
    ALREADY_IN_FLIGHT = "already_in_flight"

    @property
    def accepted(self) -> bool:
        return self is SpawnOutcome.OK


class OperationContext:
    """Handed to a running operation: cancellation flag and intermediate posting."""

    def __init__(self, key: str, spawner: "BackgroundSpawner"):
        self.key = key
        self._spawner = spawner
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait_cancelled(self, timeout: float) -> bool:
        return self._cancelled.wait(timeout)

    def post(self, result: Result) -> bool:
        """Post a non-terminal result. Dropped once the operation is stale."""
        return self._spawner._post_intermediate(self, result)


Operation = Callable[[OperationContext], Result]
ErrorMapper = Callable[[Exception], Result]


@dataclass
class _Pending:
    context: OperationContext
    thread: threading.Thread | None = None


class BackgroundSpawner:
    """Launches background units on daemon threads."""

    def __init__(self, bus: ResultBus):
        self.bus = bus
        self._lock = threading.Lock()
        self._pending: dict[str, _Pending] = {}

    def spawn(
        self,
        key: str,
        operation: Operation,
        on_error: ErrorMapper | None = None,
    ) -> SpawnOutcome:
        """
        Start ``operation`` unless ``key`` is already in flight.

        Args:
            key: Operation key, e.g. ``poll:<task_id>``
            operation: Callable returning the terminal result
            on_error: Maps an exception raised by ``operation`` to a result

        Returns:
            ``SpawnOutcome.OK`` or ``SpawnOutcome.ALREADY_IN_FLIGHT``
        """
        with self._lock:
            if key in self._pending:
                logger.debug(f"spawn rejected, already in flight: {key}")
                return SpawnOutcome.ALREADY_IN_FLIGHT
            context = OperationContext(key, self)
            entry = _Pending(context=context)
            self._pending[key] = entry

        thread = threading.Thread(
            target=self._run,
            args=(context, operation, on_error),
            name=f"neodeck:{key}",
            daemon=True,
        )
        entry.thread = thread
        try:
            thread.start()
        except RuntimeError:
            with self._lock:
                self._pending.pop(key, None)
            raise
        logger.debug(f"spawned {key}")
        return SpawnOutcome.OK

    def _run(
        self,
        context: OperationContext,
        operation: Operation,
        on_error: ErrorMapper | None,
    ) -> None:
        try:
            result = operation(context)
        except Exception as e:
            logger.warning(f"{context.key} failed: {type(e).__name__}: {e}")
            try:
                result = on_error(e) if on_error else OperationFailed(key=context.key, error=str(e))
            except Exception:
                logger.exception(f"error mapper for {context.key} failed")
                result = OperationFailed(key=context.key, error=str(e))
        self._complete(context, result)

    def _complete(self, context: OperationContext, result: Result) -> None:
        with self._lock:
            entry = self._pending.get(context.key)
            if entry is None or entry.context is not context:
                logger.debug(f"discarding stale result for {context.key}")
                return
            del self._pending[context.key]
            self.bus.post(result)

    def _post_intermediate(self, context: OperationContext, result: Result) -> bool:
        with self._lock:
            entry = self._pending.get(context.key)
            if entry is None or entry.context is not context:
                return False
            self.bus.post(result)
            return True

    def cancel(self, key: str) -> bool:
        """
        Abandon an in-flight operation.

        The key is released immediately; whatever the operation eventually
        returns is discarded as stale.
        """
        with self._lock:
            entry = self._pending.pop(key, None)
        if entry is None:
            return False
        entry.context._cancelled.set()
        logger.debug(f"cancelled {key}")
        return True

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def pending_keys(self) -> set[str]:
        with self._lock:
            return set(self._pending)

    def join(self, timeout: float | None = None) -> None:
        """Wait for currently running threads (tests and shutdown)."""
        with self._lock:
            threads = [e.thread for e in self._pending.values() if e.thread is not None]
        for thread in threads:
            thread.join(timeout)

    def shutdown(self) -> None:
        for key in list(self.pending_keys()):
            self.cancel(key)
