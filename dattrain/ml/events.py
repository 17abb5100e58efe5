"""Per-session ordered fan-out of progress, epoch and log events."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from typing import Any

import structlog

from dattrain.schemas.training import BatchMetrics, EpochMetrics, LogEntry, LogLevel, ProgressUpdate

logger = structlog.get_logger(__name__)

ProgressHandler = Callable[[ProgressUpdate], None]
EpochHandler = Callable[[EpochMetrics], None]
BatchHandler = Callable[[BatchMetrics], None]
LogHandler = Callable[[LogEntry], None]


class TrainingEventEmitter:
    """
    Deliver one session's events in production order.

    Emits that happen while a delivery is in progress (a handler emitting, or
    another thread emitting for the same session) are queued and delivered by
    the dispatch already running, so handlers are never re-entered
    concurrently for a session. A handler exception drops the pending queue
    and propagates to the emitting caller.
    """

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id
        self._handlers: dict[str, list[Callable[[Any], None]]] = {
            "progress": [],
            "epoch": [],
            "batch": [],
            "log": [],
        }
        self._pending: deque[tuple[tuple[Callable[[Any], None], ...], Any]] = deque()
        self._dispatching = False
        self._lock = threading.Lock()

    def _subscribe(self, kind: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        with self._lock:
            self._handlers[kind].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[kind]:
                    self._handlers[kind].remove(handler)

        return unsubscribe

    def on_progress(self, handler: ProgressHandler) -> Callable[[], None]:
        return self._subscribe("progress", handler)

    def on_epoch_complete(self, handler: EpochHandler) -> Callable[[], None]:
        return self._subscribe("epoch", handler)

    def on_batch_complete(self, handler: BatchHandler) -> Callable[[], None]:
        return self._subscribe("batch", handler)

    def on_log(self, handler: LogHandler) -> Callable[[], None]:
        return self._subscribe("log", handler)

    def emit_progress(self, update: ProgressUpdate) -> None:
        self._dispatch("progress", update)

    def emit_epoch_complete(self, metrics: EpochMetrics) -> None:
        self._dispatch("epoch", metrics)

    def emit_batch_complete(self, metrics: BatchMetrics) -> None:
        self._dispatch("batch", metrics)

    def log(self, level: LogLevel | str, message: str, data: dict[str, Any] | None = None) -> LogEntry:
        """Emit a user-facing log line and mirror it to structlog."""
        entry = LogEntry(level=LogLevel(level), message=message, data=data)
        log_method = {
            LogLevel.WARNING: logger.warning,
            LogLevel.ERROR: logger.error,
        }.get(entry.level, logger.info)
        log_method("training_log", session_id=self.session_id, level=entry.level.value, message=message)
        self._dispatch("log", entry)
        return entry

    def _dispatch(self, kind: str, payload: Any) -> None:
        with self._lock:
            self._pending.append((tuple(self._handlers[kind]), payload))
            if self._dispatching:
                return
            self._dispatching = True

        try:
            while True:
                with self._lock:
                    if not self._pending:
                        self._dispatching = False
                        return
                    handlers, item = self._pending.popleft()
                for handler in handlers:
                    handler(item)
        except BaseException:
            with self._lock:
                self._pending.clear()
                self._dispatching = False
            raise
