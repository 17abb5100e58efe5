"""Session registry: CRUD and derived queries over training sessions."""

from __future__ import annotations

import threading
import uuid
from typing import Any, Mapping

import structlog

from dattrain.errors import NotFoundError, ValidationError
from dattrain.schemas.training import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    HistoryEntry,
    Hyperparameters,
    ModelType,
    SessionResult,
    SessionStatus,
    TrainingSession,
    utcnow,
)
from dattrain.services.session_store import InMemorySessionStore, SessionStore

logger = structlog.get_logger(__name__)

_IMMUTABLE_FIELDS = frozenset({"id", "start_time"})
_IN_FLIGHT_STATUSES = ACTIVE_STATUSES | {SessionStatus.PREPARING}


class SessionRegistry:
    """
    Shared session state for every training loop and the backend poller.

    All mutations are serialized by a single lock. At most one session may be in
    an active status (training, paused, uploading) at a time; transitions that
    would break this raise ``ValidationError``. Only terminal transitions and
    removals reach the injected store.
    """

    def __init__(self, store: SessionStore | None = None) -> None:
        self._store = store or InMemorySessionStore()
        self._lock = threading.RLock()
        self._sessions: dict[str, TrainingSession] = {}
        self._history: list[HistoryEntry] = []
        self._current_session_id: str | None = None
        self._total_sessions_completed = 0
        self._total_training_time = 0.0

        snapshot = self._store.load()
        for session in snapshot.sessions:
            self._sessions[session.id] = session
        self._history = list(snapshot.history)
        self._total_sessions_completed = snapshot.total_sessions_completed
        self._total_training_time = snapshot.total_training_time

    # CRUD

    def create_session(
        self,
        model_id: str,
        model_type: ModelType | str,
        hyperparameters: Hyperparameters | Mapping[str, Any],
    ) -> str:
        """Register a new idle session, make it current and return its id."""
        try:
            params = (
                hyperparameters
                if isinstance(hyperparameters, Hyperparameters)
                else Hyperparameters.model_validate(dict(hyperparameters))
            )
            session = TrainingSession(
                id=str(uuid.uuid4()),
                model_id=model_id,
                model_type=model_type,
                total_epochs=params.epochs,
                hyperparameters=params,
            )
        except ValueError as exc:
            raise ValidationError(f"Invalid session parameters: {exc}") from exc

        with self._lock:
            self._sessions[session.id] = session
            self._current_session_id = session.id

        logger.info(
            "session_created",
            session_id=session.id,
            model_id=model_id,
            model_type=session.model_type.value,
            epochs=params.epochs,
        )
        return session.id

    def update_session(
        self,
        session_id: str,
        updates: Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> TrainingSession:
        """Apply a partial update and return a copy of the resulting session."""
        changes = {**(updates or {}), **fields}
        bad_fields = _IMMUTABLE_FIELDS.intersection(changes)
        if bad_fields:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(bad_fields))}")

        with self._lock:
            current = self._require(session_id)
            merged = {**current.model_dump(), **changes}
            try:
                updated = TrainingSession.model_validate(merged)
            except ValueError as exc:
                raise ValidationError(f"Invalid session update: {exc}") from exc

            if updated.status in ACTIVE_STATUSES and current.status not in ACTIVE_STATUSES:
                self._ensure_no_other_active(session_id)

            self._sessions[session_id] = updated
            return updated.model_copy(deep=True)

    def complete_session(
        self,
        session_id: str,
        result: SessionResult | None = None,
        *,
        loss: float | None = None,
        accuracy: float | None = None,
        blob_reference: str | None = None,
    ) -> HistoryEntry:
        """Mark a session completed, append its history entry and bump counters."""
        if result is None:
            if loss is None or accuracy is None:
                raise ValidationError("complete_session requires loss and accuracy")
            result = SessionResult(loss=loss, accuracy=accuracy, blob_reference=blob_reference)

        with self._lock:
            current = self._require(session_id)
            if current.status in TERMINAL_STATUSES:
                raise ValidationError(f"Session {session_id} is already {current.status.value}")
            end_time = utcnow()
            duration = max(0.0, (end_time - current.start_time).total_seconds())
            completed = current.model_copy(
                update={
                    "status": SessionStatus.COMPLETED,
                    "progress": 100.0,
                    "loss": result.loss,
                    "accuracy": result.accuracy,
                    "blob_reference": result.blob_reference or current.blob_reference,
                    "end_time": end_time,
                    "error": None,
                }
            )
            entry = HistoryEntry(
                session_id=session_id,
                timestamp=end_time,
                model_type=completed.model_type,
                final_loss=result.loss,
                final_accuracy=result.accuracy,
                duration=duration,
                blob_reference=completed.blob_reference,
            )

            self._store.record_completion(
                completed,
                entry,
                self._total_sessions_completed + 1,
                self._total_training_time + duration,
            )
            self._sessions[session_id] = completed
            self._history.append(entry)
            self._total_sessions_completed += 1
            self._total_training_time += duration
            if self._current_session_id == session_id:
                self._current_session_id = None

        logger.info(
            "session_completed",
            session_id=session_id,
            loss=result.loss,
            accuracy=result.accuracy,
            duration=round(duration, 3),
            blob_reference=entry.blob_reference,
        )
        return entry.model_copy()

    def fail_session(self, session_id: str, error: str) -> TrainingSession:
        """Mark a session failed, keeping its accumulated metrics."""
        with self._lock:
            current = self._require(session_id)
            failed = current.model_copy(
                update={"status": SessionStatus.FAILED, "error": error, "end_time": utcnow()}
            )
            self._store.save_session(failed)
            self._sessions[session_id] = failed
            if self._current_session_id == session_id:
                self._current_session_id = None

        logger.warning("session_failed", session_id=session_id, error=error)
        return failed.model_copy(deep=True)

    def remove_session(self, session_id: str) -> None:
        """Remove a session and its history entries. Unknown ids are ignored."""
        with self._lock:
            self._sessions.pop(session_id, None)
            self._history = [entry for entry in self._history if entry.session_id != session_id]
            if self._current_session_id == session_id:
                self._current_session_id = None
            self._store.delete_session(session_id)
        logger.info("session_removed", session_id=session_id)

    def clear_history(self) -> None:
        """Drop every session that is not in flight and all history; reset counters."""
        with self._lock:
            self._sessions = {
                session_id: session
                for session_id, session in self._sessions.items()
                if session.status in _IN_FLIGHT_STATUSES
            }
            self._history = []
            self._total_sessions_completed = 0
            self._total_training_time = 0.0
            if self._current_session_id not in self._sessions:
                self._current_session_id = None
            self._store.clear_history()
        logger.info("history_cleared")

    # Queries

    def get_session(self, session_id: str) -> TrainingSession | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def get_active_session(self) -> TrainingSession | None:
        """Return the session in training, paused or uploading status, if any."""
        with self._lock:
            for session in self._sessions.values():
                if session.status in ACTIVE_STATUSES:
                    return session.model_copy(deep=True)
        return None

    def get_recent_sessions(self, limit: int = 10) -> list[TrainingSession]:
        with self._lock:
            ordered = sorted(self._sessions.values(), key=lambda s: s.start_time, reverse=True)
            return [session.model_copy(deep=True) for session in ordered[: max(0, limit)]]

    def get_sessions_by_model_type(self, model_type: ModelType | str) -> list[TrainingSession]:
        wanted = ModelType(model_type)
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sessions.values() if s.model_type == wanted]

    def get_average_accuracy(self) -> float:
        """Mean accuracy over completed sessions, 0 when there are none."""
        return self._average("accuracy")

    def get_average_loss(self) -> float:
        """Mean loss over completed sessions, 0 when there are none."""
        return self._average("loss")

    def get_history(self) -> list[HistoryEntry]:
        with self._lock:
            return [entry.model_copy() for entry in self._history]

    def set_current_session(self, session_id: str | None) -> None:
        with self._lock:
            if session_id is not None:
                self._require(session_id)
            self._current_session_id = session_id

    def get_current_session(self) -> TrainingSession | None:
        with self._lock:
            if self._current_session_id is None:
                return None
            return self.get_session(self._current_session_id)

    @property
    def total_sessions_completed(self) -> int:
        with self._lock:
            return self._total_sessions_completed

    @property
    def total_training_time(self) -> float:
        """Accumulated duration of completed sessions, in seconds."""
        with self._lock:
            return self._total_training_time

    # Internals

    def _require(self, session_id: str) -> TrainingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Unknown training session: {session_id}")
        return session

    def _ensure_no_other_active(self, session_id: str) -> None:
        for other in self._sessions.values():
            if other.id != session_id and other.status in ACTIVE_STATUSES:
                raise ValidationError(
                    f"Session {other.id} is already {other.status.value}; only one active session is allowed"
                )

    def _average(self, field_name: str) -> float:
        with self._lock:
            values = [
                getattr(session, field_name)
                for session in self._sessions.values()
                if session.status == SessionStatus.COMPLETED
            ]
        if not values:
            return 0.0
        return float(sum(values) / len(values))
