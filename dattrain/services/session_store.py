"""Durable storage for the session registry (terminal sessions and history only)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from dattrain.models.training import RegistryCounters, TrainingHistoryRecord, TrainingSessionRecord
from dattrain.schemas.training import (
    TERMINAL_STATUSES,
    EpochMetrics,
    HistoryEntry,
    Hyperparameters,
    TrainingSession,
)

logger = structlog.get_logger(__name__)


@dataclass
class RegistrySnapshot:
    sessions: list[TrainingSession] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    total_sessions_completed: int = 0
    total_training_time: float = 0.0


class SessionStore(ABC):
    """
    Persistence hooks called by the registry on terminal transitions.

    Only completed/failed sessions, history entries and the aggregate counters
    are handed to a store; in-flight sessions never are.
    """

    @abstractmethod
    def load(self) -> RegistrySnapshot:
        """Return everything persisted so far."""

    @abstractmethod
    def save_session(self, session: TrainingSession) -> None:
        """Upsert a terminal session."""

    @abstractmethod
    def record_completion(
        self,
        session: TrainingSession,
        entry: HistoryEntry,
        total_sessions_completed: int,
        total_training_time: float,
    ) -> None:
        """Persist a completed session, its history entry and the new counters together."""

    @abstractmethod
    def delete_session(self, session_id: str) -> None:
        """Remove a session and its history entries. Silent if absent."""

    @abstractmethod
    def clear_history(self) -> None:
        """Drop terminal sessions and history, and reset counters."""


class InMemorySessionStore(SessionStore):
    """Process-local store; the default for tests and throwaway registries."""

    def __init__(self) -> None:
        self._snapshot = RegistrySnapshot()

    def load(self) -> RegistrySnapshot:
        return RegistrySnapshot(
            sessions=[session.model_copy(deep=True) for session in self._snapshot.sessions],
            history=[entry.model_copy() for entry in self._snapshot.history],
            total_sessions_completed=self._snapshot.total_sessions_completed,
            total_training_time=self._snapshot.total_training_time,
        )

    def save_session(self, session: TrainingSession) -> None:
        if session.status not in TERMINAL_STATUSES:
            raise ValueError(f"Refusing to persist in-flight session {session.id} ({session.status.value})")
        stored = [existing for existing in self._snapshot.sessions if existing.id != session.id]
        stored.append(session.model_copy(deep=True))
        self._snapshot.sessions = stored

    def record_completion(
        self,
        session: TrainingSession,
        entry: HistoryEntry,
        total_sessions_completed: int,
        total_training_time: float,
    ) -> None:
        self.save_session(session)
        self._snapshot.history.append(entry.model_copy())
        self._snapshot.total_sessions_completed = total_sessions_completed
        self._snapshot.total_training_time = total_training_time

    def delete_session(self, session_id: str) -> None:
        self._snapshot.sessions = [s for s in self._snapshot.sessions if s.id != session_id]
        self._snapshot.history = [h for h in self._snapshot.history if h.session_id != session_id]

    def clear_history(self) -> None:
        self._snapshot = RegistrySnapshot()


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlSessionStore(SessionStore):
    """SQLAlchemy-backed store (SQLite by default)."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def load(self) -> RegistrySnapshot:
        with self._session_factory() as db:
            rows = db.scalars(select(TrainingSessionRecord).order_by(TrainingSessionRecord.start_time)).all()
            history_rows = db.scalars(select(TrainingHistoryRecord).order_by(TrainingHistoryRecord.id)).all()
            counters = db.get(RegistryCounters, 1)

            snapshot = RegistrySnapshot(
                sessions=[self._to_session(row) for row in rows],
                history=[self._to_history(row) for row in history_rows],
                total_sessions_completed=counters.total_sessions_completed if counters else 0,
                total_training_time=counters.total_training_time if counters else 0.0,
            )
        logger.debug(
            "session_store_loaded",
            sessions=len(snapshot.sessions),
            history=len(snapshot.history),
        )
        return snapshot

    def save_session(self, session: TrainingSession) -> None:
        with self._session_factory() as db:
            self._upsert(db, session)
            db.commit()

    def record_completion(
        self,
        session: TrainingSession,
        entry: HistoryEntry,
        total_sessions_completed: int,
        total_training_time: float,
    ) -> None:
        with self._session_factory() as db:
            self._upsert(db, session)
            db.add(
                TrainingHistoryRecord(
                    session_id=entry.session_id,
                    timestamp=entry.timestamp,
                    model_type=entry.model_type.value,
                    final_loss=entry.final_loss,
                    final_accuracy=entry.final_accuracy,
                    duration=entry.duration,
                    blob_reference=entry.blob_reference,
                )
            )
            counters = db.get(RegistryCounters, 1)
            if counters is None:
                counters = RegistryCounters(id=1)
                db.add(counters)
            counters.total_sessions_completed = total_sessions_completed
            counters.total_training_time = total_training_time
            db.commit()

    def delete_session(self, session_id: str) -> None:
        with self._session_factory() as db:
            db.execute(delete(TrainingHistoryRecord).where(TrainingHistoryRecord.session_id == session_id))
            db.execute(delete(TrainingSessionRecord).where(TrainingSessionRecord.id == session_id))
            db.commit()

    def clear_history(self) -> None:
        with self._session_factory() as db:
            db.execute(delete(TrainingHistoryRecord))
            db.execute(delete(TrainingSessionRecord))
            db.execute(delete(RegistryCounters))
            db.commit()

    @staticmethod
    def _upsert(db: Session, session: TrainingSession) -> None:
        if session.status not in TERMINAL_STATUSES:
            raise ValueError(f"Refusing to persist in-flight session {session.id} ({session.status.value})")
        row = db.get(TrainingSessionRecord, session.id)
        if row is None:
            row = TrainingSessionRecord(id=session.id)
            db.add(row)
        row.model_id = session.model_id
        row.model_type = session.model_type.value
        row.status = session.status.value
        row.progress = session.progress
        row.current_epoch = session.current_epoch
        row.total_epochs = session.total_epochs
        row.loss = session.loss
        row.accuracy = session.accuracy
        row.hyperparameters = session.hyperparameters.model_dump(mode="json")
        row.epoch_metrics = [metrics.model_dump(mode="json") for metrics in session.epoch_metrics]
        row.start_time = session.start_time
        row.end_time = session.end_time
        row.blob_reference = session.blob_reference
        row.backend_session_id = session.backend_session_id
        row.error = session.error[:500] if session.error else None

    @staticmethod
    def _to_session(row: TrainingSessionRecord) -> TrainingSession:
        return TrainingSession(
            id=row.id,
            model_id=row.model_id,
            model_type=row.model_type,
            status=row.status,
            progress=row.progress,
            current_epoch=row.current_epoch,
            total_epochs=row.total_epochs,
            loss=row.loss,
            accuracy=row.accuracy,
            hyperparameters=Hyperparameters.model_validate(row.hyperparameters or {}),
            start_time=_as_utc(row.start_time),
            end_time=_as_utc(row.end_time),
            blob_reference=row.blob_reference,
            backend_session_id=row.backend_session_id,
            error=row.error,
            epoch_metrics=[EpochMetrics.model_validate(item) for item in row.epoch_metrics or []],
        )

    @staticmethod
    def _to_history(row: TrainingHistoryRecord) -> HistoryEntry:
        return HistoryEntry(
            session_id=row.session_id,
            timestamp=_as_utc(row.timestamp),
            model_type=row.model_type,
            final_loss=row.final_loss,
            final_accuracy=row.final_accuracy,
            duration=row.duration,
            blob_reference=row.blob_reference,
        )
