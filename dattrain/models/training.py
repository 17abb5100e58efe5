"""SQLAlchemy models for terminal training sessions and their history."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from dattrain.database import Base


class TrainingSessionRecord(Base):
    """A session that reached ``completed`` or ``failed``."""

    __tablename__ = "training_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    model_id: Mapped[str] = mapped_column(String(128), nullable=False)
    model_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    current_epoch: Mapped[int] = mapped_column(Integer, default=0)
    total_epochs: Mapped[int] = mapped_column(Integer, default=0)
    loss: Mapped[float] = mapped_column(Float, default=0.0)
    accuracy: Mapped[float] = mapped_column(Float, default=0.0)

    hyperparameters: Mapped[dict] = mapped_column(JSON, default=dict)
    epoch_metrics: Mapped[list] = mapped_column(JSON, default=list)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    blob_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    backend_session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)


class TrainingHistoryRecord(Base):
    """Append-only history entry of a completed session."""

    __tablename__ = "training_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    model_type: Mapped[str] = mapped_column(String(32), nullable=False)
    final_loss: Mapped[float] = mapped_column(Float, nullable=False)
    final_accuracy: Mapped[float] = mapped_column(Float, nullable=False)
    duration: Mapped[float] = mapped_column(Float, nullable=False)
    blob_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)


class RegistryCounters(Base):
    """Single-row aggregate counters kept across history removals."""

    __tablename__ = "registry_counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    total_sessions_completed: Mapped[int] = mapped_column(Integer, default=0)
    total_training_time: Mapped[float] = mapped_column(Float, default=0.0)
