"""Pydantic schema exports for sessions, events and collaborator payloads."""

from __future__ import annotations

from dattrain.schemas.training import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    BackendStatus,
    BatchMetrics,
    BlobUploadResult,
    EpochMetrics,
    HistoryEntry,
    Hyperparameters,
    LogEntry,
    LogLevel,
    ModelType,
    OptimizerType,
    ProgressUpdate,
    SessionResult,
    SessionStatus,
    TrainingOptions,
    TrainingSession,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "BackendStatus",
    "BatchMetrics",
    "BlobUploadResult",
    "EpochMetrics",
    "HistoryEntry",
    "Hyperparameters",
    "LogEntry",
    "LogLevel",
    "ModelType",
    "OptimizerType",
    "ProgressUpdate",
    "SessionResult",
    "SessionStatus",
    "TrainingOptions",
    "TrainingSession",
]
