"""SQLAlchemy model exports."""

from __future__ import annotations

from dattrain.models.training import RegistryCounters, TrainingHistoryRecord, TrainingSessionRecord

__all__ = ["TrainingSessionRecord", "TrainingHistoryRecord", "RegistryCounters"]
