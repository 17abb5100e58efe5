"""Session registry, backend synchronization and training orchestration."""

from __future__ import annotations

from dattrain.services.registry import SessionRegistry
from dattrain.services.session_store import InMemorySessionStore, SessionStore, SqlSessionStore
from dattrain.services.training_service import SessionOutcome, TrainingService

__all__ = [
    "SessionRegistry",
    "SessionStore",
    "InMemorySessionStore",
    "SqlSessionStore",
    "TrainingService",
    "SessionOutcome",
]
