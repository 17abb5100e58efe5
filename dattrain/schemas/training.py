"""Pydantic schemas for training sessions, events and collaborator payloads."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModelType(str, Enum):
    """Closed set of simulated model architectures."""

    MLP = "mlp"
    CNN = "cnn"
    RNN = "rnn"
    TRANSFORMER = "transformer"


class OptimizerType(str, Enum):
    """Weight update rules supported by the gradient pipeline."""

    SGD = "sgd"
    ADAM = "adam"
    RMSPROP = "rmsprop"


class SessionStatus(str, Enum):
    """Lifecycle states of a training session."""

    IDLE = "idle"
    PREPARING = "preparing"
    TRAINING = "training"
    PAUSED = "paused"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset({SessionStatus.TRAINING, SessionStatus.PAUSED, SessionStatus.UPLOADING})
TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class Hyperparameters(BaseModel):
    """Hyperparameters recorded on a session (not validated for training)."""

    epochs: int
    batch_size: int
    learning_rate: float
    optimizer: OptimizerType = OptimizerType.ADAM


class TrainingOptions(BaseModel):
    """Validated inputs of one trainer run."""

    epochs: int = Field(default=10, ge=1)
    batch_size: int = Field(default=32, ge=1)
    learning_rate: float = Field(default=0.001, gt=0)
    model_type: ModelType = ModelType.MLP
    optimizer: OptimizerType = OptimizerType.ADAM
    validation_split: float = Field(default=0.2, ge=0.0, lt=1.0)
    seed: int | None = None
    dataset_cid: str | None = None

    def hyperparameters(self) -> Hyperparameters:
        return Hyperparameters(
            epochs=self.epochs,
            batch_size=self.batch_size,
            learning_rate=self.learning_rate,
            optimizer=self.optimizer,
        )


class ProgressUpdate(BaseModel):
    """Per-batch progress event."""

    epoch: int
    batch: int
    total_batches: int
    loss: float
    accuracy: float
    learning_rate: float
    progress: float
    timestamp: datetime = Field(default_factory=utcnow)


class BatchMetrics(BaseModel):
    """Per-batch metric with the RMS norm of the batch gradient."""

    batch: int
    loss: float
    accuracy: float
    gradient_norm: float


class EpochMetrics(BaseModel):
    """Epoch-complete event."""

    epoch: int
    train_loss: float
    train_accuracy: float
    validation_loss: float | None = None
    validation_accuracy: float | None = None
    learning_rate: float
    duration: float
    timestamp: datetime = Field(default_factory=utcnow)


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel
    message: str
    data: dict[str, Any] | None = None


class TrainingSession(BaseModel):
    """Session record owned by the session registry."""

    id: str
    model_id: str
    model_type: ModelType
    status: SessionStatus = SessionStatus.IDLE
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    current_epoch: int = 0
    total_epochs: int
    loss: float = 0.0
    accuracy: float = 0.0
    hyperparameters: Hyperparameters
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    blob_reference: str | None = None
    error: str | None = None
    backend_session_id: str | None = None
    epoch_metrics: list[EpochMetrics] = Field(default_factory=list)


class HistoryEntry(BaseModel):
    """Append-only record written once per completed session."""

    session_id: str
    timestamp: datetime
    model_type: ModelType
    final_loss: float
    final_accuracy: float
    duration: float
    blob_reference: str | None = None


class SessionResult(BaseModel):
    """Final numbers handed to ``complete_session``."""

    loss: float
    accuracy: float
    blob_reference: str | None = None


class BlobUploadResult(BaseModel):
    blob_id: str
    size: int
    end_epoch: int | None = None
    method: Literal["walrus", "local"] = "local"


class BackendStatus(BaseModel):
    """Status document returned by the remote training backend."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    progress: float | dict[str, Any] | None = None
    logs: list[Any] | None = None
    epoch_metrics: list[dict[str, Any]] | None = Field(default=None, alias="epochMetrics")
    result: dict[str, Any] | None = None
    error: str | None = None
