"""Error taxonomy shared by the trainer, registry and network clients."""

from __future__ import annotations


class TrainingError(Exception):
    """Base class for all errors raised by dattrain."""


class ValidationError(TrainingError, ValueError):
    """Invalid hyperparameters or mismatched gradient/weight vectors."""


class CancellationError(TrainingError):
    """Raised at a loop checkpoint after the run was stopped by the user."""

    def __init__(self, message: str = "Training was cancelled") -> None:
        super().__init__(message)


class NetworkError(TrainingError):
    """A blob store or backend request could not be completed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(NetworkError):
    """The requested session or blob does not exist (yet) on the remote side."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=404)
