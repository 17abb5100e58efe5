"""Service layer for the training session lifecycle, local and backend-delegated."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
import structlog

from dattrain.config import get_settings
from dattrain.errors import CancellationError, NetworkError, NotFoundError, ValidationError
from dattrain.ml.events import TrainingEventEmitter
from dattrain.ml.gradient_codec import gradients_from_bytes, gradients_to_bytes
from dattrain.ml.gradients import aggregate_gradients
from dattrain.ml.trainer import ModelTrainer, TrainingResult, coerce_options
from dattrain.schemas.training import (
    EpochMetrics,
    LogLevel,
    ProgressUpdate,
    SessionStatus,
    TrainingOptions,
    TrainingSession,
    utcnow,
)
from dattrain.services.backend_client import BackendTrainingClient
from dattrain.services.registry import SessionRegistry
from dattrain.services.sync_service import BackendSyncService
from dattrain.storage import BlobStore, get_blob_store

logger = structlog.get_logger(__name__)

TrainerFactory = Callable[[TrainingEventEmitter], ModelTrainer]


@dataclass
class SessionOutcome:
    """Final session record plus the trainer result of a local run."""

    session: TrainingSession
    result: TrainingResult


class TrainingService:
    """Creates and tracks training sessions; runs the local trainer or delegates to the backend."""

    def __init__(
        self,
        registry: SessionRegistry | None = None,
        blob_store: BlobStore | None = None,
        backend_client: BackendTrainingClient | None = None,
        sync_service: BackendSyncService | None = None,
        trainer_factory: TrainerFactory | None = None,
    ) -> None:
        settings = get_settings()
        self.registry = registry or SessionRegistry()
        self.blob_store = blob_store or get_blob_store()
        self.backend_client = backend_client or BackendTrainingClient(
            base_url=settings.backend_url,
            timeout_seconds=settings.backend_timeout_ms / 1000,
        )
        self.sync_service = sync_service or BackendSyncService(
            self.registry,
            self.backend_client,
            emitter_for=self.get_emitter,
        )
        self._trainer_factory = trainer_factory or (lambda emitter: ModelTrainer(emitter=emitter))
        self._trainers: dict[str, ModelTrainer] = {}
        self._emitters: dict[str, TrainingEventEmitter] = {}
        self._lock = threading.Lock()

    def get_emitter(self, session_id: str) -> TrainingEventEmitter:
        """Return the event emitter of a session, creating it on first use."""
        with self._lock:
            emitter = self._emitters.get(session_id)
            if emitter is None:
                emitter = TrainingEventEmitter(session_id)
                self._emitters[session_id] = emitter
            return emitter

    async def run_session(
        self,
        model_id: str,
        options: TrainingOptions | Mapping[str, Any] | None = None,
        *,
        upload: bool = True,
        on_progress: Callable[[ProgressUpdate], None] | None = None,
        on_epoch_complete: Callable[[EpochMetrics], None] | None = None,
        on_session_created: Callable[[str], None] | None = None,
    ) -> SessionOutcome:
        """
        Run one local session end to end.

        The session goes preparing -> training -> uploading -> completed. A
        stop, including one that lands during the upload, leaves it idle and
        re-raises ``CancellationError``. Cancelling the task also leaves it
        idle. Any other error marks it failed and re-raises.
        """
        try:
            config = coerce_options(options)
        except ValidationError as exc:
            self._record_rejected(model_id, options, exc)
            raise

        session_id = self.registry.create_session(model_id, config.model_type, config.hyperparameters())
        emitter = self.get_emitter(session_id)
        trainer = self._trainer_factory(emitter)
        with self._lock:
            self._trainers[session_id] = trainer
        if on_session_created is not None:
            on_session_created(session_id)

        unsubscribe = [
            emitter.on_progress(lambda update: self._on_progress(session_id, update)),
            emitter.on_epoch_complete(lambda metrics: self._on_epoch(session_id, metrics)),
        ]
        try:
            self.registry.update_session(session_id, status=SessionStatus.PREPARING)
            emitter.log(LogLevel.INFO, f"Preparing {config.model_type.value} model {model_id}")
            self.registry.update_session(session_id, status=SessionStatus.TRAINING)

            result = await trainer.start_training(config, on_progress=on_progress, on_epoch_complete=on_epoch_complete)

            blob_reference = None
            if upload:
                self.registry.update_session(session_id, status=SessionStatus.UPLOADING)
                emitter.log(LogLevel.INFO, "Uploading gradients to blob store")
                blob = await self.blob_store.upload_blob(gradients_to_bytes(result.gradients))
                if trainer.is_aborted():
                    raise CancellationError("Training stopped during upload")
                blob_reference = blob.blob_id
                emitter.log(LogLevel.SUCCESS, f"Gradients uploaded: {blob_reference}", {"size": blob.size})

            self.registry.complete_session(
                session_id,
                loss=result.metadata.final_loss,
                accuracy=result.metadata.final_accuracy,
                blob_reference=blob_reference,
            )
            return SessionOutcome(session=self.registry.get_session(session_id), result=result)

        except CancellationError:
            self.registry.update_session(session_id, status=SessionStatus.IDLE, end_time=utcnow())
            raise
        except asyncio.CancelledError:
            logger.warning("training_session_cancelled", session_id=session_id)
            self.registry.update_session(session_id, status=SessionStatus.IDLE, end_time=utcnow())
            raise
        except (ValidationError, NetworkError) as exc:
            logger.error("training_session_failed", session_id=session_id, error=str(exc))
            emitter.log(LogLevel.ERROR, f"Training failed: {exc}")
            self.registry.fail_session(session_id, str(exc))
            raise
        except Exception as exc:
            logger.exception("training_session_crashed", session_id=session_id)
            self.registry.fail_session(session_id, str(exc) or type(exc).__name__)
            raise
        finally:
            for remove in unsubscribe:
                remove()
            with self._lock:
                self._trainers.pop(session_id, None)

    def pause_session(self, session_id: str) -> TrainingSession:
        trainer = self._require_trainer(session_id)
        session = self.registry.get_session(session_id)
        if session is None or session.status != SessionStatus.TRAINING:
            raise ValidationError(f"Session {session_id} is not training")
        trainer.pause()
        self.get_emitter(session_id).log(LogLevel.WARNING, "Training paused")
        return self.registry.update_session(session_id, status=SessionStatus.PAUSED)

    def resume_session(self, session_id: str) -> TrainingSession:
        trainer = self._require_trainer(session_id)
        trainer.resume()
        session = self.registry.get_session(session_id)
        if session is not None and session.status == SessionStatus.PAUSED:
            self.get_emitter(session_id).log(LogLevel.INFO, "Training resumed")
            return self.registry.update_session(session_id, status=SessionStatus.TRAINING)
        return session

    def stop_session(self, session_id: str) -> None:
        """Abort a running local session; the run unwinds at its next checkpoint."""
        trainer = self._require_trainer(session_id)
        trainer.stop()
        self.get_emitter(session_id).log(LogLevel.WARNING, "Training stop requested")

    def remove_session(self, session_id: str) -> None:
        with self._lock:
            if session_id in self._trainers:
                raise ValidationError(f"Session {session_id} is still running")
            self._emitters.pop(session_id, None)
        self.registry.remove_session(session_id)

    async def download_gradients(self, blob_id: str) -> np.ndarray:
        return gradients_from_bytes(await self.blob_store.download_blob(blob_id))

    async def aggregate_contributions(
        self,
        blob_ids: Sequence[str],
        weights: Sequence[float] | None = None,
    ) -> np.ndarray:
        """Download contributed gradient blobs and combine them into one update vector."""
        if not blob_ids:
            raise ValidationError("No contributions to aggregate")
        vectors = await asyncio.gather(*(self.download_gradients(blob_id) for blob_id in blob_ids))
        aggregated = aggregate_gradients(list(vectors), weights)
        logger.info("contributions_aggregated", contributors=len(blob_ids), size=int(aggregated.size))
        return aggregated

    async def start_remote_session(
        self,
        model_id: str,
        options: TrainingOptions | Mapping[str, Any] | None = None,
    ) -> str:
        """Start a job on the backend and keep the local session in sync in the background."""
        config = coerce_options(options)
        session_id = self.registry.create_session(model_id, config.model_type, config.hyperparameters())
        self.registry.update_session(session_id, status=SessionStatus.PREPARING)
        emitter = self.get_emitter(session_id)

        try:
            backend_id = await self.backend_client.start(config)
        except NetworkError as exc:
            emitter.log(LogLevel.ERROR, f"Backend refused the training job: {exc}")
            self.registry.fail_session(session_id, str(exc))
            raise

        self.registry.update_session(session_id, backend_session_id=backend_id)
        emitter.log(LogLevel.INFO, f"Training delegated to backend session {backend_id}")
        self.sync_service.start_background_sync(session_id)
        return session_id

    async def pause_remote_session(self, session_id: str) -> TrainingSession:
        session = await self._forward_control(session_id, "pause")
        if session.status == SessionStatus.TRAINING:
            return self.registry.update_session(session_id, status=SessionStatus.PAUSED)
        return session

    async def resume_remote_session(self, session_id: str) -> TrainingSession:
        session = await self._forward_control(session_id, "resume")
        if session.status == SessionStatus.PAUSED:
            return self.registry.update_session(session_id, status=SessionStatus.TRAINING)
        return session

    async def stop_remote_session(self, session_id: str) -> TrainingSession:
        await self._forward_control(session_id, "stop")
        await self.sync_service.cancel(session_id)
        self.get_emitter(session_id).log(LogLevel.WARNING, "Remote training stopped")
        return self.registry.update_session(session_id, status=SessionStatus.IDLE, end_time=utcnow())

    async def close(self) -> None:
        await self.sync_service.stop_all()
        await self.backend_client.close()
        await self.blob_store.close()

    def _on_progress(self, session_id: str, update: ProgressUpdate) -> None:
        self.registry.update_session(
            session_id,
            progress=min(100.0, update.progress),
            current_epoch=update.epoch,
            loss=update.loss,
            accuracy=update.accuracy,
        )

    def _on_epoch(self, session_id: str, metrics: EpochMetrics) -> None:
        session = self.registry.get_session(session_id)
        self.registry.update_session(session_id, epoch_metrics=[*session.epoch_metrics, metrics])

    def _require_trainer(self, session_id: str) -> ModelTrainer:
        with self._lock:
            trainer = self._trainers.get(session_id)
        if trainer is None:
            raise NotFoundError(f"No running local session: {session_id}")
        return trainer

    async def _forward_control(self, session_id: str, action: str) -> TrainingSession:
        session = self.registry.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Unknown training session: {session_id}")
        if not session.backend_session_id:
            raise ValidationError(f"Session {session_id} is not delegated to the backend")
        await getattr(self.backend_client, action)(session.backend_session_id)
        return self.registry.get_session(session_id)

    def _record_rejected(
        self,
        model_id: str,
        options: TrainingOptions | Mapping[str, Any] | None,
        exc: ValidationError,
    ) -> None:
        """Keep a failed session for options that never made it to the trainer."""
        raw = options.model_dump() if isinstance(options, TrainingOptions) else dict(options or {})
        defaults = TrainingOptions()
        try:
            session_id = self.registry.create_session(
                model_id,
                raw.get("model_type", defaults.model_type),
                {
                    "epochs": raw.get("epochs", defaults.epochs),
                    "batch_size": raw.get("batch_size", defaults.batch_size),
                    "learning_rate": raw.get("learning_rate", defaults.learning_rate),
                    "optimizer": raw.get("optimizer", defaults.optimizer),
                },
            )
        except ValidationError:
            logger.warning("rejected_options_not_recorded", model_id=model_id, error=str(exc))
            return
        self.registry.fail_session(session_id, str(exc))
