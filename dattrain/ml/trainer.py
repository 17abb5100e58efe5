"""Simulated epoch/batch training loop with synthetic loss and accuracy curves."""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np
import structlog
from pydantic import ValidationError as PydanticValidationError

from dattrain.config import get_settings
from dattrain.errors import CancellationError, ValidationError
from dattrain.ml.controller import TrainingController
from dattrain.ml.events import TrainingEventEmitter
from dattrain.ml.gradients import (
    VECTOR_DTYPE,
    gradient_norm,
    initialize_biases,
    initialize_weights,
    update_weights,
)
from dattrain.schemas.training import (
    BatchMetrics,
    EpochMetrics,
    LogLevel,
    ModelType,
    OptimizerType,
    ProgressUpdate,
    TrainingOptions,
)

logger = structlog.get_logger(__name__)

MIN_LOSS = 0.001
BASE_LOSS = 2.0
LOSS_DECAY = 3.5
LOSS_NOISE_SCALE = 0.05
BASE_ACCURACY = 0.3
MIN_ACCURACY = 0.25
ACCURACY_NOISE = 0.02
VALIDATION_LEARNING_RATE = 0.001
VALIDATION_LOSS_FACTOR = 1.1
VALIDATION_ACCURACY_FACTOR = 0.95
BIAS_RATIO = 10


@dataclass(frozen=True)
class ModelProfile:
    parameter_count: int
    convergence_rate: float
    max_accuracy: float


MODEL_PROFILES: dict[ModelType, ModelProfile] = {
    ModelType.MLP: ModelProfile(parameter_count=1024, convergence_rate=4.0, max_accuracy=0.95),
    ModelType.CNN: ModelProfile(parameter_count=4096, convergence_rate=4.5, max_accuracy=0.96),
    ModelType.RNN: ModelProfile(parameter_count=2048, convergence_rate=3.5, max_accuracy=0.94),
    ModelType.TRANSFORMER: ModelProfile(parameter_count=8192, convergence_rate=5.0, max_accuracy=0.97),
}

# Adam narrows the curve, SGD widens it.
OPTIMIZER_LOSS_FACTORS: dict[OptimizerType, float] = {
    OptimizerType.ADAM: 0.9,
    OptimizerType.SGD: 1.1,
    OptimizerType.RMSPROP: 1.0,
}


class LearningRateScheduler:
    """Step decay: ``initial_rate * decay_rate ** floor(epoch / decay_steps)``."""

    def __init__(self, initial_rate: float, decay_rate: float = 0.95, decay_steps: int = 1) -> None:
        self.initial_rate = initial_rate
        self.decay_rate = decay_rate
        self.decay_steps = max(1, int(decay_steps))

    def rate(self, epoch: int) -> float:
        return self.initial_rate * self.decay_rate ** (epoch // self.decay_steps)


@dataclass
class ValidationHistory:
    loss: list[float]
    accuracy: list[float]


@dataclass
class TrainingResultMetadata:
    model_type: ModelType
    optimizer: OptimizerType
    total_epochs: int
    batch_size: int
    learning_rate: float
    total_duration: float
    average_batch_time: float
    final_loss: float
    final_accuracy: float
    best_validation_accuracy: float | None = None


@dataclass
class TrainingResult:
    """Everything a completed run produced."""

    gradients: np.ndarray
    weights: np.ndarray
    biases: np.ndarray
    loss_history: list[float]
    accuracy_history: list[float]
    validation_history: ValidationHistory | None
    epoch_metrics: list[EpochMetrics]
    metadata: TrainingResultMetadata


def compute_loss(
    progress: float,
    learning_rate: float,
    optimizer: OptimizerType,
    rng: np.random.Generator,
) -> float:
    """Exponentially decaying loss with optimizer factor and learning-rate scaled noise."""
    base_loss = BASE_LOSS * math.exp(-LOSS_DECAY * progress) * OPTIMIZER_LOSS_FACTORS[optimizer]
    noise = (rng.random() - 0.5) * LOSS_NOISE_SCALE * learning_rate * 100
    return max(MIN_LOSS, base_loss + noise)


def compute_accuracy(progress: float, profile: ModelProfile, rng: np.random.Generator) -> float:
    """Saturating accuracy curve clamped to ``[0.25, max_accuracy]``."""
    ceiling = profile.max_accuracy
    base_accuracy = BASE_ACCURACY + (ceiling - BASE_ACCURACY) * (1 - math.exp(-profile.convergence_rate * progress))
    noise = (rng.random() - 0.5) * ACCURACY_NOISE
    return min(ceiling, max(MIN_ACCURACY, base_accuracy + noise))


def coerce_options(options: TrainingOptions | Mapping[str, Any] | None) -> TrainingOptions:
    """Validate trainer inputs, raising :class:`ValidationError` on bad values."""
    raw = options.model_dump() if isinstance(options, TrainingOptions) else dict(options or {})
    try:
        return TrainingOptions.model_validate(raw)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise ValidationError(f"Invalid training options: {problems}") from exc


class ModelTrainer:
    """Drive the simulated epoch/batch loop for one session at a time."""

    def __init__(
        self,
        *,
        simulated_sample_count: int | None = None,
        batch_delay: float | None = None,
        validation_delay: float | None = None,
        decay_rate: float | None = None,
        decay_steps: int | None = None,
        emitter: TrainingEventEmitter | None = None,
    ) -> None:
        settings = get_settings()
        self.simulated_sample_count = simulated_sample_count or settings.simulated_sample_count
        self.batch_delay = settings.batch_delay_ms / 1000 if batch_delay is None else batch_delay
        self.validation_delay = settings.validation_delay_ms / 1000 if validation_delay is None else validation_delay
        self.decay_rate = settings.lr_decay_rate if decay_rate is None else decay_rate
        self.decay_steps = settings.lr_decay_steps if decay_steps is None else decay_steps
        self.emitter = emitter or TrainingEventEmitter()
        self.controller = TrainingController()

    def total_batches(self, options: TrainingOptions) -> int:
        train_samples = max(1, math.floor(self.simulated_sample_count * (1 - options.validation_split)))
        return math.ceil(train_samples / options.batch_size)

    async def start_training(
        self,
        options: TrainingOptions | Mapping[str, Any] | None = None,
        on_progress: Callable[[ProgressUpdate], None] | None = None,
        on_epoch_complete: Callable[[EpochMetrics], None] | None = None,
        on_batch_complete: Callable[[BatchMetrics], None] | None = None,
    ) -> TrainingResult:
        """
        Run the training loop to completion.

        Args:
            options: Hyperparameters, model type and optimizer (validated here)
            on_progress: Optional per-batch progress callback
            on_epoch_complete: Optional per-epoch metrics callback
            on_batch_complete: Optional per-batch metric callback with gradient norm

        Returns:
            Final gradients, weights, biases, histories and metadata

        Raises:
            ValidationError: If options are invalid
            CancellationError: If ``stop()`` was called before the loop finished
        """
        config = coerce_options(options)
        self.controller.reset()

        unsubscribe = []
        if on_progress is not None:
            unsubscribe.append(self.emitter.on_progress(on_progress))
        if on_epoch_complete is not None:
            unsubscribe.append(self.emitter.on_epoch_complete(on_epoch_complete))
        if on_batch_complete is not None:
            unsubscribe.append(self.emitter.on_batch_complete(on_batch_complete))

        try:
            return await self._run(config)
        except CancellationError:
            logger.info("training_cancelled", session_id=self.emitter.session_id)
            self.emitter.log(LogLevel.WARNING, "Training was cancelled")
            raise
        finally:
            for remove in unsubscribe:
                remove()

    async def _run(self, config: TrainingOptions) -> TrainingResult:
        rng = np.random.default_rng(config.seed)
        profile = MODEL_PROFILES[config.model_type]
        scheduler = LearningRateScheduler(config.learning_rate, self.decay_rate, self.decay_steps)
        total_batches = self.total_batches(config)

        weights = initialize_weights(profile.parameter_count, rng)
        biases = initialize_biases(profile.parameter_count // BIAS_RATIO, rng)
        gradients = np.zeros(profile.parameter_count, dtype=VECTOR_DTYPE)

        loss_history: list[float] = []
        accuracy_history: list[float] = []
        validation_loss: list[float] = []
        validation_accuracy: list[float] = []
        epoch_metrics: list[EpochMetrics] = []
        batch_durations: list[float] = []

        logger.info(
            "starting_training",
            session_id=self.emitter.session_id,
            model_type=config.model_type.value,
            epochs=config.epochs,
            batch_size=config.batch_size,
            learning_rate=config.learning_rate,
            optimizer=config.optimizer.value,
            total_batches=total_batches,
        )
        self.emitter.log(
            LogLevel.INFO,
            f"Configuration: {config.epochs} epochs, batch size {config.batch_size}, LR {config.learning_rate}",
        )
        started = time.perf_counter()

        for epoch in range(1, config.epochs + 1):
            epoch_started = time.perf_counter()
            current_lr = scheduler.rate(epoch)
            epoch_loss = 0.0
            epoch_accuracy = 0.0

            for batch in range(1, total_batches + 1):
                await self._checkpoint()
                batch_started = time.perf_counter()
                await asyncio.sleep(self.batch_delay)
                await self._checkpoint()

                overall_progress = (epoch - 1 + batch / total_batches) / config.epochs
                batch_loss = compute_loss(overall_progress, current_lr, config.optimizer, rng)
                batch_accuracy = compute_accuracy(overall_progress, profile, rng)
                epoch_loss += batch_loss
                epoch_accuracy += batch_accuracy

                raw_gradients = rng.uniform(-1.0, 1.0, profile.parameter_count) * batch_loss
                weights = update_weights(weights, raw_gradients, config.optimizer, current_lr)
                gradients = (raw_gradients * current_lr).astype(VECTOR_DTYPE)
                batch_durations.append(time.perf_counter() - batch_started)

                self.emitter.emit_batch_complete(
                    BatchMetrics(
                        batch=batch,
                        loss=batch_loss,
                        accuracy=batch_accuracy,
                        gradient_norm=gradient_norm(gradients),
                    )
                )
                self.emitter.emit_progress(
                    ProgressUpdate(
                        epoch=epoch,
                        batch=batch,
                        total_batches=total_batches,
                        loss=batch_loss,
                        accuracy=batch_accuracy,
                        learning_rate=current_lr,
                        progress=overall_progress * 100,
                    )
                )

            avg_loss = epoch_loss / total_batches
            avg_accuracy = epoch_accuracy / total_batches
            loss_history.append(avg_loss)
            accuracy_history.append(avg_accuracy)

            val_loss: float | None = None
            val_accuracy: float | None = None
            if config.validation_split > 0:
                val_loss, val_accuracy = await self._validate(epoch, config.epochs, profile, rng)
                validation_loss.append(val_loss)
                validation_accuracy.append(val_accuracy)

            metrics = EpochMetrics(
                epoch=epoch,
                train_loss=avg_loss,
                train_accuracy=avg_accuracy,
                validation_loss=val_loss,
                validation_accuracy=val_accuracy,
                learning_rate=current_lr,
                duration=time.perf_counter() - epoch_started,
            )
            epoch_metrics.append(metrics)
            self.emitter.emit_epoch_complete(metrics)
            self.emitter.log(
                LogLevel.INFO,
                f"Epoch {epoch}/{config.epochs} complete - loss {avg_loss:.4f}, accuracy {avg_accuracy * 100:.2f}%",
            )

        total_duration = time.perf_counter() - started
        logger.info(
            "training_complete",
            session_id=self.emitter.session_id,
            num_epochs=len(epoch_metrics),
            final_loss=loss_history[-1],
            final_accuracy=accuracy_history[-1],
            duration_sec=round(total_duration, 3),
        )
        self.emitter.log(LogLevel.SUCCESS, f"Training completed in {total_duration:.2f}s")

        return TrainingResult(
            gradients=gradients,
            weights=weights,
            biases=biases,
            loss_history=loss_history,
            accuracy_history=accuracy_history,
            validation_history=(
                ValidationHistory(loss=validation_loss, accuracy=validation_accuracy)
                if config.validation_split > 0
                else None
            ),
            epoch_metrics=epoch_metrics,
            metadata=TrainingResultMetadata(
                model_type=config.model_type,
                optimizer=config.optimizer,
                total_epochs=config.epochs,
                batch_size=config.batch_size,
                learning_rate=config.learning_rate,
                total_duration=total_duration,
                average_batch_time=sum(batch_durations) / len(batch_durations),
                final_loss=loss_history[-1],
                final_accuracy=accuracy_history[-1],
                best_validation_accuracy=max(validation_accuracy) if validation_accuracy else None,
            ),
        )

    async def _validate(
        self,
        epoch: int,
        total_epochs: int,
        profile: ModelProfile,
        rng: np.random.Generator,
    ) -> tuple[float, float]:
        """Synthesize held-out metrics, slightly worse than training."""
        await asyncio.sleep(self.validation_delay)
        await self._checkpoint()
        progress = epoch / total_epochs
        loss = compute_loss(progress, VALIDATION_LEARNING_RATE, OptimizerType.ADAM, rng) * VALIDATION_LOSS_FACTOR
        accuracy = compute_accuracy(progress, profile, rng) * VALIDATION_ACCURACY_FACTOR
        return loss, accuracy

    async def _checkpoint(self) -> None:
        self._check_abort()
        await self.controller.wait_if_paused()
        self._check_abort()

    def _check_abort(self) -> None:
        if self.controller.aborted:
            raise CancellationError()

    def pause(self) -> None:
        self.controller.pause()
        logger.info("training_paused", session_id=self.emitter.session_id)

    def resume(self) -> None:
        self.controller.resume()
        logger.info("training_resumed", session_id=self.emitter.session_id)

    def stop(self) -> None:
        self.controller.abort()
        logger.info("training_stopped", session_id=self.emitter.session_id)

    def is_paused(self) -> bool:
        return self.controller.paused

    def is_aborted(self) -> bool:
        return self.controller.aborted
