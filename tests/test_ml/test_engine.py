"""Simulated trainer loop: metrics, schedule, pause and cancellation."""

from __future__ import annotations

import asyncio
import time

import numpy as np
import pytest

from dattrain.errors import CancellationError, ValidationError
from dattrain.ml.events import TrainingEventEmitter
from dattrain.ml.trainer import (
    MODEL_PROFILES,
    LearningRateScheduler,
    ModelTrainer,
    compute_accuracy,
    compute_loss,
)
from dattrain.schemas.training import ModelType, OptimizerType, TrainingOptions


def _trainer(**kwargs) -> ModelTrainer:
    kwargs.setdefault("batch_delay", 0.0)
    kwargs.setdefault("validation_delay", 0.0)
    return ModelTrainer(**kwargs)


def test_learning_rate_schedule_steps_down() -> None:
    scheduler = LearningRateScheduler(0.1, decay_rate=0.5, decay_steps=2)

    assert scheduler.rate(0) == pytest.approx(0.1)
    assert scheduler.rate(1) == pytest.approx(0.1)
    assert scheduler.rate(2) == pytest.approx(0.05)
    assert scheduler.rate(5) == pytest.approx(0.025)


def test_loss_curve_without_noise_follows_optimizer_factor() -> None:
    rng = np.random.default_rng(0)

    assert compute_loss(0.0, 0.0, OptimizerType.SGD, rng) == pytest.approx(2.2)
    assert compute_loss(0.0, 0.0, OptimizerType.ADAM, rng) == pytest.approx(1.8)
    assert compute_loss(0.0, 0.0, OptimizerType.RMSPROP, rng) == pytest.approx(2.0)
    assert compute_loss(10.0, 0.0, OptimizerType.SGD, rng) == pytest.approx(0.001)


def test_accuracy_is_clamped_to_profile_ceiling() -> None:
    rng = np.random.default_rng(0)
    for model_type, profile in MODEL_PROFILES.items():
        values = [compute_accuracy(p / 10, profile, rng) for p in range(11)]
        assert all(0.25 <= value <= profile.max_accuracy for value in values), model_type


def test_model_profiles_order_transformer_first_rnn_last() -> None:
    transformer = MODEL_PROFILES[ModelType.TRANSFORMER]
    rnn = MODEL_PROFILES[ModelType.RNN]

    assert MODEL_PROFILES[ModelType.MLP].parameter_count == 1024
    assert MODEL_PROFILES[ModelType.CNN].parameter_count == 4096
    assert rnn.parameter_count == 2048
    assert transformer.parameter_count == 8192
    assert transformer.convergence_rate == max(p.convergence_rate for p in MODEL_PROFILES.values())
    assert transformer.max_accuracy == max(p.max_accuracy for p in MODEL_PROFILES.values())
    assert rnn.convergence_rate == min(p.convergence_rate for p in MODEL_PROFILES.values())


def test_total_batches_uses_training_share_of_samples() -> None:
    trainer = _trainer(simulated_sample_count=1000)

    assert trainer.total_batches(TrainingOptions(batch_size=32, validation_split=0.2)) == 25
    assert trainer.total_batches(TrainingOptions(batch_size=5000, validation_split=0.0)) == 1


@pytest.mark.asyncio
async def test_two_epoch_sgd_run_produces_full_result() -> None:
    trainer = _trainer()

    result = await trainer.start_training(
        {"epochs": 2, "batch_size": 32, "model_type": "mlp", "learning_rate": 0.01, "optimizer": "sgd"}
    )

    assert len(result.epoch_metrics) == 2
    assert result.metadata.total_epochs == 2
    assert len(result.gradients) == len(result.weights) == 1024
    assert len(result.biases) == 102
    assert len(result.loss_history) == len(result.accuracy_history) == 2
    assert result.validation_history is not None
    assert len(result.validation_history.accuracy) == 2
    assert result.metadata.final_loss == result.loss_history[-1]
    assert result.metadata.best_validation_accuracy == max(result.validation_history.accuracy)


@pytest.mark.asyncio
async def test_epoch_events_strictly_increase() -> None:
    trainer = _trainer()
    epochs: list[int] = []

    await trainer.start_training(
        TrainingOptions(epochs=4, batch_size=250),
        on_epoch_complete=lambda metrics: epochs.append(metrics.epoch),
    )

    assert epochs == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_progress_reports_decayed_learning_rate_and_percent() -> None:
    trainer = _trainer(decay_rate=0.5, decay_steps=1)
    updates = []

    await trainer.start_training(
        TrainingOptions(epochs=2, batch_size=400, learning_rate=0.1, validation_split=0.2),
        on_progress=updates.append,
    )

    assert [(u.epoch, u.batch, u.total_batches) for u in updates] == [(1, 1, 2), (1, 2, 2), (2, 1, 2), (2, 2, 2)]
    assert updates[0].learning_rate == pytest.approx(0.05)
    assert updates[-1].learning_rate == pytest.approx(0.025)
    assert updates[-1].progress == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_no_validation_split_skips_validation() -> None:
    trainer = _trainer()

    result = await trainer.start_training(TrainingOptions(epochs=1, batch_size=500, validation_split=0.0))

    assert result.validation_history is None
    assert result.epoch_metrics[0].validation_loss is None
    assert result.metadata.best_validation_accuracy is None


@pytest.mark.asyncio
async def test_seed_makes_runs_reproducible() -> None:
    options = TrainingOptions(epochs=2, batch_size=200, seed=42, model_type=ModelType.CNN)

    first = await _trainer().start_training(options)
    second = await _trainer().start_training(options)

    assert first.loss_history == second.loss_history
    np.testing.assert_array_equal(first.weights, second.weights)


@pytest.mark.asyncio
async def test_batch_callback_reports_gradient_norm() -> None:
    trainer = _trainer()
    batches = []

    await trainer.start_training(TrainingOptions(epochs=1, batch_size=400), on_batch_complete=batches.append)

    assert [b.batch for b in batches] == [1, 2]
    assert all(b.gradient_norm > 0 for b in batches)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "options",
    [
        {"epochs": 0},
        {"batch_size": 0},
        {"learning_rate": 0},
        {"validation_split": 1.0},
        {"model_type": "gan"},
        {"optimizer": "adagrad"},
    ],
)
async def test_invalid_options_raise_validation_error(options) -> None:
    with pytest.raises(ValidationError):
        await _trainer().start_training(options)


@pytest.mark.asyncio
async def test_pause_suppresses_progress_until_resume() -> None:
    trainer = _trainer(batch_delay=0.001)
    loop = asyncio.get_running_loop()
    stamps: list[float] = []
    window: dict[str, float] = {}

    def resume() -> None:
        window["end"] = time.monotonic()
        trainer.resume()

    def on_progress(_update) -> None:
        stamps.append(time.monotonic())
        if len(stamps) == 3:
            trainer.pause()
            window["start"] = time.monotonic()
            loop.call_later(0.1, resume)

    await trainer.start_training(TrainingOptions(epochs=1, batch_size=100), on_progress=on_progress)

    assert len(stamps) == 8
    assert all(stamp <= window["start"] or stamp >= window["end"] for stamp in stamps)
    assert stamps[3] - stamps[2] >= 0.09
    assert trainer.is_paused() is False


@pytest.mark.asyncio
async def test_stop_unwinds_without_further_events() -> None:
    trainer = _trainer(batch_delay=0.001)
    progress = []
    epochs = []

    def on_progress(update) -> None:
        progress.append(update)
        if len(progress) == 2:
            trainer.stop()

    with pytest.raises(CancellationError):
        await trainer.start_training(
            TrainingOptions(epochs=3, batch_size=100),
            on_progress=on_progress,
            on_epoch_complete=epochs.append,
        )

    assert len(progress) == 2
    assert epochs == []
    assert trainer.is_aborted() is True


@pytest.mark.asyncio
async def test_stop_while_paused_cancels_instead_of_hanging() -> None:
    trainer = _trainer(batch_delay=0.001)
    loop = asyncio.get_running_loop()
    progress = []

    def on_progress(update) -> None:
        progress.append(update)
        if len(progress) == 1:
            trainer.pause()
            loop.call_later(0.02, trainer.stop)

    with pytest.raises(CancellationError):
        await asyncio.wait_for(
            trainer.start_training(TrainingOptions(epochs=1, batch_size=100), on_progress=on_progress),
            timeout=2,
        )

    assert len(progress) == 1


@pytest.mark.asyncio
async def test_run_callbacks_are_detached_after_completion() -> None:
    emitter = TrainingEventEmitter("session-x")
    trainer = _trainer(emitter=emitter)
    seen = []

    await trainer.start_training(TrainingOptions(epochs=1, batch_size=500), on_progress=seen.append)
    count = len(seen)
    await trainer.start_training(TrainingOptions(epochs=1, batch_size=500))

    assert count == 2
    assert len(seen) == count
