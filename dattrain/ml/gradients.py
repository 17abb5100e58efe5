"""
Toy gradient pipeline used by the simulated trainer.

Weight initialization, optimizer update rules and (optionally weighted)
aggregation of gradients contributed by several participants. The forward
pass, gradient and evaluation helpers are deliberately simplified: they exist
to produce vectors to aggregate and apply, not to learn anything.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np
import structlog

from dattrain.errors import ValidationError
from dattrain.schemas.training import OptimizerType, TrainingOptions

logger = structlog.get_logger(__name__)

VECTOR_DTYPE = np.float32
EPSILON = 1e-8
ADAM_BETA1 = 0.9
ADAM_BETA2 = 0.999
RMSPROP_DECAY = 0.9
BIAS_INIT_SCALE = 0.01

ArrayLike = Sequence[float] | np.ndarray


@dataclass(frozen=True)
class ModelMetadata:
    accuracy: float | None = None
    loss: float | None = None
    epoch: int | None = None
    timestamp: float | None = None


@dataclass(frozen=True)
class ModelState:
    """Immutable weights snapshot; every update yields a new instance."""

    weights: np.ndarray
    shape: tuple[int, ...]
    version: int = 0
    metadata: ModelMetadata = field(default_factory=ModelMetadata)

    def __post_init__(self) -> None:
        weights = np.array(self.weights, dtype=VECTOR_DTYPE).ravel()
        weights.setflags(write=False)
        object.__setattr__(self, "weights", weights)
        object.__setattr__(self, "shape", tuple(int(dim) for dim in self.shape))


@dataclass(frozen=True)
class GradientSet:
    """One contributor's gradient vector with an optional aggregation weight."""

    values: np.ndarray
    weight: float | None = None


@dataclass(frozen=True)
class Evaluation:
    loss: float
    accuracy: float


@dataclass(frozen=True)
class ModelProgress:
    epoch: int
    loss: float
    accuracy: float
    timestamp: float


def as_vector(values: ArrayLike) -> np.ndarray:
    """Return a flat float32 copy of ``values``."""
    return np.array(values, dtype=VECTOR_DTYPE).ravel()


def _resolve_optimizer(optimizer: OptimizerType | str) -> OptimizerType:
    try:
        return OptimizerType(optimizer)
    except ValueError as exc:
        raise ValidationError(f"Unknown optimizer: {optimizer!r}") from exc


def initialize_weights(size: int, rng: np.random.Generator | None = None) -> np.ndarray:
    """Xavier-style uniform initialization in ``[-sqrt(2/size), sqrt(2/size)]``."""
    if size < 1:
        raise ValidationError(f"Model size must be positive, got {size}")
    rng = rng or np.random.default_rng()
    scale = math.sqrt(2.0 / size)
    return rng.uniform(-scale, scale, size).astype(VECTOR_DTYPE)


def initialize_biases(size: int, rng: np.random.Generator | None = None) -> np.ndarray:
    """Small uniform biases around zero."""
    rng = rng or np.random.default_rng()
    return rng.uniform(-BIAS_INIT_SCALE, BIAS_INIT_SCALE, max(0, size)).astype(VECTOR_DTYPE)


def create_empty_model(size: int = 256, rng: np.random.Generator | None = None) -> ModelState:
    """Create a version-0 model with Xavier-initialized weights."""
    return ModelState(
        weights=initialize_weights(size, rng),
        shape=(size,),
        version=0,
        metadata=ModelMetadata(accuracy=0.0, loss=0.0, epoch=0, timestamp=time.time()),
    )


def update_weights(
    weights: ArrayLike,
    gradients: ArrayLike,
    optimizer: OptimizerType | str,
    learning_rate: float,
    cache: ArrayLike | None = None,
) -> np.ndarray:
    """
    Apply one optimizer step elementwise and return the new weight vector.

    Inputs are never modified. The Adam and RMSProp moments start from zero on
    every call unless an RMSProp ``cache`` from a previous step is supplied.

    Raises:
        ValidationError: If the vectors differ in length or the optimizer is unknown.
    """
    w = np.asarray(weights, dtype=np.float64).ravel()
    g = np.asarray(gradients, dtype=np.float64).ravel()
    if w.shape != g.shape:
        raise ValidationError(f"Weight/gradient size mismatch: {w.size} vs {g.size}")

    kind = _resolve_optimizer(optimizer)
    if kind is OptimizerType.ADAM:
        m = ADAM_BETA1 * 0.0 + (1.0 - ADAM_BETA1) * g
        v = ADAM_BETA2 * 0.0 + (1.0 - ADAM_BETA2) * g * g
        updated = w - learning_rate * m / (np.sqrt(v) + EPSILON)
    elif kind is OptimizerType.RMSPROP:
        previous = np.zeros_like(g) if cache is None else np.asarray(cache, dtype=np.float64).ravel()
        if previous.shape != g.shape:
            raise ValidationError(f"RMSProp cache size mismatch: {previous.size} vs {g.size}")
        moment = RMSPROP_DECAY * previous + (1.0 - RMSPROP_DECAY) * g * g
        updated = w - learning_rate * g / (np.sqrt(moment) + EPSILON)
    else:
        updated = w - learning_rate * g
    return updated.astype(VECTOR_DTYPE)


def update_model(
    model: ModelState,
    gradients: ArrayLike,
    optimizer: OptimizerType | str = OptimizerType.SGD,
    learning_rate: float = 0.01,
) -> ModelState:
    """Return a new model state with updated weights and ``version + 1``."""
    new_weights = update_weights(model.weights, gradients, optimizer, learning_rate)
    metadata = ModelMetadata(
        accuracy=model.metadata.accuracy,
        loss=model.metadata.loss,
        epoch=model.metadata.epoch,
        timestamp=time.time(),
    )
    return ModelState(weights=new_weights, shape=model.shape, version=model.version + 1, metadata=metadata)


def aggregate_gradients(
    gradient_sets: Sequence[ArrayLike | GradientSet],
    weights: Sequence[float] | None = None,
) -> np.ndarray:
    """
    Weighted elementwise sum of gradient vectors (federated averaging).

    Explicit ``weights`` (or the per-set weights of ``GradientSet`` inputs when
    every set carries one) are normalized to sum to 1; otherwise each set gets
    ``1/N``.

    Raises:
        ValidationError: On empty input, mismatched lengths or unusable weights.
    """
    if len(gradient_sets) == 0:
        raise ValidationError("No gradients to aggregate")

    vectors: list[np.ndarray] = []
    set_weights: list[float | None] = []
    for item in gradient_sets:
        if isinstance(item, GradientSet):
            vectors.append(np.asarray(item.values, dtype=np.float64).ravel())
            set_weights.append(item.weight)
        else:
            vectors.append(np.asarray(item, dtype=np.float64).ravel())
            set_weights.append(None)

    size = vectors[0].size
    for index, vector in enumerate(vectors):
        if vector.size != size:
            raise ValidationError(f"Gradient {index} has incompatible size: {vector.size} vs {size}")

    if weights is None and all(weight is not None for weight in set_weights):
        weights = [float(weight) for weight in set_weights]  # type: ignore[arg-type]

    if weights is None:
        normalized = np.full(len(vectors), 1.0 / len(vectors))
    else:
        raw = np.asarray(weights, dtype=np.float64).ravel()
        if raw.size != len(vectors):
            raise ValidationError(f"Expected {len(vectors)} aggregation weights, got {raw.size}")
        if np.any(raw < 0) or not np.isfinite(raw).all():
            raise ValidationError("Aggregation weights must be finite and non-negative")
        total = float(raw.sum())
        if total <= 0:
            raise ValidationError("Aggregation weights must not sum to zero")
        normalized = raw / total

    stacked = np.stack(vectors)
    aggregated = normalized @ stacked
    logger.debug("gradients_aggregated", contributors=len(vectors), size=size)
    return aggregated.astype(VECTOR_DTYPE)


def gradient_norm(gradients: ArrayLike) -> float:
    """Root-mean-square magnitude of a gradient vector."""
    g = np.asarray(gradients, dtype=np.float64).ravel()
    if g.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(g * g)))


def forward(model: ModelState, inputs: ArrayLike) -> np.ndarray:
    """Truncated dot product through a sigmoid, repeated over at most 10 outputs."""
    x = np.asarray(inputs, dtype=np.float64).ravel()
    width = min(x.size, model.weights.size)
    activation = float(np.dot(x[:width], model.weights[:width].astype(np.float64)))
    output_count = min(x.size, 10)
    return np.full(output_count, 0.5 * (1.0 + math.tanh(activation / 2.0)), dtype=np.float64)


def compute_gradient(model: ModelState, inputs: ArrayLike, labels: ArrayLike) -> np.ndarray:
    """Mean-squared-error residual spread across the weight vector."""
    x = np.asarray(inputs, dtype=np.float64).ravel()
    y = np.asarray(labels, dtype=np.float64).ravel()
    if x.size == 0:
        raise ValidationError("Cannot compute a gradient from an empty input")
    predictions = forward(model, x)
    if y.size < predictions.size:
        raise ValidationError(f"Expected at least {predictions.size} labels, got {y.size}")

    diff = predictions - y[: predictions.size]
    index = np.minimum(np.arange(model.weights.size), diff.size - 1)
    return (diff[index] / x.size).astype(VECTOR_DTYPE)


def evaluate_model(
    model: ModelState,
    test_inputs: Sequence[ArrayLike],
    test_labels: Sequence[ArrayLike],
) -> Evaluation:
    """MSE loss and accuracy (percent of samples whose first output is within 0.1)."""
    if len(test_inputs) == 0:
        raise ValidationError("Cannot evaluate on an empty dataset")
    if len(test_inputs) != len(test_labels):
        raise ValidationError("inputs and labels must have the same length")

    total_loss = 0.0
    correct = 0
    for inputs, labels in zip(test_inputs, test_labels):
        predictions = forward(model, inputs)
        y = np.asarray(labels, dtype=np.float64).ravel()
        width = min(predictions.size, y.size)
        diff = predictions[:width] - y[:width]
        total_loss += float(np.sum(diff * diff)) / max(1, predictions.size)
        if predictions.size and y.size and abs(predictions[0] - y[0]) < 0.1:
            correct += 1

    return Evaluation(
        loss=total_loss / len(test_inputs),
        accuracy=correct / len(test_inputs) * 100.0,
    )


def train_model(
    model: ModelState,
    train_inputs: Sequence[ArrayLike],
    train_labels: Sequence[ArrayLike],
    config: TrainingOptions,
    on_progress: Callable[[ModelProgress], None] | None = None,
) -> ModelState:
    """Run the toy forward/gradient/aggregate/update loop for ``config.epochs`` epochs."""
    if len(train_inputs) != len(train_labels):
        raise ValidationError("inputs and labels must have the same length")

    current = model
    for epoch in range(1, config.epochs + 1):
        for start in range(0, len(train_inputs), config.batch_size):
            batch_inputs = train_inputs[start : start + config.batch_size]
            batch_labels = train_labels[start : start + config.batch_size]
            batch_gradients = [
                compute_gradient(current, inputs, labels) for inputs, labels in zip(batch_inputs, batch_labels)
            ]
            aggregated = aggregate_gradients(batch_gradients)
            current = update_model(current, aggregated, config.optimizer, config.learning_rate)

        evaluation = evaluate_model(current, train_inputs, train_labels)
        timestamp = time.time()
        current = ModelState(
            weights=current.weights,
            shape=current.shape,
            version=current.version,
            metadata=ModelMetadata(
                accuracy=evaluation.accuracy,
                loss=evaluation.loss,
                epoch=epoch,
                timestamp=timestamp,
            ),
        )
        if on_progress is not None:
            on_progress(
                ModelProgress(epoch=epoch, loss=evaluation.loss, accuracy=evaluation.accuracy, timestamp=timestamp)
            )
        logger.debug("toy_model_epoch", epoch=epoch, loss=evaluation.loss, accuracy=evaluation.accuracy)

    return current
