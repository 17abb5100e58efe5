"""Binary encoding and summaries of gradient vectors for blob upload and display."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import numpy as np
import structlog

from dattrain.errors import ValidationError
from dattrain.ml.gradients import ArrayLike

logger = structlog.get_logger(__name__)

WIRE_DTYPE = np.dtype("<f4")
PREVIEW_LENGTH = 20
SUMMARY_DECIMALS = 6


def gradients_to_bytes(gradients: ArrayLike) -> bytes:
    """Serialize a gradient vector as little-endian float32."""
    payload = np.asarray(gradients, dtype=WIRE_DTYPE).ravel().tobytes()
    logger.debug("gradients_encoded", values=len(payload) // WIRE_DTYPE.itemsize, size=len(payload))
    return payload


def gradients_from_bytes(data: bytes) -> np.ndarray:
    """Inverse of :func:`gradients_to_bytes`."""
    if len(data) % WIRE_DTYPE.itemsize:
        raise ValidationError(f"Gradient payload of {len(data)} bytes is not a whole number of float32 values")
    return np.frombuffer(data, dtype=WIRE_DTYPE).astype(np.float32)


def gradient_stats(gradients: ArrayLike) -> dict[str, float]:
    """Mean, population std, min and max; all zeros for an empty vector."""
    values = np.asarray(gradients, dtype=np.float64).ravel()
    if values.size == 0:
        return {"mean": 0.0, "std": 0.0, "min": 0.0, "max": 0.0}
    return {
        "mean": float(values.mean()),
        "std": float(values.std()),
        "min": float(values.min()),
        "max": float(values.max()),
    }


def gradient_summary(gradients: ArrayLike) -> dict[str, Any]:
    """Rounded statistics plus a short preview of the leading values."""
    values = np.asarray(gradients, dtype=np.float64).ravel()
    stats = gradient_stats(values)
    return {
        "size": int(values.size),
        **{key: round(value, SUMMARY_DECIMALS) for key, value in stats.items()},
        "preview": [round(float(value), SUMMARY_DECIMALS) for value in values[:PREVIEW_LENGTH]],
    }


def validate_gradient_payload(data: Any) -> bool:
    """Check the shape of a contributed gradient document before accepting it."""
    if not isinstance(data, dict):
        return False
    if not isinstance(data.get("weights"), list) or not isinstance(data.get("biases"), list):
        return False

    metadata = data.get("metadata")
    if not isinstance(metadata, dict):
        return False
    if not isinstance(metadata.get("model_id"), str):
        return False
    if not isinstance(metadata.get("timestamp"), (str, datetime)):
        return False
    batch_size = metadata.get("batch_size")
    if isinstance(batch_size, bool) or not isinstance(batch_size, (int, float)):
        return False
    return True
