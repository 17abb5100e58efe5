"""Gradient wire encoding, summaries and payload validation."""

from __future__ import annotations

from datetime import datetime, timezone

import numpy as np
import pytest

from dattrain.errors import ValidationError
from dattrain.ml.gradient_codec import (
    gradient_stats,
    gradient_summary,
    gradients_from_bytes,
    gradients_to_bytes,
    validate_gradient_payload,
)


def test_gradients_are_little_endian_float32() -> None:
    payload = gradients_to_bytes([1.0, -2.5])

    assert len(payload) == 8
    assert payload[:4] == np.array([1.0], dtype="<f4").tobytes()
    np.testing.assert_array_equal(gradients_from_bytes(payload), np.array([1.0, -2.5], dtype=np.float32))


def test_truncated_payload_is_rejected() -> None:
    with pytest.raises(ValidationError):
        gradients_from_bytes(b"\x00\x00\x80")


def test_stats_of_empty_vector_are_zero() -> None:
    assert gradient_stats([]) == {"mean": 0.0, "std": 0.0, "min": 0.0, "max": 0.0}


def test_summary_rounds_and_previews_leading_values() -> None:
    values = np.arange(30, dtype=np.float64) / 3

    summary = gradient_summary(values)

    assert summary["size"] == 30
    assert summary["min"] == 0.0
    assert summary["max"] == pytest.approx(9.666667)
    assert len(summary["preview"]) == 20
    assert summary["preview"][1] == 0.333333


def _payload(**metadata):
    base = {"model_id": "m-1", "timestamp": "2024-01-01T00:00:00Z", "batch_size": 32}
    base.update(metadata)
    return {"weights": [0.1, 0.2], "biases": [0.0], "metadata": base}


def test_valid_payloads_pass() -> None:
    assert validate_gradient_payload(_payload()) is True
    assert validate_gradient_payload(_payload(timestamp=datetime.now(timezone.utc))) is True


@pytest.mark.parametrize(
    "payload",
    [
        None,
        {"weights": [1.0]},
        {"weights": "x", "biases": [], "metadata": {}},
        _payload(model_id=7),
        _payload(timestamp=123),
        _payload(batch_size="32"),
        _payload(batch_size=True),
    ],
)
def test_invalid_payloads_fail(payload) -> None:
    assert validate_gradient_payload(payload) is False
