"""Pytest environment isolation for dattrain tests.

Tests must never touch the runtime database, blob directory or a real backend.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path

import pytest

# Configure an isolated filesystem root before settings are imported.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="dattrain-pytest-")).resolve()

os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'test.db'}"
os.environ["BLOB_DIR"] = str(_TEST_ROOT / "blobs")
os.environ["USE_WALRUS_STORAGE"] = "false"
os.environ["BACKEND_URL"] = "http://backend.test"
os.environ["BATCH_DELAY_MS"] = "0"
os.environ["VALIDATION_DELAY_MS"] = "0"
os.environ["BLOB_SIMULATED_LATENCY_MS"] = "0"
os.environ["BACKEND_POLL_INTERVAL_MS"] = "0"
os.environ["BACKEND_ERROR_BACKOFF_MS"] = "0"
os.environ["LOG_JSON"] = "false"

from dattrain.config import get_settings
from dattrain.storage.factory import get_blob_store

get_settings.cache_clear()


@pytest.fixture(scope="session", autouse=True)
def _bootstrap_test_environment() -> None:
    """Remove the temporary root once the whole session is done."""
    yield
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture(autouse=True)
def _reset_cached_singletons() -> None:
    """Each test sees settings and blob store built from the current environment."""
    get_settings.cache_clear()
    get_blob_store.cache_clear()
    yield
    get_settings.cache_clear()
    get_blob_store.cache_clear()
