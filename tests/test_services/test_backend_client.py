"""Tests for the backend training HTTP client."""

import httpx
import pytest
import respx
from httpx import Response

from dattrain.errors import NetworkError, NotFoundError
from dattrain.schemas.training import TrainingOptions
from dattrain.services.backend_client import BackendTrainingClient

BASE = "http://backend.test"


@pytest.mark.asyncio
async def test_start_posts_config_and_returns_session_id():
    client = BackendTrainingClient(base_url=BASE)

    with respx.mock:
        route = respx.post(f"{BASE}/api/training/start").mock(
            return_value=Response(200, json={"session_id": "remote-1", "status": "preparing"})
        )

        session_id = await client.start(TrainingOptions(epochs=3, model_type="cnn", optimizer="sgd"))

    assert session_id == "remote-1"
    sent = route.calls.last.request
    assert b'"model_type":"cnn"' in sent.content.replace(b" ", b"")
    assert b'"epochs":3' in sent.content.replace(b" ", b"")

    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["sessionId", "session", "id"])
async def test_start_accepts_alternative_id_keys(key):
    client = BackendTrainingClient(base_url=BASE)

    with respx.mock:
        respx.post(f"{BASE}/api/training/start").mock(return_value=Response(200, json={key: "remote-2"}))
        assert await client.start(TrainingOptions()) == "remote-2"

    await client.close()


@pytest.mark.asyncio
async def test_start_without_session_id_is_network_error():
    client = BackendTrainingClient(base_url=BASE)

    with respx.mock:
        respx.post(f"{BASE}/api/training/start").mock(return_value=Response(200, json={"ok": True}))
        with pytest.raises(NetworkError):
            await client.start(TrainingOptions())

    await client.close()


@pytest.mark.asyncio
async def test_status_parses_camel_case_metrics():
    client = BackendTrainingClient(base_url=BASE)

    with respx.mock:
        respx.get(f"{BASE}/api/training/status/remote-1").mock(
            return_value=Response(
                200,
                json={
                    "status": "training",
                    "progress": {"percentage": 40, "epoch": 2},
                    "epochMetrics": [{"epoch": 1, "train_loss": 0.5}],
                    "unknown": "ignored",
                },
            )
        )

        status = await client.status("remote-1")

    assert status.status == "training"
    assert status.progress == {"percentage": 40, "epoch": 2}
    assert status.epoch_metrics == [{"epoch": 1, "train_loss": 0.5}]

    await client.close()


@pytest.mark.asyncio
async def test_status_404_is_not_found():
    client = BackendTrainingClient(base_url=BASE)

    with respx.mock:
        respx.get(f"{BASE}/api/training/status/ghost").mock(return_value=Response(404, json={"detail": "no"}))
        with pytest.raises(NotFoundError):
            await client.status("ghost")

    await client.close()


@pytest.mark.asyncio
async def test_status_server_error_is_network_error_with_code():
    client = BackendTrainingClient(base_url=BASE)

    with respx.mock:
        respx.get(f"{BASE}/api/training/status/remote-1").mock(return_value=Response(503))
        with pytest.raises(NetworkError) as info:
            await client.status("remote-1")

    assert info.value.status_code == 503
    assert not isinstance(info.value, NotFoundError)

    await client.close()


@pytest.mark.asyncio
async def test_status_timeout_retry():
    """Timeouts on status reads are retried with backoff."""
    client = BackendTrainingClient(base_url=BASE, timeout_seconds=0.1, max_retries=2)

    with respx.mock:
        route = respx.get(f"{BASE}/api/training/status/remote-1")
        route.side_effect = [
            httpx.TimeoutException("timeout"),
            httpx.TimeoutException("timeout"),
            Response(200, json={"status": "completed", "progress": 100}),
        ]

        status = await client.status("remote-1")

    assert status.status == "completed"
    assert route.call_count == 3

    await client.close()


@pytest.mark.asyncio
async def test_control_actions_are_not_retried():
    client = BackendTrainingClient(base_url=BASE, max_retries=3)

    with respx.mock:
        route = respx.post(f"{BASE}/api/training/pause/remote-1")
        route.side_effect = [httpx.TimeoutException("timeout")]

        with pytest.raises(NetworkError):
            await client.pause("remote-1")

    assert route.call_count == 1

    await client.close()


@pytest.mark.asyncio
async def test_resume_and_stop_hit_their_routes():
    client = BackendTrainingClient(base_url=BASE)

    with respx.mock:
        resume = respx.post(f"{BASE}/api/training/resume/remote-1").mock(return_value=Response(200, json={}))
        stop = respx.post(f"{BASE}/api/training/stop/remote-1").mock(return_value=Response(204))

        await client.resume("remote-1")
        await client.stop("remote-1")

    assert resume.called
    assert stop.called

    await client.close()


@pytest.mark.asyncio
async def test_connection_error_is_network_error():
    client = BackendTrainingClient(base_url=BASE)

    with respx.mock:
        respx.get(f"{BASE}/api/training/status/remote-1").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(NetworkError):
            await client.status("remote-1")

    await client.close()
