"""Background backend synchronization: 404 tolerance, progress mapping and final states."""

from __future__ import annotations

import asyncio

import pytest
import respx
from httpx import Response

from dattrain.errors import NetworkError, NotFoundError
from dattrain.ml.events import TrainingEventEmitter
from dattrain.schemas.training import BackendStatus, SessionStatus
from dattrain.services.backend_client import BackendTrainingClient
from dattrain.services.registry import SessionRegistry
from dattrain.services.sync_service import (
    NOT_FOUND_MESSAGE,
    BackendSyncService,
    parse_epoch_metrics,
    progress_updates,
)

HYPER = {"epochs": 3, "batch_size": 32, "learning_rate": 0.01}


class ScriptedClient:
    """Replays a fixed sequence of status documents or exceptions."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    async def status(self, session_id: str) -> BackendStatus:
        self.calls += 1
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, Exception):
            raise step
        return BackendStatus.model_validate(step)


def _delegated(registry: SessionRegistry) -> str:
    session_id = registry.create_session("model-a", "mlp", HYPER)
    registry.update_session(session_id, status=SessionStatus.PREPARING, backend_session_id="remote-1")
    return session_id


def _service(registry, client, emitters=None, **kwargs) -> BackendSyncService:
    emitters = {} if emitters is None else emitters

    def emitter_for(session_id: str) -> TrainingEventEmitter:
        return emitters.setdefault(session_id, TrainingEventEmitter(session_id))

    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("error_backoff", 0)
    return BackendSyncService(registry, client, emitter_for, **kwargs)


def test_progress_updates_accept_number_or_object() -> None:
    assert progress_updates(BackendStatus(status="training", progress=42)) == {"progress": 42.0}
    assert progress_updates(
        BackendStatus(status="training", progress={"percentage": 50, "epoch": 2, "loss": 0.4, "accuracy": 0.8})
    ) == {"progress": 50.0, "current_epoch": 2, "loss": 0.4, "accuracy": 0.8}
    assert progress_updates(BackendStatus(status="training", progress=None)) == {}


def test_parse_epoch_metrics_skips_malformed_documents() -> None:
    parsed = parse_epoch_metrics(
        [
            {"epoch": 1, "trainLoss": 0.9, "trainAccuracy": 0.4, "learningRate": 0.01},
            {"epoch": "not-a-number"},
        ]
    )

    assert len(parsed) == 1
    assert parsed[0].train_loss == 0.9
    assert parsed[0].learning_rate == 0.01


@pytest.mark.asyncio
async def test_not_found_is_tolerated_within_budget() -> None:
    registry = SessionRegistry()
    session_id = _delegated(registry)
    not_found = [NotFoundError("missing") for _ in range(8)]
    client = ScriptedClient([*not_found, {"status": "completed", "result": {"finalLoss": 0.2, "finalAccuracy": 0.9}}])

    await _service(registry, client, max_not_found=8).sync_session(session_id)

    session = registry.get_session(session_id)
    assert session.status is SessionStatus.COMPLETED
    assert session.accuracy == 0.9
    assert client.calls == 9


@pytest.mark.asyncio
async def test_not_found_past_budget_fails_session() -> None:
    registry = SessionRegistry()
    session_id = _delegated(registry)
    client = ScriptedClient([NotFoundError("missing")])

    await _service(registry, client, max_not_found=8).sync_session(session_id)

    session = registry.get_session(session_id)
    assert session.status is SessionStatus.FAILED
    assert session.error == NOT_FOUND_MESSAGE
    assert client.calls == 9


@pytest.mark.asyncio
async def test_progress_logs_and_epoch_metrics_are_forwarded_once() -> None:
    registry = SessionRegistry()
    session_id = _delegated(registry)
    emitters: dict[str, TrainingEventEmitter] = {}
    client = ScriptedClient(
        [
            {
                "status": "training",
                "progress": {"percentage": 50, "epoch": 1, "loss": 0.8, "accuracy": 0.6},
                "logs": ["epoch 1 started"],
                "epochMetrics": [{"epoch": 1, "train_loss": 0.8, "train_accuracy": 0.6}],
            },
            {
                "status": "training",
                "progress": 75,
                "logs": ["epoch 1 started", {"level": "warning", "message": "slow"}],
                "epochMetrics": [{"epoch": 1, "train_loss": 0.8, "train_accuracy": 0.6}],
            },
            {
                "status": "completed",
                "progress": 100,
                "epochMetrics": [
                    {"epoch": 1, "train_loss": 0.8, "train_accuracy": 0.6},
                    {"epoch": 2, "train_loss": 0.5, "train_accuracy": 0.8},
                ],
                "result": {"final_loss": 0.5, "final_accuracy": 0.8, "blobId": "blob-9"},
            },
        ]
    )
    service = _service(registry, client, emitters)
    messages: list[str] = []
    epochs: list[int] = []
    emitter = service.emitter_for(session_id)
    emitter.on_log(lambda entry: messages.append(entry.message))
    emitter.on_epoch_complete(lambda metrics: epochs.append(metrics.epoch))

    await service.sync_session(session_id)

    session = registry.get_session(session_id)
    assert session.status is SessionStatus.COMPLETED
    assert session.blob_reference == "blob-9"
    assert session.loss == 0.5
    assert [m.epoch for m in session.epoch_metrics] == [1, 2]
    assert epochs == [1, 2]
    assert messages[:2] == ["epoch 1 started", "slow"]
    assert len(registry.get_history()) == 1


@pytest.mark.asyncio
async def test_remote_failure_marks_session_failed() -> None:
    registry = SessionRegistry()
    session_id = _delegated(registry)
    client = ScriptedClient([{"status": "failed", "error": "GPU on fire"}])

    await _service(registry, client).sync_session(session_id)

    session = registry.get_session(session_id)
    assert session.status is SessionStatus.FAILED
    assert session.error == "GPU on fire"


@pytest.mark.asyncio
async def test_remote_stop_returns_session_to_idle() -> None:
    registry = SessionRegistry()
    session_id = _delegated(registry)
    client = ScriptedClient([{"status": "training", "progress": 10}, {"status": "stopped"}])

    await _service(registry, client).sync_session(session_id)

    session = registry.get_session(session_id)
    assert session.status is SessionStatus.IDLE
    assert session.end_time is not None
    assert registry.get_history() == []


@pytest.mark.asyncio
async def test_repeated_network_errors_escalate() -> None:
    registry = SessionRegistry()
    session_id = _delegated(registry)
    client = ScriptedClient([NetworkError("503", status_code=503)])

    await _service(registry, client, max_consecutive_errors=3).sync_session(session_id)

    session = registry.get_session(session_id)
    assert session.status is SessionStatus.FAILED
    assert client.calls == 3


@pytest.mark.asyncio
async def test_removed_local_session_stops_polling() -> None:
    registry = SessionRegistry()
    session_id = _delegated(registry)

    class RemovingClient(ScriptedClient):
        async def status(self, backend_id: str) -> BackendStatus:
            registry.remove_session(session_id)
            return await super().status(backend_id)

    client = RemovingClient([{"status": "training"}])

    await _service(registry, client).sync_session(session_id)

    assert client.calls == 1
    assert registry.get_session(session_id) is None


@pytest.mark.asyncio
async def test_sync_requires_backend_session_id() -> None:
    registry = SessionRegistry()
    session_id = registry.create_session("model-a", "mlp", HYPER)

    with pytest.raises(NotFoundError):
        await _service(registry, ScriptedClient([{"status": "training"}])).sync_session(session_id)


@pytest.mark.asyncio
async def test_background_sync_over_http() -> None:
    registry = SessionRegistry()
    session_id = _delegated(registry)
    client = BackendTrainingClient(base_url="http://backend.test")
    service = _service(registry, client)

    with respx.mock:
        respx.get("http://backend.test/api/training/status/remote-1").mock(
            side_effect=[
                Response(404),
                Response(404),
                Response(200, json={"status": "training", "progress": 30}),
                Response(200, json={"status": "completed", "result": {"finalLoss": 0.3, "finalAccuracy": 0.85}}),
            ]
        )

        task = service.start_background_sync(session_id)
        assert service.start_background_sync(session_id) is task
        await asyncio.wait_for(task, timeout=2)

    session = registry.get_session(session_id)
    assert session.status is SessionStatus.COMPLETED
    assert session.accuracy == 0.85

    await client.close()


@pytest.mark.asyncio
async def test_cancel_stops_background_poller() -> None:
    registry = SessionRegistry()
    session_id = _delegated(registry)
    client = ScriptedClient([{"status": "training"}])
    service = _service(registry, client, poll_interval=0.01)

    task = service.start_background_sync(session_id)
    await asyncio.sleep(0.05)
    await service.cancel(session_id)

    assert task.cancelled()
    assert registry.get_session(session_id).status is SessionStatus.TRAINING
