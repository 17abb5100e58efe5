"""Background synchronization of backend-delegated sessions into the registry."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from dattrain.config import get_settings
from dattrain.errors import NetworkError, NotFoundError
from dattrain.ml.events import TrainingEventEmitter
from dattrain.schemas.training import (
    BackendStatus,
    EpochMetrics,
    LogLevel,
    SessionStatus,
    utcnow,
)
from dattrain.services.backend_client import BackendTrainingClient
from dattrain.services.registry import SessionRegistry

logger = structlog.get_logger(__name__)

NOT_FOUND_MESSAGE = "Session not found on backend after multiple retries"

REMOTE_STATUS_MAP: dict[str, SessionStatus] = {
    "pending": SessionStatus.PREPARING,
    "queued": SessionStatus.PREPARING,
    "preparing": SessionStatus.PREPARING,
    "running": SessionStatus.TRAINING,
    "training": SessionStatus.TRAINING,
    "paused": SessionStatus.PAUSED,
    "uploading": SessionStatus.UPLOADING,
}
FINAL_REMOTE_STATUSES = frozenset({"completed", "failed", "stopped"})


def _first_number(source: dict[str, Any], *keys: str) -> float | None:
    for key in keys:
        value = source.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


def progress_updates(status: BackendStatus) -> dict[str, Any]:
    """Translate a remote progress field (number or object) into registry updates."""
    progress = status.progress
    if progress is None:
        return {}
    if isinstance(progress, (int, float)):
        return {"progress": min(100.0, max(0.0, float(progress)))}

    updates: dict[str, Any] = {}
    percentage = _first_number(progress, "percentage", "progress")
    if percentage is not None:
        updates["progress"] = min(100.0, max(0.0, percentage))
    epoch = _first_number(progress, "epoch", "current_epoch", "currentEpoch")
    if epoch is not None:
        updates["current_epoch"] = int(epoch)
    loss = _first_number(progress, "loss")
    if loss is not None:
        updates["loss"] = loss
    accuracy = _first_number(progress, "accuracy")
    if accuracy is not None:
        updates["accuracy"] = accuracy
    return updates


def parse_epoch_metrics(items: list[dict[str, Any]]) -> list[EpochMetrics]:
    """Accept snake_case or camelCase epoch metric documents; skip malformed ones."""
    parsed: list[EpochMetrics] = []
    for item in items:
        candidate = {
            "epoch": item.get("epoch"),
            "train_loss": item.get("train_loss", item.get("trainLoss", item.get("loss"))),
            "train_accuracy": item.get("train_accuracy", item.get("trainAccuracy", item.get("accuracy"))),
            "validation_loss": item.get("validation_loss", item.get("validationLoss", item.get("val_loss"))),
            "validation_accuracy": item.get(
                "validation_accuracy", item.get("validationAccuracy", item.get("val_accuracy"))
            ),
            "learning_rate": item.get("learning_rate", item.get("learningRate", 0.0)),
            "duration": item.get("duration", 0.0),
        }
        if item.get("timestamp"):
            candidate["timestamp"] = item["timestamp"]
        try:
            parsed.append(EpochMetrics.model_validate(candidate))
        except ValueError:
            logger.warning("backend_epoch_metric_skipped", item=item)
    return parsed


class BackendSyncService:
    """
    Polls the backend status endpoint for delegated sessions.

    Consecutive 404s are tolerated up to ``max_not_found`` (the backend may
    not have registered a freshly started session yet); one more escalates to
    a failed session. Other network errors back off and retry up to
    ``max_consecutive_errors`` before failing the session.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        client: BackendTrainingClient,
        emitter_for: Callable[[str], TrainingEventEmitter] | None = None,
        *,
        poll_interval: float | None = None,
        max_not_found: int | None = None,
        error_backoff: float | None = None,
        max_consecutive_errors: int | None = None,
    ) -> None:
        settings = get_settings()
        self.registry = registry
        self.client = client
        self.emitter_for = emitter_for or TrainingEventEmitter
        self.poll_interval = settings.backend_poll_interval_ms / 1000 if poll_interval is None else poll_interval
        self.max_not_found = settings.backend_max_not_found if max_not_found is None else max_not_found
        self.error_backoff = settings.backend_error_backoff_ms / 1000 if error_backoff is None else error_backoff
        self.max_consecutive_errors = (
            settings.backend_max_consecutive_errors if max_consecutive_errors is None else max_consecutive_errors
        )
        self._tasks: dict[str, asyncio.Task[None]] = {}

    async def sync_session(self, session_id: str) -> None:
        """Poll until the remote session reaches a final status or the local one disappears."""
        session = self.registry.get_session(session_id)
        if session is None or not session.backend_session_id:
            raise NotFoundError(f"No backend-delegated session: {session_id}")
        backend_id = session.backend_session_id
        emitter = self.emitter_for(session_id)

        consecutive_not_found = 0
        consecutive_errors = 0
        seen_logs = 0
        seen_epochs = 0

        logger.info("backend_sync_started", session_id=session_id, backend_session_id=backend_id)
        while True:
            try:
                status = await self.client.status(backend_id)
            except NotFoundError:
                consecutive_not_found += 1
                if consecutive_not_found > self.max_not_found:
                    self._fail(session_id, NOT_FOUND_MESSAGE, emitter)
                    return
                logger.debug(
                    "backend_session_not_visible",
                    session_id=session_id,
                    attempt=consecutive_not_found,
                )
                await asyncio.sleep(self.poll_interval)
                continue
            except NetworkError as exc:
                consecutive_errors += 1
                logger.warning(
                    "backend_status_error",
                    session_id=session_id,
                    attempt=consecutive_errors,
                    error=str(exc),
                )
                if consecutive_errors >= self.max_consecutive_errors:
                    self._fail(session_id, f"Backend status unavailable: {exc}", emitter)
                    return
                await asyncio.sleep(self.error_backoff)
                continue

            consecutive_not_found = 0
            consecutive_errors = 0

            if self.registry.get_session(session_id) is None:
                logger.info("backend_sync_local_session_gone", session_id=session_id)
                return

            for line in (status.logs or [])[seen_logs:]:
                self._forward_log(emitter, line)
            seen_logs = max(seen_logs, len(status.logs or []))

            new_metrics = parse_epoch_metrics((status.epoch_metrics or [])[seen_epochs:])
            seen_epochs = max(seen_epochs, len(status.epoch_metrics or []))

            if self._apply(session_id, status, new_metrics, emitter):
                return
            await asyncio.sleep(self.poll_interval)

    def start_background_sync(self, session_id: str) -> asyncio.Task[None]:
        """Spawn the poller for ``session_id`` on the running loop (one per session)."""
        existing = self._tasks.get(session_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self._guarded_sync(session_id), name=f"backend-sync-{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session_id, None))
        return task

    async def cancel(self, session_id: str) -> None:
        task = self._tasks.pop(session_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop_all(self) -> None:
        for session_id in list(self._tasks):
            await self.cancel(session_id)

    async def _guarded_sync(self, session_id: str) -> None:
        try:
            await self.sync_session(session_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("backend_sync_crashed", session_id=session_id, error=str(exc), exc_info=True)
            if self.registry.get_session(session_id) is not None:
                self.registry.fail_session(session_id, str(exc))

    def _apply(
        self,
        session_id: str,
        status: BackendStatus,
        new_metrics: list[EpochMetrics],
        emitter: TrainingEventEmitter,
    ) -> bool:
        """Mirror one status document locally; returns True once the session is final."""
        session = self.registry.get_session(session_id)
        remote = status.status.lower()
        updates = progress_updates(status)
        if new_metrics:
            updates["epoch_metrics"] = [*session.epoch_metrics, *new_metrics]
            for metrics in new_metrics:
                emitter.emit_epoch_complete(metrics)
        if remote in REMOTE_STATUS_MAP:
            updates["status"] = REMOTE_STATUS_MAP[remote]
        if updates:
            self.registry.update_session(session_id, updates)

        if remote not in FINAL_REMOTE_STATUSES:
            return False

        if remote == "completed":
            result = status.result or {}
            current = self.registry.get_session(session_id)
            loss = _first_number(result, "finalLoss", "final_loss", "loss")
            accuracy = _first_number(result, "finalAccuracy", "final_accuracy", "accuracy")
            blob = result.get("blobId") or result.get("blob_id") or result.get("blobReference")
            self.registry.complete_session(
                session_id,
                loss=current.loss if loss is None else loss,
                accuracy=current.accuracy if accuracy is None else accuracy,
                blob_reference=str(blob) if blob else None,
            )
            emitter.log(LogLevel.SUCCESS, "Remote training completed")
        elif remote == "failed":
            self._fail(session_id, status.error or "Remote training failed", emitter)
        else:
            self.registry.update_session(session_id, status=SessionStatus.IDLE, end_time=utcnow())
            emitter.log(LogLevel.WARNING, "Remote training was stopped")

        logger.info("backend_sync_finished", session_id=session_id, remote_status=remote)
        return True

    def _fail(self, session_id: str, message: str, emitter: TrainingEventEmitter) -> None:
        if self.registry.get_session(session_id) is None:
            return
        self.registry.fail_session(session_id, message)
        emitter.log(LogLevel.ERROR, message)

    @staticmethod
    def _forward_log(emitter: TrainingEventEmitter, line: Any) -> None:
        if isinstance(line, dict):
            level = str(line.get("level", "info")).lower()
            if level not in {item.value for item in LogLevel}:
                level = LogLevel.INFO.value
            data = line.get("data")
            emitter.log(level, str(line.get("message", "")), data if isinstance(data, dict) else None)
        else:
            emitter.log(LogLevel.INFO, str(line))
