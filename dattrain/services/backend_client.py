"""Async HTTP client for the remote training backend."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from dattrain.errors import NetworkError, NotFoundError, ValidationError
from dattrain.schemas.training import BackendStatus, TrainingOptions

logger = structlog.get_logger(__name__)

SESSION_ID_KEYS = ("session_id", "sessionId", "session", "id")


class BackendTrainingClient:
    """Wrapper around the backend's ``/api/training`` routes."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout_seconds: float = 5.0,
        max_retries: int = 1,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the backend client.

        Args:
            base_url: Root URL of the training backend
            timeout_seconds: HTTP timeout per request
            max_retries: Extra attempts after a timeout
            client: Optional pre-built ``httpx.AsyncClient``
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds)
        self.max_retries = max_retries
        self.session = client or httpx.AsyncClient(timeout=self.timeout)

    async def start(self, options: TrainingOptions) -> str:
        """
        Ask the backend to start a training job.

        Returns:
            The backend's session id

        Raises:
            NetworkError: If the backend is unreachable or rejects the job
        """
        payload = {
            "model_type": options.model_type.value,
            "epochs": options.epochs,
            "batch_size": options.batch_size,
            "learning_rate": options.learning_rate,
            "optimizer": options.optimizer.value,
            "validation_split": options.validation_split,
            "dataset_cid": options.dataset_cid,
        }
        data = await self._request("POST", "/api/training/start", json=payload, retry=False)

        if isinstance(data, dict):
            for key in SESSION_ID_KEYS:
                if data.get(key):
                    session_id = str(data[key])
                    logger.info("backend_training_started", backend_session_id=session_id)
                    return session_id
        raise NetworkError("Backend start response did not include a session id")

    async def pause(self, session_id: str) -> None:
        await self._control("pause", session_id)

    async def resume(self, session_id: str) -> None:
        await self._control("resume", session_id)

    async def stop(self, session_id: str) -> None:
        await self._control("stop", session_id)

    async def status(self, session_id: str) -> BackendStatus:
        """
        Fetch the status document of a backend session.

        Raises:
            NotFoundError: The backend does not know this session (yet)
            NetworkError: Any other transport or HTTP failure
        """
        if not session_id:
            raise ValidationError("Backend session id is required")
        data = await self._request("GET", f"/api/training/status/{session_id}", retry=True)
        try:
            return BackendStatus.model_validate(data)
        except ValueError as exc:
            raise NetworkError(f"Malformed backend status payload: {exc}") from exc

    async def health_check(self) -> bool:
        try:
            response = await self.session.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        await self.session.aclose()

    async def _control(self, action: str, session_id: str) -> None:
        if not session_id:
            raise ValidationError("Backend session id is required")
        await self._request("POST", f"/api/training/{action}/{session_id}", retry=False)
        logger.info("backend_training_control", action=action, backend_session_id=session_id)

    async def _request(self, method: str, path: str, *, retry: bool, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        attempts = self.max_retries + 1 if retry else 1

        for attempt in range(attempts):
            try:
                response = await self.session.request(method, url, **kwargs)
                if response.status_code == 404:
                    raise NotFoundError(f"Not found on backend: {path}")
                response.raise_for_status()
                if not response.content:
                    return None
                return response.json()

            except httpx.TimeoutException as e:
                logger.warning(
                    "backend_timeout",
                    path=path,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    error=str(e),
                )
                if attempt + 1 >= attempts:
                    raise NetworkError(f"Backend request timed out: {path}") from e
                await asyncio.sleep(0.1 * (2**attempt))

            except httpx.HTTPStatusError as e:
                logger.error("backend_http_error", path=path, status_code=e.response.status_code)
                raise NetworkError(
                    f"Backend returned {e.response.status_code} for {path}",
                    status_code=e.response.status_code,
                ) from e

            except httpx.HTTPError as e:
                logger.error("backend_request_failed", path=path, error=str(e))
                raise NetworkError(f"Backend unreachable: {e}") from e

            except ValueError as e:
                raise NetworkError(f"Backend returned invalid JSON for {path}") from e

        raise NetworkError(f"Backend request failed: {path}")
