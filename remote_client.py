"""Async client for the remote browser-automation task API."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from config import RemoteConfig
from exceptions import ConcurrencyLimitError, RemoteServiceError

CONCURRENCY_LIMIT_MARKER = "too many concurrent"


class TaskStatus(BaseModel):
    """Status snapshot returned by ``GET /tasks/{id}``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    status: str = "unknown"
    output: Any = None
    started_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("started_at", "startedAt"),
    )
    finished_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("finished_at", "finishedAt"),
    )
    steps: Optional[list[Any]] = None
    expired: bool = False

    @property
    def has_result(self) -> bool:
        return bool(self.output) or self.finished_at is not None


class RemoteTaskClient:
    """Thin request/response wrapper; no retries and no local state."""

    def __init__(
        self,
        config: RemoteConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger("remote_client")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.request_timeout_seconds,
        )

    async def __aenter__(self) -> "RemoteTaskClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _headers(self, json_body: bool = False) -> dict[str, str]:
        headers = {"X-Browser-Use-API-Key": self.config.api_key}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str, task_id: Optional[str] = None) -> None:
        if response.is_success:
            return
        body = response.text
        message = f"Remote API error while trying to {action}: HTTP {response.status_code}"
        if CONCURRENCY_LIMIT_MARKER in body.lower():
            raise ConcurrencyLimitError(message, status_code=response.status_code, body=body, task_id=task_id)
        raise RemoteServiceError(message, status_code=response.status_code, body=body, task_id=task_id)

    async def create_task(
        self,
        prompt: str,
        *,
        max_steps: Optional[int] = None,
        record_video: Optional[bool] = None,
        save_browser_data: bool = True,
    ) -> str:
        """Create a remote task and return its id."""
        payload: dict[str, Any] = {"task": prompt, "save_browser_data": save_browser_data}
        if max_steps is not None:
            payload["max_steps"] = max_steps
        if record_video is not None:
            payload["record_video"] = record_video

        response = await self._http.post(self._url("/tasks"), json=payload, headers=self._headers(json_body=True))
        self._raise_for_status(response, "create task")

        data = response.json()
        task_id = data.get("id") if isinstance(data, dict) else None
        if not task_id:
            raise RemoteServiceError(
                "No task id returned by remote API",
                status_code=response.status_code,
                body=response.text,
            )
        self.logger.debug("Created remote task %s", task_id)
        return str(task_id)

    async def get_task_status(self, task_id: str) -> TaskStatus:
        """Fetch the task status; a 404 means the remote session expired."""
        response = await self._http.get(self._url(f"/tasks/{task_id}"), headers=self._headers())
        if response.status_code == 404:
            self.logger.info("Remote task %s not found (session expired)", task_id)
            return TaskStatus(status="not_found", expired=True)
        self._raise_for_status(response, "get task status", task_id)
        return TaskStatus.model_validate(response.json())

    async def _control(self, task_id: str, action: str) -> None:
        response = await self._http.put(self._url(f"/tasks/{task_id}/{action}"), headers=self._headers())
        self._raise_for_status(response, f"{action} task", task_id)
        self.logger.info("Remote task %s: %s requested", task_id, action)

    async def stop_task(self, task_id: str) -> None:
        await self._control(task_id, "stop")

    async def pause_task(self, task_id: str) -> None:
        await self._control(task_id, "pause")

    async def resume_task(self, task_id: str) -> None:
        await self._control(task_id, "resume")
