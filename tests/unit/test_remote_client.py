"""Unit tests for remote_client module."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from exceptions import ConcurrencyLimitError, RemoteServiceError
from remote_client import RemoteTaskClient, TaskStatus


class TestTaskStatus:
    def test_snake_and_camel_timestamps(self):
        snake = TaskStatus.model_validate(
            {"status": "finished", "started_at": "2024-05-01T10:00:00Z", "finished_at": "2024-05-01T10:00:12Z"}
        )
        camel = TaskStatus.model_validate(
            {"status": "finished", "startedAt": "2024-05-01T10:00:00Z", "finishedAt": "2024-05-01T10:00:12Z"}
        )
        assert snake.started_at == camel.started_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert snake.finished_at == camel.finished_at

    def test_extra_fields_kept(self):
        status = TaskStatus.model_validate({"status": "running", "steps": [1, 2]})
        assert status.status == "running"
        assert status.has_result is False

    def test_has_result(self):
        assert TaskStatus(status="stopped", output="partial").has_result is True
        assert TaskStatus(status="stopped").has_result is False


class TestCreateTask:
    @pytest.mark.asyncio
    async def test_returns_id_and_sends_payload(self, remote_client: RemoteTaskClient, remote_api):
        task_id = await remote_client.create_task("Open the homepage", max_steps=12, record_video=False)

        assert task_id == "task-1"
        assert remote_api.created == [
            {"task": "Open the homepage", "save_browser_data": True, "max_steps": 12, "record_video": False}
        ]

    @pytest.mark.asyncio
    async def test_optional_fields_omitted(self, remote_client: RemoteTaskClient, remote_api):
        await remote_client.create_task("Open the homepage", save_browser_data=False)
        assert remote_api.created[0] == {"task": "Open the homepage", "save_browser_data": False}

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, remote_client: RemoteTaskClient, remote_api):
        remote_api.create_responses.append((429, "Too many concurrent active sessions"))

        with pytest.raises(ConcurrencyLimitError) as exc_info:
            await remote_client.create_task("x")
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_other_error(self, remote_client: RemoteTaskClient, remote_api):
        remote_api.create_responses.append((401, {"detail": "Invalid API key"}))

        with pytest.raises(RemoteServiceError) as exc_info:
            await remote_client.create_task("x")
        assert not isinstance(exc_info.value, ConcurrencyLimitError)
        assert exc_info.value.status_code == 401
        assert "Invalid API key" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_missing_id(self, remote_client: RemoteTaskClient, remote_api):
        remote_api.create_responses.append((200, {"status": "created"}))

        with pytest.raises(RemoteServiceError, match="No task id"):
            await remote_client.create_task("x")


class TestGetTaskStatus:
    @pytest.mark.asyncio
    async def test_parses_status(self, remote_client: RemoteTaskClient, remote_api):
        remote_api.script("abc", (200, {"status": "running"}))

        status = await remote_client.get_task_status("abc")
        assert status.status == "running"
        assert remote_api.status_calls["abc"] == 1

    @pytest.mark.asyncio
    async def test_not_found_means_expired(self, remote_client: RemoteTaskClient, remote_api):
        remote_api.script("gone", (404, {"detail": "Not found"}))

        status = await remote_client.get_task_status("gone")
        assert status.status == "not_found"
        assert status.expired is True

    @pytest.mark.asyncio
    async def test_server_error_raises(self, remote_client: RemoteTaskClient, remote_api):
        remote_api.script("abc", (502, "Bad gateway"))

        with pytest.raises(RemoteServiceError) as exc_info:
            await remote_client.get_task_status("abc")
        assert exc_info.value.task_id == "abc"


class TestControl:
    @pytest.mark.asyncio
    async def test_stop_pause_resume(self, remote_client: RemoteTaskClient, remote_api):
        await remote_client.stop_task("t-1")
        await remote_client.pause_task("t-1")
        await remote_client.resume_task("t-1")

        assert remote_api.controls == [("t-1", "stop"), ("t-1", "pause"), ("t-1", "resume")]

    @pytest.mark.asyncio
    async def test_control_error(self, remote_client: RemoteTaskClient, remote_api):
        remote_api.control_status = 500

        with pytest.raises(RemoteServiceError):
            await remote_client.stop_task("t-1")
