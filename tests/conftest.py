"""Pytest fixtures for the batch runner tests."""
from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx
import pytest
import pytest_asyncio

from config import OrchestratorConfig, RemoteConfig
from remote_client import RemoteTaskClient
from store import MemoryStore
from test_types import Credential, Project, TestCase

BASE_URL = "https://remote.test/api/v2"

ScriptItem = Union[Tuple[int, Any], Exception]


class FakeRemoteApi:
    """Scripted stand-in for the remote task API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.created: List[Dict[str, Any]] = []
        self.create_responses: List[ScriptItem] = []
        self.status_scripts: Dict[str, List[ScriptItem]] = {}
        self.default_status: List[ScriptItem] = [(200, {"status": "finished", "output": "Test passed"})]
        self.controls: List[Tuple[str, str]] = []
        self.status_calls: Dict[str, int] = {}
        self.control_status: int = 200
        self._counter = 0

    def script(self, task_id: str, *items: ScriptItem) -> None:
        self.status_scripts[task_id] = list(items)

    @staticmethod
    def _respond(item: ScriptItem, request: httpx.Request) -> httpx.Response:
        if isinstance(item, Exception):
            raise item
        status_code, payload = item
        if isinstance(payload, str):
            return httpx.Response(status_code, text=payload, request=request)
        return httpx.Response(status_code, json=payload, request=request)

    def handler(self, request: httpx.Request) -> httpx.Response:
        assert request.headers.get("X-Browser-Use-API-Key") == "test-key"
        path = request.url.path.split("/tasks", 1)[1]

        if request.method == "POST" and path == "":
            body = json.loads(request.content)
            self.created.append(body)
            if self.create_responses:
                return self._respond(self.create_responses.pop(0), request)
            self._counter += 1
            return httpx.Response(200, json={"id": f"task-{self._counter}"}, request=request)

        task_id, _, action = path.lstrip("/").partition("/")
        if request.method == "PUT" and action:
            self.controls.append((task_id, action))
            return httpx.Response(self.control_status, json={}, request=request)

        if request.method == "GET":
            self.status_calls[task_id] = self.status_calls.get(task_id, 0) + 1
            script = self.status_scripts.get(task_id, self.default_status)
            item = script.pop(0) if len(script) > 1 else script[0]
            return self._respond(item, request)

        return httpx.Response(405, request=request)


@pytest.fixture
def remote_api() -> FakeRemoteApi:
    return FakeRemoteApi()


@pytest.fixture
def remote_config() -> RemoteConfig:
    return RemoteConfig(api_key="test-key", base_url=BASE_URL, poll_interval_ms=0, max_poll_attempts=5)


@pytest.fixture
def orchestrator_config() -> OrchestratorConfig:
    return OrchestratorConfig(
        inter_test_delay_seconds=0,
        min_inter_test_delay_seconds=0,
        create_retry_attempts=3,
        create_retry_wait_seconds=0,
        create_retry_max_wait_seconds=0,
    )


@pytest.fixture
def remote_client(remote_api: FakeRemoteApi, remote_config: RemoteConfig) -> RemoteTaskClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(remote_api.handler))
    return RemoteTaskClient(remote_config, http_client=http_client)


@pytest.fixture
def sample_project() -> Project:
    return Project(
        id="proj-1",
        setup_prompt="Accept the cookie banner.",
        base_url="https://shop.example.com",
        max_steps=25,
        record_video=False,
    )


@pytest.fixture
def sample_credential() -> Credential:
    return Credential(
        username="qa@example.com",
        password="s3cret!",
        description="admin",
        project_id="proj-1",
    )


@pytest.fixture
def sample_tests() -> List[TestCase]:
    return [
        TestCase(id="t1", prompt="Log in and open the dashboard", project_id="proj-1"),
        TestCase(id="t2", prompt="Add a product to the cart", project_id="proj-1"),
        TestCase(id="t3", prompt="Open the contact page"),
    ]


@pytest_asyncio.fixture
async def seeded_store(
    sample_project: Project,
    sample_credential: Credential,
    sample_tests: List[TestCase],
) -> MemoryStore:
    store = MemoryStore()
    await store.add_project(sample_project)
    await store.add_credential(sample_credential)
    for test in sample_tests:
        await store.add_test(test)
    return store


@pytest.fixture
def temp_dir() -> Path:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def status_payload(
    status: str,
    output: Optional[Any] = None,
    started_at: Optional[str] = None,
    finished_at: Optional[str] = None,
) -> Tuple[int, Dict[str, Any]]:
    payload: Dict[str, Any] = {"status": status}
    if output is not None:
        payload["output"] = output
    if started_at:
        payload["started_at"] = started_at
    if finished_at:
        payload["finished_at"] = finished_at
    return 200, payload
