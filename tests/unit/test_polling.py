"""Unit tests for polling module."""
from __future__ import annotations

import asyncio

import httpx
import pytest

from polling import BatchControl, classify_remote_status, poll_task, refresh_test_status
from remote_client import TaskStatus
from store import MemoryStore
from test_types import Classification, TestCase, TestStatus
from conftest import status_payload


class TestBatchControl:
    @pytest.mark.asyncio
    async def test_sleep_returns_false_without_cancel(self):
        control = BatchControl()
        assert await control.sleep(0) is False

    @pytest.mark.asyncio
    async def test_cancel_interrupts_sleep(self):
        control = BatchControl()
        asyncio.get_running_loop().call_later(0.01, control.cancel)
        assert await asyncio.wait_for(control.sleep(30), timeout=5) is True
        assert control.cancelled

    @pytest.mark.asyncio
    async def test_cancel_releases_pause(self):
        control = BatchControl()
        control.pause()
        assert control.paused

        waiter = asyncio.create_task(control.wait_if_paused())
        await asyncio.sleep(0)
        assert not waiter.done()

        control.cancel()
        await asyncio.wait_for(waiter, timeout=5)
        assert not control.paused

    def test_pause_ignored_after_cancel(self):
        control = BatchControl()
        control.cancel()
        control.pause()
        assert not control.paused


class TestClassifyRemoteStatus:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (TaskStatus(status="finished"), Classification.FINISHED),
            (TaskStatus(status="completed"), Classification.FINISHED),
            (TaskStatus(status="failed"), Classification.FAILED),
            (TaskStatus(status="error"), Classification.FAILED),
            (TaskStatus(status="not_found", expired=True), Classification.EXPIRED),
            (TaskStatus(status="stopped", output="partial"), Classification.FINISHED),
            (TaskStatus(status="stopped"), Classification.FAILED),
            (TaskStatus(status="running"), None),
            (TaskStatus(status="created"), None),
            (TaskStatus(status="paused"), None),
        ],
    )
    def test_mapping(self, status, expected):
        assert classify_remote_status(status) is expected


class TestPollTask:
    @pytest.mark.asyncio
    async def test_finished_after_running(self, remote_client, remote_api):
        remote_api.script(
            "T",
            status_payload("created"),
            status_payload("running"),
            status_payload(
                "finished",
                output="OK",
                started_at="2024-05-01T10:00:00Z",
                finished_at="2024-05-01T10:00:12Z",
            ),
        )

        outcome = await poll_task(remote_client, "T", poll_interval_ms=0, max_attempts=10)

        assert outcome.classification is Classification.FINISHED
        assert outcome.output == "OK"
        assert outcome.result_summary == "OK"
        assert outcome.execution_time_ms == 12000
        assert outcome.attempts == 3
        assert outcome.step_count == 0

    @pytest.mark.asyncio
    async def test_step_count_from_remote_steps(self, remote_client, remote_api):
        remote_api.script("T", (200, {"status": "finished", "output": "OK", "steps": [{"n": 1}, {"n": 2}]}))

        outcome = await poll_task(remote_client, "T", poll_interval_ms=0, max_attempts=3)
        assert outcome.step_count == 2

    @pytest.mark.asyncio
    async def test_structured_output_serialized(self, remote_client, remote_api):
        remote_api.script("T", status_payload("finished", output={"done": True}))

        outcome = await poll_task(remote_client, "T", poll_interval_ms=0, max_attempts=3)
        assert outcome.output == '{"done": true}'
        assert outcome.execution_time_ms is None

    @pytest.mark.asyncio
    async def test_summary_truncated(self, remote_client, remote_api):
        remote_api.script("T", status_payload("finished", output="x" * 2000))

        outcome = await poll_task(remote_client, "T", poll_interval_ms=0, max_attempts=3)
        assert len(outcome.result_summary) == 500
        assert len(outcome.output) == 2000

    @pytest.mark.asyncio
    async def test_not_found_is_expired(self, remote_client, remote_api):
        remote_api.script("T", (404, {"detail": "Not found"}))

        outcome = await poll_task(remote_client, "T", poll_interval_ms=0, max_attempts=3)
        assert outcome.classification is Classification.EXPIRED
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_stopped_without_result(self, remote_client, remote_api):
        remote_api.script("T", status_payload("stopped"))

        outcome = await poll_task(remote_client, "T", poll_interval_ms=0, max_attempts=3)
        assert outcome.classification is Classification.FAILED
        assert outcome.result_summary == "Task stopped before producing a result"

    @pytest.mark.asyncio
    async def test_timeout(self, remote_client, remote_api):
        remote_api.script("T", status_payload("running"))

        outcome = await poll_task(remote_client, "T", poll_interval_ms=0, max_attempts=4)
        assert outcome.classification is Classification.TIMED_OUT
        assert outcome.result_summary == "Remote task timed out after 4 attempts"
        assert remote_api.status_calls["T"] == 4

    @pytest.mark.asyncio
    async def test_transient_errors_consume_budget(self, remote_client, remote_api):
        remote_api.script(
            "T",
            httpx.ConnectError("connection reset"),
            (503, "Service unavailable"),
            status_payload("finished", output="done"),
        )

        outcome = await poll_task(remote_client, "T", poll_interval_ms=0, max_attempts=5)
        assert outcome.classification is Classification.FINISHED
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_transient_errors_until_timeout(self, remote_client, remote_api):
        remote_api.script("T", (500, "boom"))

        outcome = await poll_task(remote_client, "T", poll_interval_ms=0, max_attempts=2)
        assert outcome.classification is Classification.TIMED_OUT

    @pytest.mark.asyncio
    async def test_cancelled_before_first_poll(self, remote_client, remote_api):
        control = BatchControl()
        control.cancel()

        outcome = await poll_task(remote_client, "T", poll_interval_ms=0, max_attempts=5, control=control)
        assert outcome.classification is Classification.CANCELLED
        assert outcome.attempts == 0
        assert "T" not in remote_api.status_calls

    @pytest.mark.asyncio
    async def test_cancelled_while_waiting(self, remote_client, remote_api):
        remote_api.script("T", status_payload("running"))
        control = BatchControl()
        asyncio.get_running_loop().call_later(0.05, control.cancel)

        outcome = await asyncio.wait_for(
            poll_task(remote_client, "T", poll_interval_ms=20, max_attempts=1000, control=control),
            timeout=5,
        )
        assert outcome.classification is Classification.CANCELLED


class TestRefreshTestStatus:
    @pytest.mark.asyncio
    async def test_updates_running_test(self, remote_client, remote_api):
        store = MemoryStore()
        await store.add_test(
            TestCase(id="t1", prompt="p", status=TestStatus.RUNNING, task_id="T", expected_result="Order placed")
        )
        remote_api.script("T", status_payload("finished", output="Test passed, order placed"))

        test = await refresh_test_status(remote_client, store, "t1")
        assert test.status is TestStatus.PASSED
        assert test.result_summary == "Test passed, order placed"
        assert test.last_run_at is not None

    @pytest.mark.asyncio
    async def test_leaves_unfinished_task(self, remote_client, remote_api):
        store = MemoryStore()
        await store.add_test(TestCase(id="t1", prompt="p", status=TestStatus.RUNNING, task_id="T"))
        remote_api.script("T", status_payload("running"))

        test = await refresh_test_status(remote_client, store, "t1")
        assert test.status is TestStatus.RUNNING

    @pytest.mark.asyncio
    async def test_ignores_tests_not_running(self, remote_client, remote_api):
        store = MemoryStore()
        await store.add_test(TestCase(id="t1", prompt="p", status=TestStatus.PASSED, task_id="T"))

        test = await refresh_test_status(remote_client, store, "t1")
        assert test.status is TestStatus.PASSED
        assert "T" not in remote_api.status_calls

    @pytest.mark.asyncio
    async def test_expired_session_passes(self, remote_client, remote_api):
        store = MemoryStore()
        await store.add_test(TestCase(id="t1", prompt="p", status=TestStatus.RUNNING, task_id="T"))
        remote_api.script("T", (404, {}))

        test = await refresh_test_status(remote_client, store, "t1")
        assert test.status is TestStatus.PASSED
        assert test.result_summary == test.result_reasoning
