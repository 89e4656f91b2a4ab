"""Polling engine: wait for a remote task to reach a terminal status."""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import timezone
from typing import TYPE_CHECKING, Any, Optional

import httpx

from evaluation import STOPPED_WITHOUT_RESULT, classify_outcome
from exceptions import PollTimeout, RemoteServiceError, TransientPollError
from remote_client import RemoteTaskClient, TaskStatus
from test_types import Classification, TaskOutcome, TestCase, TestStatus, utcnow

if TYPE_CHECKING:
    from store.base import BatchStore

logger = logging.getLogger("polling")

SUMMARY_LIMIT = 500

FINISHED_STATUSES = {"finished", "completed", "done"}
FAILED_STATUSES = {"failed", "error"}
EXPIRED_STATUSES = {"not_found", "expired"}


class BatchControl:
    """Cancellation token and pause gate for one running batch."""

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._running = asyncio.Event()
        self._running.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        # Wake anything blocked on the pause gate so it can observe the cancel.
        self._running.set()

    def pause(self) -> None:
        if not self.cancelled:
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    async def wait_if_paused(self) -> None:
        await self._running.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True early when cancelled."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False


def stringify_output(output: Any) -> Optional[str]:
    if output is None:
        return None
    if isinstance(output, str):
        return output
    return json.dumps(output)


def summarize(output: Optional[str]) -> Optional[str]:
    if not output:
        return None
    return output[:SUMMARY_LIMIT]


def execution_time_ms(status: TaskStatus) -> Optional[int]:
    """Remote run time, only when both timestamps are known."""
    if status.started_at is None or status.finished_at is None:
        return None
    started = status.started_at
    finished = status.finished_at
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    if finished.tzinfo is None:
        finished = finished.replace(tzinfo=timezone.utc)
    return int((finished - started).total_seconds() * 1000)


def classify_remote_status(status: TaskStatus) -> Optional[Classification]:
    """Map the remote status vocabulary to a terminal class, or None to keep polling."""
    remote = (status.status or "").lower()
    if status.expired or remote in EXPIRED_STATUSES:
        return Classification.EXPIRED
    if remote in FINISHED_STATUSES:
        return Classification.FINISHED
    if remote in FAILED_STATUSES:
        return Classification.FAILED
    if remote == "stopped":
        # Inconclusive without output or a finish timestamp.
        return Classification.FINISHED if status.has_result else Classification.FAILED
    return None


def build_outcome(status: TaskStatus, classification: Classification, attempts: int) -> TaskOutcome:
    output = stringify_output(status.output)
    summary = summarize(output)
    if status.status == "stopped" and classification is Classification.FAILED:
        summary = STOPPED_WITHOUT_RESULT
    return TaskOutcome(
        classification=classification,
        remote_status=status.status,
        output=output,
        result_summary=summary,
        execution_time_ms=execution_time_ms(status),
        step_count=len(status.steps or []),
        attempts=attempts,
    )


async def _fetch_status(client: RemoteTaskClient, task_id: str) -> TaskStatus:
    try:
        return await client.get_task_status(task_id)
    except RemoteServiceError as exc:
        raise TransientPollError(str(exc), task_id=task_id, status_code=exc.status_code) from exc
    except (httpx.HTTPError, ValueError) as exc:
        raise TransientPollError(f"Status request failed: {exc}", task_id=task_id) from exc


async def poll_task(
    client: RemoteTaskClient,
    task_id: str,
    *,
    poll_interval_ms: int,
    max_attempts: int,
    control: Optional[BatchControl] = None,
    log: Optional[logging.Logger] = None,
) -> TaskOutcome:
    """
    Query the task until it is terminal, the budget runs out, or the batch is cancelled.

    Transient failures only consume budget. Timeout and cancellation come back
    as outcomes rather than exceptions so the caller can record them.
    """
    log = log or logger
    control = control or BatchControl()
    interval = poll_interval_ms / 1000

    for attempt in range(1, max_attempts + 1):
        if control.cancelled or await control.sleep(interval):
            log.info("Polling of task %s cancelled after %d attempt(s)", task_id, attempt - 1)
            return TaskOutcome(
                classification=Classification.CANCELLED,
                result_summary="Cancelled by user",
                attempts=attempt - 1,
            )

        try:
            status = await _fetch_status(client, task_id)
        except TransientPollError as exc:
            log.warning("Poll %d/%d for task %s failed: %s", attempt, max_attempts, task_id, exc)
            continue

        classification = classify_remote_status(status)
        log.debug("Task %s status: %s (poll %d/%d)", task_id, status.status, attempt, max_attempts)
        if classification is not None:
            return build_outcome(status, classification, attempt)

    timeout = PollTimeout(max_attempts, task_id=task_id)
    log.warning(timeout.message)
    return TaskOutcome(
        classification=Classification.TIMED_OUT,
        result_summary=timeout.message,
        attempts=max_attempts,
    )


async def refresh_test_status(
    client: RemoteTaskClient,
    store: "BatchStore",
    test_id: str,
    log: Optional[logging.Logger] = None,
) -> TestCase:
    """One-shot status refresh for a test left RUNNING, using the shared classifier."""
    log = log or logger
    test = await store.get_test(test_id)
    if test.status is not TestStatus.RUNNING or not test.task_id:
        return test

    try:
        status = await _fetch_status(client, test.task_id)
    except TransientPollError as exc:
        log.warning("Status refresh for test %s failed: %s", test_id, exc)
        return test

    classification = classify_remote_status(status)
    if classification is None:
        return test

    outcome = build_outcome(status, classification, attempts=1)
    final_status, reasoning = classify_outcome(outcome, test.expected_result)
    return await store.update_test(
        test_id,
        status=final_status,
        last_run_at=utcnow(),
        execution_time_ms=outcome.execution_time_ms,
        step_count=outcome.step_count,
        result_summary=outcome.result_summary or reasoning,
        result_reasoning=reasoning,
    )
