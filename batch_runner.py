"""Sequential batch orchestrator for remote browser-automation tests."""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import OrchestratorConfig, RemoteConfig
from evaluation import classify_outcome
from exceptions import ConcurrencyLimitError, InvalidBatchStateError
from polling import BatchControl, poll_task
from prompts import compose_prompt
from remote_client import RemoteTaskClient
from store import BatchStore
from test_types import (
    BatchRun,
    BatchStatus,
    Classification,
    Credential,
    Project,
    TaskOutcome,
    TestStatus,
    utcnow,
)


BASE_TASK_COST = 0.01
COST_PER_STEP = 0.01
COST_PER_MINUTE = {True: 0.008, False: 0.004}


def estimate_cost(step_count: Optional[int], execution_time_ms: Optional[int], record_video: bool) -> float:
    """Approximate remote spend for one task: a base fee, a per-step fee and a per-minute proxy rate."""
    minutes = (execution_time_ms or 0) / 60000
    return round(BASE_TASK_COST + (step_count or 0) * COST_PER_STEP + minutes * COST_PER_MINUTE[record_video], 4)


class BatchOrchestrator:
    """Drives one batch run to a terminal status, one test at a time."""

    def __init__(
        self,
        store: BatchStore,
        client: RemoteTaskClient,
        remote_config: RemoteConfig,
        config: Optional[OrchestratorConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.client = client
        self.remote_config = remote_config
        self.config = config or OrchestratorConfig()
        self.logger = logger or logging.getLogger("batch_runner")

    async def run_batch(
        self,
        batch_id: str,
        test_ids: Sequence[str],
        owner_id: str,
        control: Optional[BatchControl] = None,
        delay_seconds: Optional[float] = None,
    ) -> BatchRun:
        """
        Run every test of a PENDING batch in order and return the final batch row.

        ``delay_seconds`` overrides the per-project and configured pause between tests.
        """
        control = control or BatchControl()
        batch = await self.store.get_batch(batch_id)
        if batch.status is not BatchStatus.PENDING:
            raise InvalidBatchStateError(
                "Batch must be pending to start", batch_id=batch_id, status=batch.status.value
            )

        batch = await self.store.update_batch(
            batch_id,
            status=BatchStatus.RUNNING,
            started_at=utcnow(),
            total_tests=len(test_ids),
            test_ids=list(test_ids),
            current_test_id=None,
        )
        self.logger.info(f"[Batch {batch_id}] Started by {owner_id} with {len(test_ids)} test(s)")

        for index, test_id in enumerate(test_ids):
            if control.paused:
                await self.store.update_batch(batch_id, paused=True)
                self.logger.info(f"[Batch {batch_id}] Paused before test {index + 1}/{len(test_ids)}")
                await control.wait_if_paused()
                await self.store.update_batch(batch_id, paused=False)

            if control.cancelled:
                break

            self.logger.info(f"[Batch {batch_id}] === Running test {test_id} ({index + 1}/{len(test_ids)}) ===")
            await self.store.update_batch(batch_id, current_test_id=test_id)

            passed, delay = await self._run_test(batch_id, test_id, control, delay_seconds)

            batch = await self.store.update_batch(
                batch_id,
                completed_tests=batch.completed_tests + 1,
                passed_tests=batch.passed_tests + (1 if passed else 0),
                failed_tests=batch.failed_tests + (0 if passed else 1),
                current_test_id=None,
            )
            self.logger.info(
                f"[Batch {batch_id}] Progress {batch.completed_tests}/{batch.total_tests} "
                f"({batch.passed_tests} passed, {batch.failed_tests} failed)"
            )

            has_more = index + 1 < len(test_ids)
            if has_more and not control.cancelled and delay > 0:
                self.logger.info(f"[Batch {batch_id}] Waiting {delay:g}s before the next test")
                await control.sleep(delay)

        final_status = BatchStatus.CANCELLED if control.cancelled else BatchStatus.COMPLETED
        batch = await self.store.update_batch(
            batch_id,
            status=final_status,
            current_test_id=None,
            paused=False,
            completed_at=utcnow(),
        )
        self.logger.info(
            f"[Batch {batch_id}] {final_status.value.capitalize()}: {batch.completed_tests} run, "
            f"{batch.passed_tests} passed, {batch.failed_tests} failed"
        )
        return batch

    def resolve_delay(self, project: Optional[Project], override: Optional[float] = None) -> float:
        """Request override, then the project's setting, then the configured default; never below the floor."""
        if override is not None:
            delay = override
        elif project is not None and project.batch_delay_seconds is not None:
            delay = project.batch_delay_seconds
        else:
            delay = self.config.inter_test_delay_seconds
        return max(delay, self.config.min_inter_test_delay_seconds)

    def _task_options(self, project: Optional[Project]) -> Tuple[int, bool]:
        max_steps = project.max_steps if project and project.max_steps else self.config.default_max_steps
        record_video = (
            project.record_video
            if project and project.record_video is not None
            else self.config.default_record_video
        )
        return max_steps, record_video

    async def _run_test(
        self,
        batch_id: str,
        test_id: str,
        control: BatchControl,
        delay_override: Optional[float] = None,
    ) -> Tuple[bool, float]:
        """Run one test and persist its final status; never raises. Returns (passed, delay before the next test)."""
        task_id: Optional[str] = None
        outcome: Optional[TaskOutcome] = None
        delay = self.resolve_delay(None, delay_override)
        try:
            test = await self.store.get_test(test_id)

            project: Optional[Project] = None
            credentials: List[Credential] = []
            if test.project_id:
                project = await self.store.get_project(test.project_id)
                credentials = await self.store.list_credentials(test.project_id)
                delay = self.resolve_delay(project, delay_override)

            prompt = compose_prompt(
                test.prompt,
                base_url=project.base_url if project else None,
                setup_prompt=project.setup_prompt if project else None,
                credentials=credentials,
                expected_result=test.expected_result,
            )
            max_steps, record_video = self._task_options(project)

            await self.store.update_test(test_id, status=TestStatus.RUNNING, last_run_at=utcnow(), task_id=None)
            task_id = await self._create_task(batch_id, prompt, max_steps, record_video)
            await self.store.update_test(test_id, task_id=task_id)
            self.logger.info(f"[Batch {batch_id}] Remote task {task_id} created for test {test_id}")

            outcome = await poll_task(
                self.client,
                task_id,
                poll_interval_ms=self.remote_config.poll_interval_ms,
                max_attempts=self.remote_config.max_poll_attempts,
                control=control,
                log=self.logger,
            )
            status, reasoning = classify_outcome(outcome, test.expected_result)
            cost = estimate_cost(outcome.step_count, outcome.execution_time_ms, record_video)
            await self.store.update_test(
                test_id,
                status=status,
                last_run_at=utcnow(),
                execution_time_ms=outcome.execution_time_ms,
                result_summary=outcome.result_summary or reasoning,
                result_reasoning=reasoning,
                step_count=outcome.step_count,
                estimated_cost=cost,
            )
            self.logger.info(
                f"[Batch {batch_id}] Test {test_id} {status.value}: {reasoning} "
                f"(steps={outcome.step_count}, cost=${cost:.4f})"
            )
            return status is TestStatus.PASSED, delay
        except Exception as exc:
            self.logger.error(f"[Batch {batch_id}] Test {test_id} crashed: {exc}", exc_info=True)
            await self._record_failure(batch_id, test_id, str(exc))
            return False, delay
        finally:
            if task_id and (outcome is None or outcome.classification in (Classification.TIMED_OUT, Classification.CANCELLED)):
                await self._stop_quietly(batch_id, task_id)

    async def _create_task(self, batch_id: str, prompt: str, max_steps: int, record_video: bool) -> str:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.create_retry_attempts),
            wait=wait_exponential(
                multiplier=self.config.create_retry_wait_seconds,
                min=self.config.create_retry_wait_seconds,
                max=self.config.create_retry_max_wait_seconds,
            ),
            retry=retry_if_exception_type(ConcurrencyLimitError),
            reraise=True,
        )
        task_id = ""
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self.logger.info(
                        f"[Batch {batch_id}] Retrying task creation "
                        f"(attempt {attempt.retry_state.attempt_number}/{self.config.create_retry_attempts})"
                    )
                task_id = await self.client.create_task(
                    prompt,
                    max_steps=max_steps,
                    record_video=record_video,
                    save_browser_data=self.config.save_browser_data,
                )
        return task_id

    async def _record_failure(self, batch_id: str, test_id: str, message: str) -> None:
        try:
            await self.store.update_test(
                test_id,
                status=TestStatus.FAILED,
                last_run_at=utcnow(),
                execution_time_ms=None,
                step_count=None,
                estimated_cost=None,
                result_summary=f"Error: {message}",
                result_reasoning=None,
            )
        except Exception as exc:
            # Missing test rows cannot be updated; the batch counters still record the failure.
            self.logger.warning(f"[Batch {batch_id}] Could not record failure for test {test_id}: {exc}")

    async def _stop_quietly(self, batch_id: str, task_id: str) -> None:
        try:
            await self.client.stop_task(task_id)
        except Exception as exc:
            self.logger.warning(f"[Batch {batch_id}] Could not stop remote task {task_id}: {exc}")
