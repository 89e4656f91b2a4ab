"""Service layer called by the web application to run and observe batches."""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from batch_runner import BatchOrchestrator
from config import AppConfig
from exceptions import BatchConflictError, BatchOwnershipError, InvalidBatchStateError, NotFoundError
from polling import BatchControl, refresh_test_status
from remote_client import RemoteTaskClient
from store import BatchStore
from task_queue import BatchQueue
from test_types import BatchRun, BatchStatus, TestCase, TestStatus, utcnow

INTERRUPTED_SUMMARY = "Interrupted: the batch runner stopped before this test finished"


class BatchService:
    """Glue between the inbound trigger, the job queue and the orchestrator."""

    def __init__(
        self,
        store: BatchStore,
        client: RemoteTaskClient,
        config: AppConfig,
        queue: Optional[BatchQueue] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.client = client
        self.config = config
        self.queue = queue or BatchQueue(config.server.max_concurrent_batches)
        self.logger = logger or logging.getLogger("batch_service")

    async def create_batch(
        self,
        test_ids: Sequence[str],
        owner_id: str,
        batch_id: Optional[str] = None,
    ) -> BatchRun:
        """Record a new PENDING batch."""
        if not test_ids:
            raise ValueError("A batch needs at least one test id")
        batch = BatchRun(
            id=batch_id or str(uuid.uuid4()),
            owner_id=owner_id,
            test_ids=list(test_ids),
            total_tests=len(test_ids),
        )
        return await self.store.create_batch(batch)

    async def start_batch(
        self,
        batch_id: str,
        test_ids: Sequence[str],
        user_id: str,
        delay_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Schedule a PENDING batch in the background and return at once."""
        if not batch_id or not test_ids or not user_id:
            raise ValueError("Missing required fields: batchId, testIds, userId")
        if delay_seconds is not None:
            if isinstance(delay_seconds, bool) or not isinstance(delay_seconds, (int, float)) or delay_seconds < 0:
                raise ValueError("batchDelaySeconds must be a non-negative number")

        batch = await self.store.get_batch(batch_id)
        if batch.owner_id != user_id:
            self.logger.warning("User %s tried to start batch %s owned by %s", user_id, batch_id, batch.owner_id)
            raise BatchOwnershipError("Batch belongs to another user", batch_id=batch_id, user_id=user_id)

        active = [
            b
            for b in await self.store.list_batches(
                owner_id=user_id, statuses=(BatchStatus.PENDING, BatchStatus.RUNNING)
            )
            if b.id != batch_id
        ]
        if active:
            self.logger.info("User %s already has active batch %s", user_id, active[0].id)
            raise BatchConflictError(
                "Another batch is already running. Wait for it to finish or cancel it.",
                running_batch_id=active[0].id,
            )

        if batch.status is not BatchStatus.PENDING or self.queue.is_active(batch_id):
            raise InvalidBatchStateError("Batch has already been started", batch_id=batch_id, status=batch.status.value)

        ids = list(test_ids)
        await self.store.update_batch(batch_id, test_ids=ids, total_tests=len(ids))

        async def job(control: BatchControl) -> None:
            await self._run(batch_id, ids, user_id, control, delay_seconds)

        self.queue.submit(batch_id, job)
        self.logger.info("Batch %s scheduled with %d test(s)", batch_id, len(ids))
        return {"success": True, "batchId": batch_id, "totalTests": len(ids)}

    async def _run(
        self,
        batch_id: str,
        test_ids: List[str],
        user_id: str,
        control: BatchControl,
        delay_seconds: Optional[float] = None,
    ) -> None:
        orchestrator = BatchOrchestrator(
            store=self.store,
            client=self.client,
            remote_config=self.config.remote,
            config=self.config.orchestrator,
        )
        try:
            await orchestrator.run_batch(batch_id, test_ids, user_id, control=control, delay_seconds=delay_seconds)
        except Exception:
            batch = await self.store.get_batch(batch_id)
            if batch.status is BatchStatus.RUNNING:
                await self._interrupt(batch)
            raise

    async def get_progress(self, batch_id: str) -> BatchRun:
        return await self.store.get_batch(batch_id)

    async def cancel_batch(self, batch_id: str) -> BatchRun:
        batch = await self.store.get_batch(batch_id)
        if batch.status.is_terminal:
            raise InvalidBatchStateError("Batch has already finished", batch_id=batch_id, status=batch.status.value)

        control = self.queue.control(batch_id)
        if control is not None:
            # The orchestrator records the final state at its next checkpoint.
            control.cancel()
            self.logger.info("Cancellation requested for batch %s", batch_id)
            if batch.status is BatchStatus.RUNNING:
                return batch

        self.logger.info("Marking batch %s cancelled", batch_id)
        return await self.store.update_batch(
            batch_id,
            status=BatchStatus.CANCELLED,
            current_test_id=None,
            paused=False,
            completed_at=utcnow(),
        )

    async def pause_batch(self, batch_id: str) -> BatchRun:
        control = await self._live_control(batch_id)
        control.pause()
        return await self.store.update_batch(batch_id, paused=True)

    async def resume_batch(self, batch_id: str) -> BatchRun:
        control = await self._live_control(batch_id)
        control.resume()
        return await self.store.update_batch(batch_id, paused=False)

    async def _live_control(self, batch_id: str) -> BatchControl:
        batch = await self.store.get_batch(batch_id)
        control = self.queue.control(batch_id)
        if control is None or batch.status.is_terminal:
            raise InvalidBatchStateError("Batch is not running", batch_id=batch_id, status=batch.status.value)
        return control

    async def refresh_test(self, test_id: str) -> TestCase:
        return await refresh_test_status(self.client, self.store, test_id)

    async def reconcile_orphaned_batches(self) -> List[str]:
        """Mark RUNNING batches without a live job as INTERRUPTED; returns their ids."""
        orphaned = [
            b
            for b in await self.store.list_batches(statuses=(BatchStatus.RUNNING,))
            if not self.queue.is_active(b.id)
        ]
        for batch in orphaned:
            await self._interrupt(batch)
        if orphaned:
            self.logger.warning(
                "Marked %d orphaned batch(es) as interrupted: %s",
                len(orphaned),
                ", ".join(b.id for b in orphaned),
            )
        return [b.id for b in orphaned]

    async def _interrupt(self, batch: BatchRun) -> None:
        for test_id in batch.test_ids:
            try:
                test = await self.store.get_test(test_id)
            except NotFoundError as exc:
                self.logger.debug("Skipping test %s of batch %s: %s", test_id, batch.id, exc)
                continue
            if test.status is TestStatus.RUNNING:
                await self.store.update_test(
                    test_id,
                    status=TestStatus.FAILED,
                    last_run_at=utcnow(),
                    result_summary=INTERRUPTED_SUMMARY,
                )
        await self.store.update_batch(
            batch.id,
            status=BatchStatus.INTERRUPTED,
            current_test_id=None,
            paused=False,
            completed_at=utcnow(),
        )
