"""Background execution of batch jobs on the running event loop."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from exceptions import InvalidBatchStateError
from polling import BatchControl

BatchJob = Callable[[BatchControl], Awaitable[Any]]


class BatchQueue:
    """
    Bounded pool of batch jobs keyed by batch id.

    ``submit`` returns immediately; at most ``max_concurrent`` jobs run at the
    same time and the rest wait for a slot. Each job receives its own
    ``BatchControl`` so it can be paused or cancelled from outside.
    """

    def __init__(self, max_concurrent: int = 4, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("batch_queue")
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active: Dict[str, asyncio.Task] = {}
        self._controls: Dict[str, BatchControl] = {}

    def submit(self, batch_id: str, job: BatchJob) -> BatchControl:
        if batch_id in self._active:
            raise InvalidBatchStateError("Batch is already queued", batch_id=batch_id)

        control = BatchControl()

        async def worker() -> None:
            async with self._semaphore:
                if control.cancelled:
                    self.logger.info("Batch %s cancelled before it started", batch_id)
                    return
                self.logger.info("Batch job start: %s", batch_id)
                try:
                    await job(control)
                except Exception:
                    self.logger.exception("Batch job failed: %s", batch_id)
                finally:
                    self.logger.info("Batch job finished: %s", batch_id)

        task = asyncio.create_task(worker(), name=f"batch-{batch_id}")
        self._active[batch_id] = task
        self._controls[batch_id] = control
        task.add_done_callback(lambda t: self._forget(batch_id))
        self.logger.info("Batch job queued: %s", batch_id)
        return control

    def _forget(self, batch_id: str) -> None:
        self._active.pop(batch_id, None)
        self._controls.pop(batch_id, None)

    def control(self, batch_id: str) -> Optional[BatchControl]:
        return self._controls.get(batch_id)

    def is_active(self, batch_id: str) -> bool:
        return batch_id in self._active

    def active_batch_ids(self) -> List[str]:
        return list(self._active)

    async def join(self) -> None:
        """Wait for every queued or running job to finish."""
        while self._active:
            await asyncio.gather(*list(self._active.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Ask every job to stop at its next checkpoint, then wait for them."""
        for control in list(self._controls.values()):
            control.cancel()
        await self.join()
