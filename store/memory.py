"""In-process store used for tests and single-process deployments."""
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from exceptions import NotFoundError
from store.base import BatchStore
from test_types import BatchRun, BatchStatus, Credential, Project, TestCase, TestStatus, utcnow


class MemoryStore(BatchStore):
    """Dict-backed store; updates never await, so each one is atomic on the event loop."""

    def __init__(self) -> None:
        self._tests: Dict[str, TestCase] = {}
        self._projects: Dict[str, Project] = {}
        self._credentials: List[Credential] = []
        self._batches: Dict[str, BatchRun] = {}

    async def get_test(self, test_id: str) -> TestCase:
        test = self._tests.get(test_id)
        if test is None:
            raise NotFoundError(f"Test not found: {test_id}", entity="test", entity_id=test_id)
        return replace(test)

    async def update_test(self, test_id: str, **fields: Any) -> TestCase:
        current = await self.get_test(test_id)
        self._tests[test_id] = replace(current, **fields)
        return replace(self._tests[test_id])

    async def list_tests_by_project(self, project_id: str) -> List[TestCase]:
        return [replace(t) for t in self._tests.values() if t.project_id == project_id]

    async def list_tests_by_status(self, status: TestStatus) -> List[TestCase]:
        return [replace(t) for t in self._tests.values() if t.status is status]

    async def get_project(self, project_id: str) -> Project:
        project = self._projects.get(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}", entity="project", entity_id=project_id)
        return replace(project)

    async def list_credentials(self, project_id: str) -> List[Credential]:
        return [replace(c) for c in self._credentials if c.project_id == project_id]

    async def create_batch(self, batch: BatchRun) -> BatchRun:
        self._batches[batch.id] = replace(batch, test_ids=list(batch.test_ids), updated_at=utcnow())
        return await self.get_batch(batch.id)

    async def get_batch(self, batch_id: str) -> BatchRun:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch not found: {batch_id}", entity="batch", entity_id=batch_id)
        return replace(batch, test_ids=list(batch.test_ids))

    async def update_batch(self, batch_id: str, **fields: Any) -> BatchRun:
        current = await self.get_batch(batch_id)
        fields.setdefault("updated_at", utcnow())
        self._batches[batch_id] = replace(current, **fields)
        return await self.get_batch(batch_id)

    async def list_batches(
        self,
        owner_id: Optional[str] = None,
        statuses: Optional[Iterable[BatchStatus]] = None,
    ) -> List[BatchRun]:
        wanted = set(statuses) if statuses is not None else None
        return [
            replace(b, test_ids=list(b.test_ids))
            for b in self._batches.values()
            if (owner_id is None or b.owner_id == owner_id) and (wanted is None or b.status in wanted)
        ]

    async def add_test(self, test: TestCase) -> TestCase:
        self._tests[test.id] = replace(test)
        return replace(test)

    async def add_project(self, project: Project) -> Project:
        self._projects[project.id] = replace(project)
        return replace(project)

    async def add_credential(self, credential: Credential) -> Credential:
        self._credentials.append(replace(credential))
        return replace(credential)
