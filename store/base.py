"""Persistence interface consumed by the batch orchestrator."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional

from test_types import BatchRun, BatchStatus, Credential, Project, TestCase


class BatchStore(ABC):
    """
    Row-level access to tests, projects, credentials and batch runs.

    Every ``update_*`` call is a single atomic row update that returns the
    updated row; ``get_*`` raises ``NotFoundError`` for unknown ids.
    """

    async def init(self) -> None:
        """Prepare the backing storage."""

    async def close(self) -> None:
        """Release the backing storage."""

    @abstractmethod
    async def get_test(self, test_id: str) -> TestCase:
        pass

    @abstractmethod
    async def update_test(self, test_id: str, **fields: Any) -> TestCase:
        pass

    @abstractmethod
    async def list_tests_by_project(self, project_id: str) -> List[TestCase]:
        pass

    @abstractmethod
    async def list_tests_by_status(self, status: Any) -> List[TestCase]:
        pass

    @abstractmethod
    async def get_project(self, project_id: str) -> Project:
        pass

    @abstractmethod
    async def list_credentials(self, project_id: str) -> List[Credential]:
        pass

    @abstractmethod
    async def create_batch(self, batch: BatchRun) -> BatchRun:
        pass

    @abstractmethod
    async def get_batch(self, batch_id: str) -> BatchRun:
        pass

    @abstractmethod
    async def update_batch(self, batch_id: str, **fields: Any) -> BatchRun:
        pass

    @abstractmethod
    async def list_batches(
        self,
        owner_id: Optional[str] = None,
        statuses: Optional[Iterable[BatchStatus]] = None,
    ) -> List[BatchRun]:
        pass

    # Seeding helpers used by the web layer and by tests.

    @abstractmethod
    async def add_test(self, test: TestCase) -> TestCase:
        pass

    @abstractmethod
    async def add_project(self, project: Project) -> Project:
        pass

    @abstractmethod
    async def add_credential(self, credential: Credential) -> Credential:
        pass
