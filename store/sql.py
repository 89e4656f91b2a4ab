"""Relational store backed by SQLAlchemy 2.0 async sessions."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from exceptions import NotFoundError
from store.base import BatchStore
from test_types import BatchRun, BatchStatus, Credential, Project, TestCase, TestStatus, utcnow


class Base(DeclarativeBase):
    pass


class ProjectRow(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    setup_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    base_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    max_steps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    record_video: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    batch_delay_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class CredentialRow(Base):
    __tablename__ = "project_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[Optional[str]] = mapped_column(ForeignKey("projects.id"), index=True, nullable=True)
    username: Mapped[str] = mapped_column(String(255))
    password: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class TestRow(Base):
    __tablename__ = "generated_tests"
    __test__ = False

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[Optional[str]] = mapped_column(ForeignKey("projects.id"), index=True, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    prompt: Mapped[str] = mapped_column(Text)
    expected_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=TestStatus.PENDING.value, index=True)
    task_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    step_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    estimated_cost: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class BatchRow(Base):
    __tablename__ = "test_batch_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    test_ids: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(20), default=BatchStatus.PENDING.value, index=True)
    total_tests: Mapped[int] = mapped_column(Integer, default=0)
    completed_tests: Mapped[int] = mapped_column(Integer, default=0)
    passed_tests: Mapped[int] = mapped_column(Integer, default=0)
    failed_tests: Mapped[int] = mapped_column(Integer, default=0)
    current_test_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    paused: Mapped[bool] = mapped_column(Boolean, default=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return list(value)
    return value


def _to_test(row: TestRow) -> TestCase:
    return TestCase(
        id=row.id,
        prompt=row.prompt,
        project_id=row.project_id,
        title=row.title,
        expected_result=row.expected_result,
        status=TestStatus(row.status),
        task_id=row.task_id,
        last_run_at=_aware(row.last_run_at),
        execution_time_ms=row.execution_time_ms,
        result_summary=row.result_summary,
        result_reasoning=row.result_reasoning,
        step_count=row.step_count,
        estimated_cost=row.estimated_cost,
    )


def _to_project(row: ProjectRow) -> Project:
    return Project(
        id=row.id,
        setup_prompt=row.setup_prompt,
        base_url=row.base_url,
        max_steps=row.max_steps,
        record_video=row.record_video,
        batch_delay_seconds=row.batch_delay_seconds,
    )


def _to_credential(row: CredentialRow) -> Credential:
    return Credential(
        username=row.username,
        password=row.password,
        description=row.description,
        project_id=row.project_id,
    )


def _to_batch(row: BatchRow) -> BatchRun:
    return BatchRun(
        id=row.id,
        owner_id=row.owner_id,
        test_ids=list(row.test_ids or []),
        status=BatchStatus(row.status),
        total_tests=row.total_tests,
        completed_tests=row.completed_tests,
        passed_tests=row.passed_tests,
        failed_tests=row.failed_tests,
        current_test_id=row.current_test_id,
        paused=row.paused,
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        updated_at=_aware(row.updated_at),
    )


class SqlStore(BatchStore):
    """``BatchStore`` on any SQLAlchemy async dialect (aiosqlite by default)."""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=echo)
        self._sessions = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def _get_row(self, session: AsyncSession, model: type, row_id: str, entity: str) -> Any:
        row = await session.get(model, row_id)
        if row is None:
            raise NotFoundError(f"{entity.capitalize()} not found: {row_id}", entity=entity, entity_id=row_id)
        return row

    async def get_test(self, test_id: str) -> TestCase:
        async with self._sessions() as session:
            return _to_test(await self._get_row(session, TestRow, test_id, "test"))

    async def update_test(self, test_id: str, **fields: Any) -> TestCase:
        async with self._sessions.begin() as session:
            row = await self._get_row(session, TestRow, test_id, "test")
            for name, value in fields.items():
                setattr(row, name, _column_value(value))
        return _to_test(row)

    async def list_tests_by_project(self, project_id: str) -> List[TestCase]:
        async with self._sessions() as session:
            result = await session.scalars(select(TestRow).where(TestRow.project_id == project_id))
            return [_to_test(row) for row in result]

    async def list_tests_by_status(self, status: TestStatus) -> List[TestCase]:
        async with self._sessions() as session:
            result = await session.scalars(select(TestRow).where(TestRow.status == status.value))
            return [_to_test(row) for row in result]

    async def get_project(self, project_id: str) -> Project:
        async with self._sessions() as session:
            return _to_project(await self._get_row(session, ProjectRow, project_id, "project"))

    async def list_credentials(self, project_id: str) -> List[Credential]:
        async with self._sessions() as session:
            result = await session.scalars(
                select(CredentialRow).where(CredentialRow.project_id == project_id).order_by(CredentialRow.id)
            )
            return [_to_credential(row) for row in result]

    async def create_batch(self, batch: BatchRun) -> BatchRun:
        row = BatchRow(
            id=batch.id,
            owner_id=batch.owner_id,
            test_ids=list(batch.test_ids),
            status=batch.status.value,
            total_tests=batch.total_tests,
            completed_tests=batch.completed_tests,
            passed_tests=batch.passed_tests,
            failed_tests=batch.failed_tests,
            current_test_id=batch.current_test_id,
            paused=batch.paused,
            started_at=batch.started_at,
            completed_at=batch.completed_at,
            updated_at=utcnow(),
        )
        async with self._sessions.begin() as session:
            session.add(row)
        return _to_batch(row)

    async def get_batch(self, batch_id: str) -> BatchRun:
        async with self._sessions() as session:
            return _to_batch(await self._get_row(session, BatchRow, batch_id, "batch"))

    async def update_batch(self, batch_id: str, **fields: Any) -> BatchRun:
        fields.setdefault("updated_at", utcnow())
        async with self._sessions.begin() as session:
            row = await self._get_row(session, BatchRow, batch_id, "batch")
            for name, value in fields.items():
                setattr(row, name, _column_value(value))
        return _to_batch(row)

    async def list_batches(
        self,
        owner_id: Optional[str] = None,
        statuses: Optional[Iterable[BatchStatus]] = None,
    ) -> List[BatchRun]:
        query = select(BatchRow)
        if owner_id is not None:
            query = query.where(BatchRow.owner_id == owner_id)
        if statuses is not None:
            query = query.where(BatchRow.status.in_([s.value for s in statuses]))
        async with self._sessions() as session:
            result = await session.scalars(query)
            return [_to_batch(row) for row in result]

    async def add_test(self, test: TestCase) -> TestCase:
        row = TestRow(
            id=test.id,
            project_id=test.project_id,
            title=test.title,
            prompt=test.prompt,
            expected_result=test.expected_result,
            status=test.status.value,
            task_id=test.task_id,
            last_run_at=test.last_run_at,
            execution_time_ms=test.execution_time_ms,
            result_summary=test.result_summary,
            result_reasoning=test.result_reasoning,
            step_count=test.step_count,
            estimated_cost=test.estimated_cost,
        )
        async with self._sessions.begin() as session:
            session.add(row)
        return _to_test(row)

    async def add_project(self, project: Project) -> Project:
        row = ProjectRow(
            id=project.id,
            setup_prompt=project.setup_prompt,
            base_url=project.base_url,
            max_steps=project.max_steps,
            record_video=project.record_video,
            batch_delay_seconds=project.batch_delay_seconds,
        )
        async with self._sessions.begin() as session:
            session.add(row)
        return _to_project(row)

    async def add_credential(self, credential: Credential) -> Credential:
        row = CredentialRow(
            project_id=credential.project_id,
            username=credential.username,
            password=credential.password,
            description=credential.description,
        )
        async with self._sessions.begin() as session:
            session.add(row)
        return _to_credential(row)
