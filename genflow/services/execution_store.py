"""Execution persistence.

The store is the single source of truth for execution records and dead
letters. Reads always return copies, so callers never share mutable state
with the store or with each other.
"""

from abc import ABC, abstractmethod

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from genflow.models.dead_letter import DeadLetter
from genflow.models.execution import (
    TERMINAL_EXECUTION_STATUSES,
    Execution,
    ExecutionRecord,
    ExecutionStatus,
)

logger = structlog.get_logger()


class ExecutionStoreError(Exception):
    """Error in execution store operations."""

    pass


class ExecutionNotFoundError(ExecutionStoreError):
    """Execution not found."""

    pass


class ExecutionStore(ABC):
    """Keyed storage for execution records and dead letters."""

    @abstractmethod
    async def create(self, record: ExecutionRecord) -> ExecutionRecord:
        """Insert a new record."""
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> ExecutionRecord:
        """Get a copy of a record.

        Raises:
            ExecutionNotFoundError: If no record has this ID
        """
        pass

    @abstractmethod
    async def save(self, record: ExecutionRecord) -> None:
        """Overwrite an existing record."""
        pass

    @abstractmethod
    async def list_all(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionRecord]:
        """List records, newest first."""
        pass

    @abstractmethod
    async def list_active(self) -> list[ExecutionRecord]:
        """Records that have not reached a terminal status."""
        pass

    @abstractmethod
    async def add_dead_letter(self, entry: DeadLetter) -> DeadLetter:
        """Store a dead letter. A second entry for the same job is ignored."""
        pass

    @abstractmethod
    async def list_dead_letters(
        self,
        execution_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeadLetter]:
        """List dead letters, newest first."""
        pass


class InMemoryExecutionStore(ExecutionStore):
    """Process-local store used by tests and single-node development runs."""

    def __init__(self) -> None:
        self._records: dict[str, ExecutionRecord] = {}
        self._dead_letters: dict[str, DeadLetter] = {}

    async def create(self, record: ExecutionRecord) -> ExecutionRecord:
        if record.id in self._records:
            raise ExecutionStoreError(f"Execution '{record.id}' already exists")
        self._records[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def get(self, execution_id: str) -> ExecutionRecord:
        record = self._records.get(execution_id)
        if record is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")
        return record.model_copy(deep=True)

    async def save(self, record: ExecutionRecord) -> None:
        if record.id not in self._records:
            raise ExecutionNotFoundError(f"Execution '{record.id}' not found")
        self._records[record.id] = record.model_copy(deep=True)

    async def list_all(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionRecord]:
        records = [
            r for r in self._records.values()
            if (workflow_id is None or r.workflow_id == workflow_id)
            and (status is None or r.status == status)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[offset:offset + limit]]

    async def list_active(self) -> list[ExecutionRecord]:
        return [
            r.model_copy(deep=True)
            for r in self._records.values()
            if r.status not in TERMINAL_EXECUTION_STATUSES
        ]

    async def add_dead_letter(self, entry: DeadLetter) -> DeadLetter:
        existing = self._dead_letters.get(entry.job_id)
        if existing is not None:
            return existing.model_copy()
        self._dead_letters[entry.job_id] = entry.model_copy()
        return entry.model_copy()

    async def list_dead_letters(
        self,
        execution_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeadLetter]:
        entries = [
            e for e in self._dead_letters.values()
            if execution_id is None or e.execution_id == execution_id
        ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy() for e in entries[offset:offset + limit]]


class SqlExecutionStore(ExecutionStore):
    """Store backed by the execution and dead_letter tables.

    Each operation runs in its own session so the store can be shared by
    background tasks that outlive any request.

    Example usage:
        store = SqlExecutionStore(async_session_maker)
        record = await store.get("exec-123")
    """

    def __init__(self, session_maker: sessionmaker) -> None:
        """Initialize the store.

        Args:
            session_maker: Factory for AsyncSession instances
        """
        self._session_maker = session_maker

    async def create(self, record: ExecutionRecord) -> ExecutionRecord:
        async with self._session_maker() as session:
            session.add(Execution.from_record(record))
            await session.commit()
        logger.debug("execution_stored", execution_id=record.id)
        return record.model_copy(deep=True)

    async def get(self, execution_id: str) -> ExecutionRecord:
        async with self._session_maker() as session:
            row = await self._get_row(session, execution_id)
            return row.get_record()

    async def save(self, record: ExecutionRecord) -> None:
        async with self._session_maker() as session:
            row = await self._get_row(session, record.id)
            row.set_record(record)
            await session.commit()

    async def list_all(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionRecord]:
        query = (
            select(Execution)
            .order_by(Execution.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        if workflow_id:
            query = query.where(Execution.workflow_id == workflow_id)
        if status:
            query = query.where(Execution.status == status)

        async with self._session_maker() as session:
            result = await session.execute(query)
            return [row.get_record() for row in result.scalars().all()]

    async def list_active(self) -> list[ExecutionRecord]:
        query = select(Execution).where(
            Execution.status.not_in(list(TERMINAL_EXECUTION_STATUSES))
        )
        async with self._session_maker() as session:
            result = await session.execute(query)
            return [row.get_record() for row in result.scalars().all()]

    async def add_dead_letter(self, entry: DeadLetter) -> DeadLetter:
        async with self._session_maker() as session:
            result = await session.execute(
                select(DeadLetter).where(DeadLetter.job_id == entry.job_id)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return existing

            session.add(entry)
            await session.commit()
            await session.refresh(entry)
            return entry

    async def list_dead_letters(
        self,
        execution_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeadLetter]:
        query = (
            select(DeadLetter)
            .order_by(DeadLetter.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        if execution_id:
            query = query.where(DeadLetter.execution_id == execution_id)

        async with self._session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _get_row(self, session: AsyncSession, execution_id: str) -> Execution:
        result = await session.execute(select(Execution).where(Execution.id == execution_id))
        row = result.scalar_one_or_none()
        if row is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")
        return row
