"""API dependencies for FastAPI dependency injection.

Provides database sessions, the execution engine and service instances.
"""

from functools import lru_cache
from typing import Annotated, AsyncGenerator

import structlog
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from genflow.config import settings
from genflow.services.execution_service import ExecutionEngine, ExecutionService, get_engine
from genflow.services.workflow_service import WorkflowService

logger = structlog.get_logger()


@lru_cache
def get_db_engine() -> AsyncEngine:
    """Database engine, created on first use.

    Pool sizing applies to server databases only; SQLite keeps its default pool.
    """
    if settings.database_url.startswith("sqlite"):
        return create_async_engine(settings.database_url, echo=settings.debug)
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
    )


@lru_cache
def get_session_maker() -> sessionmaker:
    """Session factory bound to the database engine."""
    return sessionmaker(
        get_db_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db() -> None:
    """Initialize database tables.

    Only call during development. Use Alembic migrations in production.
    """
    async with get_db_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("database_initialized")


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session.

    Yields:
        AsyncSession that will be closed after use
    """
    async with get_session_maker()() as session:
        try:
            yield session
        finally:
            await session.close()


# Type alias for dependency injection
DBSession = Annotated[AsyncSession, Depends(get_db_session)]
EngineDep = Annotated[ExecutionEngine, Depends(get_engine)]


# Service dependencies
def get_workflow_service(session: DBSession) -> WorkflowService:
    """Get workflow service instance."""
    return WorkflowService(session)


def get_execution_service(
    engine: EngineDep,
    workflow_service: Annotated[WorkflowService, Depends(get_workflow_service)],
) -> ExecutionService:
    """Get execution service instance."""
    return ExecutionService(engine, workflow_service)


# Type aliases for service dependencies
WorkflowServiceDep = Annotated[WorkflowService, Depends(get_workflow_service)]
ExecutionServiceDep = Annotated[ExecutionService, Depends(get_execution_service)]
