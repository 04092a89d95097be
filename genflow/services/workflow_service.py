"""Workflow service.

Handles CRUD operations for workflows and their immutable versions.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genflow.core.errors import CycleError
from genflow.core.graph import ExecutionGraph
from genflow.models.workflow import (
    Workflow,
    WorkflowCreate,
    WorkflowGraph,
    WorkflowRead,
    WorkflowStatus,
    WorkflowUpdate,
    WorkflowVersion,
    WorkflowVersionRead,
)

logger = structlog.get_logger()


class WorkflowServiceError(Exception):
    """Error in workflow service operations."""

    pass


class WorkflowNotFoundError(WorkflowServiceError):
    """Workflow or workflow version not found."""

    pass


class WorkflowValidationError(WorkflowServiceError):
    """Workflow validation failed."""

    def __init__(self, message: str, errors: list[str]) -> None:
        super().__init__(message)
        self.errors = errors


class WorkflowService:
    """Service for managing workflows.

    Handles:
    - Creating workflows from graph JSON
    - Reading and listing workflows
    - Updating workflow definitions (each graph change is a new version)
    - Reading the graph of any past version
    - Deleting workflows

    Example usage:
        service = WorkflowService(session)
        workflow = await service.create(
            WorkflowCreate(name="Product shots", graph={"nodes": [...], "edges": [...]})
        )
        graph, version = await service.get_graph(workflow.id)
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize workflow service.

        Args:
            session: Async database session
        """
        self._session = session

    async def create(self, data: WorkflowCreate) -> WorkflowRead:
        """Create a new workflow at version 1.

        Raises:
            WorkflowValidationError: If graph is invalid
        """
        self._raise_if_invalid(data.graph)

        workflow = Workflow(
            name=data.name,
            description=data.description,
            graph=data.graph.model_dump_json(),
            status=WorkflowStatus.DRAFT,
        )
        self._session.add(workflow)
        self._session.add(
            WorkflowVersion(
                workflow_id=workflow.id,
                version=workflow.version,
                graph=workflow.graph,
            )
        )
        await self._session.commit()
        await self._session.refresh(workflow)

        logger.info(
            "workflow_created",
            workflow_id=workflow.id,
            node_count=len(data.graph.nodes),
        )
        return self._to_read(workflow)

    async def get(self, workflow_id: str) -> WorkflowRead:
        """Get a workflow.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
        """
        workflow = await self._get_or_raise(workflow_id)
        return self._to_read(workflow)

    async def list_all(
        self,
        status: WorkflowStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowRead]:
        """List workflows, most recently updated first."""
        query = (
            select(Workflow)
            .order_by(Workflow.updated_at.desc())
            .limit(limit)
            .offset(offset)
        )
        if status:
            query = query.where(Workflow.status == status)

        result = await self._session.execute(query)
        return [self._to_read(w) for w in result.scalars().all()]

    async def update(self, workflow_id: str, data: WorkflowUpdate) -> WorkflowRead:
        """Update a workflow.

        A new graph bumps the version and freezes it as a WorkflowVersion.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            WorkflowValidationError: If graph is invalid
        """
        workflow = await self._get_or_raise(workflow_id)

        if data.name is not None:
            workflow.name = data.name

        if data.description is not None:
            workflow.description = data.description

        if data.graph is not None:
            self._raise_if_invalid(data.graph)
            workflow.graph = data.graph.model_dump_json()
            workflow.version += 1
            self._session.add(
                WorkflowVersion(
                    workflow_id=workflow.id,
                    version=workflow.version,
                    graph=workflow.graph,
                )
            )

        if data.status is not None:
            workflow.status = data.status

        await self._session.commit()
        await self._session.refresh(workflow)

        logger.info(
            "workflow_updated",
            workflow_id=workflow_id,
            version=workflow.version,
        )
        return self._to_read(workflow)

    async def delete(self, workflow_id: str) -> None:
        """Delete a workflow and its versions.

        Executions keep their own graph snapshot and are not touched.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
        """
        workflow = await self._get_or_raise(workflow_id)

        result = await self._session.execute(
            select(WorkflowVersion).where(WorkflowVersion.workflow_id == workflow_id)
        )
        for version in result.scalars().all():
            await self._session.delete(version)
        await self._session.delete(workflow)
        await self._session.commit()

        logger.info("workflow_deleted", workflow_id=workflow_id)

    async def get_version(self, workflow_id: str, version: int) -> WorkflowVersionRead:
        """Get the frozen graph of one version.

        Raises:
            WorkflowNotFoundError: If the workflow or version doesn't exist
        """
        query = select(WorkflowVersion).where(
            WorkflowVersion.workflow_id == workflow_id,
            WorkflowVersion.version == version,
        )
        result = await self._session.execute(query)
        entity = result.scalar_one_or_none()
        if entity is None:
            raise WorkflowNotFoundError(
                f"Workflow '{workflow_id}' has no version {version}"
            )
        return WorkflowVersionRead(
            workflow_id=entity.workflow_id,
            version=entity.version,
            graph=WorkflowGraph.model_validate_json(entity.graph),
            created_at=entity.created_at,
        )

    async def get_graph(
        self,
        workflow_id: str,
        version: int | None = None,
    ) -> tuple[WorkflowGraph, int]:
        """Graph to run for a workflow, current version unless one is given.

        Raises:
            WorkflowNotFoundError: If the workflow or version doesn't exist
        """
        workflow = await self._get_or_raise(workflow_id)
        if version is None or version == workflow.version:
            return WorkflowGraph.model_validate_json(workflow.graph), workflow.version
        frozen = await self.get_version(workflow_id, version)
        return frozen.graph, frozen.version

    async def activate(self, workflow_id: str) -> WorkflowRead:
        """Activate a workflow."""
        return await self.update(workflow_id, WorkflowUpdate(status=WorkflowStatus.ACTIVE))

    async def archive(self, workflow_id: str) -> WorkflowRead:
        """Archive a workflow."""
        return await self.update(workflow_id, WorkflowUpdate(status=WorkflowStatus.ARCHIVED))

    async def _get_or_raise(self, workflow_id: str) -> Workflow:
        query = select(Workflow).where(Workflow.id == workflow_id)
        result = await self._session.execute(query)
        workflow = result.scalar_one_or_none()

        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")
        return workflow

    def _validate_graph(self, graph: WorkflowGraph) -> list[str]:
        """Validate a workflow graph.

        Returns:
            List of validation errors (empty if valid)
        """
        execution_graph = ExecutionGraph(graph)
        errors = execution_graph.validation_errors()
        if not errors:
            try:
                execution_graph.topological_order()
            except CycleError as e:
                errors.append(str(e))
        return errors

    def _raise_if_invalid(self, graph: WorkflowGraph) -> None:
        errors = self._validate_graph(graph)
        if errors:
            raise WorkflowValidationError("Invalid workflow graph", errors=errors)

    def _to_read(self, workflow: Workflow) -> WorkflowRead:
        """Convert workflow entity to read schema."""
        return WorkflowRead(
            id=workflow.id,
            name=workflow.name,
            description=workflow.description,
            graph=WorkflowGraph.model_validate_json(workflow.graph),
            status=workflow.status,
            version=workflow.version,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
        )
