"""Workflow API endpoints.

Handles workflow CRUD operations and version lookup.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from genflow.api.deps import WorkflowServiceDep
from genflow.models.workflow import (
    WorkflowCreate,
    WorkflowRead,
    WorkflowStatus,
    WorkflowUpdate,
    WorkflowVersionRead,
)
from genflow.services.workflow_service import (
    WorkflowNotFoundError,
    WorkflowValidationError,
)

logger = structlog.get_logger()

router = APIRouter()


@router.get("", response_model=list[WorkflowRead])
async def list_workflows(
    service: WorkflowServiceDep,
    status_filter: Annotated[WorkflowStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[WorkflowRead]:
    """List workflows.

    Args:
        service: Workflow service
        status_filter: Filter by workflow status
        limit: Maximum number of results
        offset: Pagination offset

    Returns:
        List of workflows
    """
    return await service.list_all(
        status=status_filter,
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    service: WorkflowServiceDep,
    data: WorkflowCreate,
) -> WorkflowRead:
    """Create a new workflow.

    Args:
        service: Workflow service
        data: Workflow creation data

    Returns:
        Created workflow
    """
    try:
        return await service.create(data)
    except WorkflowValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors},
        ) from e


@router.get("/{workflow_id}", response_model=WorkflowRead)
async def get_workflow(
    workflow_id: str,
    service: WorkflowServiceDep,
) -> WorkflowRead:
    """Get a workflow by ID."""
    try:
        return await service.get(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e


@router.put("/{workflow_id}", response_model=WorkflowRead)
async def update_workflow(
    workflow_id: str,
    service: WorkflowServiceDep,
    data: WorkflowUpdate,
) -> WorkflowRead:
    """Update a workflow.

    Changing the graph creates a new version; running executions keep the
    graph they started with.

    Args:
        workflow_id: Workflow identifier
        service: Workflow service
        data: Update data

    Returns:
        Updated workflow
    """
    try:
        return await service.update(workflow_id, data)
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except WorkflowValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors},
        ) from e


@router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(
    workflow_id: str,
    service: WorkflowServiceDep,
) -> None:
    """Delete a workflow."""
    try:
        await service.delete(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e


@router.get("/{workflow_id}/versions/{version}", response_model=WorkflowVersionRead)
async def get_workflow_version(
    workflow_id: str,
    version: int,
    service: WorkflowServiceDep,
) -> WorkflowVersionRead:
    """Get the frozen graph of one workflow version."""
    try:
        return await service.get_version(workflow_id, version)
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e


@router.post("/{workflow_id}/activate", response_model=WorkflowRead)
async def activate_workflow(
    workflow_id: str,
    service: WorkflowServiceDep,
) -> WorkflowRead:
    """Activate a workflow."""
    try:
        return await service.activate(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e


@router.post("/{workflow_id}/archive", response_model=WorkflowRead)
async def archive_workflow(
    workflow_id: str,
    service: WorkflowServiceDep,
) -> WorkflowRead:
    """Archive a workflow."""
    try:
        return await service.archive(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
