"""Execution API endpoints.

Handles starting, inspecting, streaming, stopping and resuming executions.
"""

import json
from typing import Annotated

import structlog
from fastapi import APIRouter, HTTPException, Query, status
from sse_starlette.sse import EventSourceResponse

from genflow.api.deps import ExecutionServiceDep
from genflow.core.errors import ValidationError
from genflow.models.execution import (
    ExecutionCreate,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionSummary,
)
from genflow.services.execution_store import ExecutionNotFoundError
from genflow.services.orchestrator import ExecutionStateError
from genflow.services.workflow_service import WorkflowNotFoundError

logger = structlog.get_logger()

router = APIRouter()


@router.get("", response_model=list[ExecutionSummary])
async def list_executions(
    service: ExecutionServiceDep,
    workflow_id: Annotated[str | None, Query()] = None,
    status_filter: Annotated[ExecutionStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[ExecutionSummary]:
    """List executions.

    Args:
        service: Execution service
        workflow_id: Filter by workflow
        status_filter: Filter by status
        limit: Maximum results
        offset: Pagination offset

    Returns:
        List of execution summaries
    """
    return await service.list_all(
        workflow_id=workflow_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=ExecutionRecord, status_code=status.HTTP_201_CREATED)
async def create_execution(
    service: ExecutionServiceDep,
    data: ExecutionCreate,
) -> ExecutionRecord:
    """Start a new execution.

    Nodes are dispatched immediately. Use the stream endpoint to follow
    progress, or poll the execution for its authoritative state.

    Args:
        service: Execution service
        data: Run request

    Returns:
        Execution record after the first dispatch
    """
    logger.info(
        "execution_requested",
        workflow_id=data.workflow_id,
        workflow_version=data.workflow_version,
        node_ids=data.node_ids,
        debug_mode=data.debug_mode,
    )
    try:
        return await service.run(data)
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors, "error_code": e.error_code},
        ) from e


@router.get("/{execution_id}", response_model=ExecutionRecord)
async def get_execution(
    execution_id: str,
    service: ExecutionServiceDep,
) -> ExecutionRecord:
    """Get the authoritative state of an execution."""
    try:
        return await service.get(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e


@router.get("/{execution_id}/stream")
async def stream_execution(
    execution_id: str,
    service: ExecutionServiceDep,
) -> EventSourceResponse:
    """Stream execution snapshots via SSE.

    The first event carries the current state; later events follow every
    committed change until the execution finishes. Delivery is best-effort:
    clients should re-read the execution when the stream drops.

    Event types:
    - snapshot: Full execution snapshot
    - error: Stream failed

    Args:
        execution_id: Execution identifier
        service: Execution service

    Returns:
        SSE event stream
    """
    try:
        await service.get(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e

    async def event_generator():
        """Generate SSE events from pushed snapshots."""
        try:
            async for snapshot in service.stream(execution_id):
                yield {
                    "event": "snapshot",
                    "id": str(snapshot.sequence),
                    "data": json.dumps(snapshot.to_dict()),
                }
        except Exception as e:
            logger.exception(
                "stream_error",
                execution_id=execution_id,
                error=str(e),
            )
            yield {
                "event": "error",
                "data": json.dumps({"error": str(e)}),
            }

    return EventSourceResponse(event_generator())


@router.post("/{execution_id}/stop", response_model=ExecutionRecord)
async def stop_execution(
    execution_id: str,
    service: ExecutionServiceDep,
) -> ExecutionRecord:
    """Cancel a running execution."""
    try:
        return await service.stop(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except ExecutionStateError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e


@router.post("/{execution_id}/resume", response_model=ExecutionRecord)
async def resume_execution(
    execution_id: str,
    service: ExecutionServiceDep,
) -> ExecutionRecord:
    """Resume a failed or cancelled execution from its last failed node.

    Completed node results are kept; only the failed node runs again.
    """
    try:
        return await service.resume(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except ExecutionStateError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
