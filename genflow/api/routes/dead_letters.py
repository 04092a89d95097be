"""Dead-letter API endpoints.

Read-only operator view of jobs that exhausted their retries.
"""

from typing import Annotated

from fastapi import APIRouter, Query

from genflow.api.deps import ExecutionServiceDep
from genflow.models.dead_letter import DeadLetterRead

router = APIRouter()


@router.get("", response_model=list[DeadLetterRead])
async def list_dead_letters(
    service: ExecutionServiceDep,
    execution_id: Annotated[str | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[DeadLetterRead]:
    """List dead-lettered jobs, newest first."""
    return await service.list_dead_letters(
        execution_id=execution_id,
        limit=limit,
        offset=offset,
    )
