"""API route handlers."""

from genflow.api.routes.dead_letters import router as dead_letters_router
from genflow.api.routes.executions import router as executions_router
from genflow.api.routes.webhooks import router as webhooks_router
from genflow.api.routes.workflows import router as workflows_router

__all__ = [
    "dead_letters_router",
    "executions_router",
    "webhooks_router",
    "workflows_router",
]
