"""Routes for inspecting reconcile state."""

from typing import Annotated

from fastapi import APIRouter, Depends
from safir.slack.webhook import SlackRouteErrorHandler

from ..dependencies.context import RequestContext, context_dependency
from ..models.v1.database import ReconcileState

router = APIRouter(route_class=SlackRouteErrorHandler)
"""Router to mount into the application."""

__all__ = ["router"]


@router.get(
    "/databases",
    response_model=list[ReconcileState],
    response_model_exclude_none=True,
    summary="Reconcile state of all databases",
    tags=["databases"],
)
async def get_databases(
    context: Annotated[RequestContext, Depends(context_dependency)],
) -> list[ReconcileState]:
    return context.factory.list_reconcile_states()
