"""Admission webhooks for ``PostgresDatabase`` objects."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from safir.models import ErrorModel
from safir.slack.webhook import SlackRouteErrorHandler

from ..dependencies.context import RequestContext, context_dependency
from ..models.v1.admission import AdmissionReview

router = APIRouter(route_class=SlackRouteErrorHandler)
"""Router to mount into the application."""

__all__ = ["router"]


@router.post(
    "/admission/validate",
    response_model=AdmissionReview,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    responses={422: {"description": "Invalid request", "model": ErrorModel}},
    summary="Validate a PostgresDatabase",
    tags=["admission"],
)
async def post_validate(
    review: AdmissionReview,
    context: Annotated[RequestContext, Depends(context_dependency)],
) -> AdmissionReview:
    if not review.request:
        error = {"msg": "No admission request", "type": "invalid_request"}
        raise HTTPException(status_code=422, detail=[error])
    request = review.request
    context.rebind_logger(admission_uid=request.uid)
    service = context.factory.create_admission_service()
    return AdmissionReview(response=service.validate(request))


@router.post(
    "/admission/mutate",
    response_model=AdmissionReview,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    responses={422: {"description": "Invalid request", "model": ErrorModel}},
    summary="Fill in defaults for a PostgresDatabase",
    tags=["admission"],
)
async def post_mutate(
    review: AdmissionReview,
    context: Annotated[RequestContext, Depends(context_dependency)],
) -> AdmissionReview:
    if not review.request:
        error = {"msg": "No admission request", "type": "invalid_request"}
        raise HTTPException(status_code=422, detail=[error])
    request = review.request
    context.rebind_logger(admission_uid=request.uid)
    service = context.factory.create_admission_service()
    return AdmissionReview(response=service.mutate(request))
