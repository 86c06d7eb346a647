from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from temporalio.client import Client as TemporalClient

from caseflow.api.dependencies import get_pipeline_service, get_temporal, get_unit_of_work
from caseflow.config import settings
from caseflow.core.exceptions import (
    AppError,
    FindingNotFoundError,
    FindingResolutionError,
    InvalidRunTransitionError,
    PipelineRunNotFoundError,
)
from caseflow.core.unit_of_work import UnitOfWork
from caseflow.models.findings import FindingStatus
from caseflow.schemas.pipeline import (
    EnqueueRunRequest,
    MatterRiskResponse,
    PipelineRunDetailsResponse,
    PipelineRunStatus,
    ResolveFindingRequest,
)
from caseflow.schemas.responses import ApiResponse
from caseflow.services.pipeline.pipeline_service import PipelineService
from caseflow.temporal.scheduling import enqueue_pipeline_run
from caseflow.utils.logging import get_logger
from caseflow.utils.responses import create_api_response, create_error_detail

LOGGER = get_logger(__name__)

router = APIRouter()

_NOT_FOUND = (PipelineRunNotFoundError, FindingNotFoundError)
_CONFLICT = (InvalidRunTransitionError, FindingResolutionError)


def _http_error(request: Request, error: AppError) -> HTTPException:
    if isinstance(error, _NOT_FOUND):
        status_code, title = status.HTTP_404_NOT_FOUND, "Not Found"
    elif isinstance(error, _CONFLICT):
        status_code, title = status.HTTP_409_CONFLICT, "Conflict"
    else:
        status_code, title = status.HTTP_500_INTERNAL_SERVER_ERROR, "Pipeline Error"

    error_detail = create_error_detail(
        title=title,
        status=status_code,
        detail=error.message,
        request=request,
    )
    return HTTPException(status_code=status_code, detail=error_detail.model_dump(mode="json"))


@router.post(
    "/runs",
    response_model=ApiResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a document for processing",
    operation_id="enqueue_pipeline_run",
)
async def enqueue_run(
    request: Request,
    payload: EnqueueRunRequest,
    uow: Annotated[UnitOfWork, Depends(get_unit_of_work)],
    temporal_client: Annotated[TemporalClient, Depends(get_temporal)],
) -> ApiResponse:
    run = await enqueue_pipeline_run(
        uow,
        temporal_client,
        settings.temporal.task_queue,
        matter_id=payload.matter_id,
        document_id=payload.document_id,
        triggered_by=payload.triggered_by,
    )
    return create_api_response(
        data=PipelineRunStatus.from_run(run),
        message="Pipeline run queued",
        request=request,
    )


@router.get(
    "/runs/{run_id}",
    response_model=ApiResponse,
    summary="Get pipeline run status",
    operation_id="get_pipeline_run",
)
async def get_run(
    request: Request,
    run_id: UUID,
    service: Annotated[PipelineService, Depends(get_pipeline_service)],
) -> ApiResponse:
    """Run status with the run's findings and actions."""
    try:
        details = await service.get_run_details(run_id)
    except AppError as e:
        raise _http_error(request, e)

    data = PipelineRunDetailsResponse(
        run=PipelineRunStatus.from_run(details.run),
        findings=details.findings,
        actions=details.actions,
    )
    return create_api_response(data=data, message="Pipeline run retrieved", request=request)


@router.post(
    "/runs/{run_id}/cancel",
    response_model=ApiResponse,
    summary="Cancel a pipeline run",
    operation_id="cancel_pipeline_run",
)
async def cancel_run(
    request: Request,
    run_id: UUID,
    service: Annotated[PipelineService, Depends(get_pipeline_service)],
) -> ApiResponse:
    """Cancel a queued run, or stop a running one at its next stage boundary."""
    try:
        run = await service.cancel_run(run_id)
    except AppError as e:
        raise _http_error(request, e)

    message = "Pipeline run cancelled" if run.is_terminal else "Cancellation requested"
    return create_api_response(data=PipelineRunStatus.from_run(run), message=message, request=request)


@router.post(
    "/findings/{finding_id}/resolve",
    response_model=ApiResponse,
    summary="Accept or reject a finding",
    operation_id="resolve_pipeline_finding",
)
async def resolve_finding(
    request: Request,
    finding_id: UUID,
    payload: ResolveFindingRequest,
    service: Annotated[PipelineService, Depends(get_pipeline_service)],
) -> ApiResponse:
    try:
        finding = await service.resolve_finding(finding_id, FindingStatus(payload.decision))
    except AppError as e:
        raise _http_error(request, e)

    return create_api_response(data=finding, message=f"Finding {finding.status.value}", request=request)


@router.get(
    "/matters/{matter_id}/risk",
    response_model=ApiResponse,
    summary="Get the latest matter risk score",
    operation_id="get_matter_risk",
)
async def get_matter_risk(
    request: Request,
    matter_id: UUID,
    service: Annotated[PipelineService, Depends(get_pipeline_service)],
) -> ApiResponse:
    assessment = await service.get_matter_risk(matter_id)
    if assessment is None:
        data = MatterRiskResponse(matter_id=matter_id, score=0, factors=[])
    else:
        data = MatterRiskResponse(
            matter_id=matter_id,
            score=assessment.score,
            factors=assessment.factors,
            assessed_at=assessment.assessed_at,
        )
    return create_api_response(data=data, message="Matter risk retrieved", request=request)
