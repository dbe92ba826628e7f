from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stageflow.automation.config_store import pipeline_config_store
from stageflow.automation.context import OrgPipelineContext
from stageflow.automation.coordinator import stage_transition_coordinator
from stageflow.automation.errors import (
    AutomationError,
    ConcurrentTransition,
    DeadLetterNotFound,
    InvalidStageForPipeline,
    PipelineConfigError,
    PipelineNotFound,
    RecordNotFound,
    RequiredFieldMissing,
    ScanTickFailed,
)
from stageflow.automation.executor import action_executor
from stageflow.automation.records import record_registry
from stageflow.automation.scheduler import duration_scan_scheduler
from stageflow.automation.schemas import (
    ActionRequestRead,
    DeadLetterRead,
    DrainRead,
    PipelineRead,
    RecordCreate,
    RecordRead,
    ScanRunRead,
    TransitionRead,
    TransitionRequest,
)
from stageflow.context import get_correlation_id
from stageflow.core.database import get_db

pipelines_router = APIRouter(prefix="/api/automation", tags=["automation.pipelines"])
records_router = APIRouter(prefix="/api/automation", tags=["automation.records"])
operations_router = APIRouter(prefix="/api/automation", tags=["automation.operations"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _status_for(exc: AutomationError) -> int:
    if isinstance(exc, (RecordNotFound, PipelineNotFound, DeadLetterNotFound)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConcurrentTransition):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ScanTickFailed):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_422_UNPROCESSABLE_ENTITY


def automation_error_response(request: Request, exc: AutomationError) -> JSONResponse:
    details: Any = None
    if isinstance(exc, RequiredFieldMissing):
        details = {"missing_fields": exc.missing_fields}
    elif isinstance(exc, InvalidStageForPipeline):
        details = {"stage_id": str(exc.stage_id), "pipeline_id": str(exc.pipeline_id)}
    elif isinstance(exc, PipelineConfigError):
        details = {"errors": exc.errors}
    return error_response(
        request,
        status_code=_status_for(exc),
        code=exc.code,
        message=str(exc),
        details=details,
    )


def get_org_context(
    request: Request,
    x_organization_id: str = Header(min_length=1, max_length=64),
    x_actor_id: str | None = Header(default=None),
) -> OrgPipelineContext:
    context = getattr(request.state, "context", None)
    correlation_id = get_correlation_id() or getattr(context, "correlation_id", None) or None
    return OrgPipelineContext(
        organization_id=x_organization_id,
        actor_user_id=x_actor_id or getattr(context, "actor_id", None) or "anonymous",
        correlation_id=correlation_id,
    )


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> PipelineRead | JSONResponse:
    try:
        pipeline = pipeline_config_store.create_pipeline(db, ctx, payload)
        return PipelineRead.model_validate(pipeline)
    except AutomationError as exc:
        return automation_error_response(request, exc)


@pipelines_router.post(
    "/pipelines/templates/{industry_id}",
    response_model=PipelineRead,
    status_code=status.HTTP_201_CREATED,
)
def apply_industry_template(
    request: Request,
    industry_id: str,
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> PipelineRead | JSONResponse:
    try:
        pipeline = pipeline_config_store.apply_industry_template(db, ctx, industry_id)
        return PipelineRead.model_validate(pipeline)
    except AutomationError as exc:
        return automation_error_response(request, exc)


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> PipelineRead | JSONResponse:
    try:
        return PipelineRead.model_validate(pipeline_config_store.get_pipeline(db, ctx, pipeline_id))
    except AutomationError as exc:
        return automation_error_response(request, exc)


@records_router.post("/records", response_model=RecordRead, status_code=status.HTTP_201_CREATED)
def create_record(
    request: Request,
    response: Response,
    dto: RecordCreate,
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> RecordRead | JSONResponse:
    try:
        created = record_registry.create_record(
            db,
            ctx.for_pipeline(dto.pipeline_id),
            dto.pipeline_id,
            owner_id=dto.owner_id,
            field_values=dto.field_values,
            record_id=dto.record_id,
        )
    except AutomationError as exc:
        return automation_error_response(request, exc)
    if not created.created:
        response.status_code = status.HTTP_200_OK
    return RecordRead.model_validate(created.record)


@records_router.get("/records/{record_id}", response_model=RecordRead)
def get_record(
    request: Request,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> RecordRead | JSONResponse:
    try:
        return RecordRead.model_validate(record_registry.get_record(db, ctx, record_id))
    except AutomationError as exc:
        return automation_error_response(request, exc)


@records_router.delete("/records/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
def retire_record(
    request: Request,
    record_id: uuid.UUID,
    hard: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> Response:
    try:
        record_registry.retire_record(db, ctx, record_id, hard=hard)
    except AutomationError as exc:
        return automation_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@records_router.post("/records/{record_id}/transition", response_model=TransitionRead)
def request_transition(
    request: Request,
    record_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> TransitionRead | JSONResponse:
    try:
        result = stage_transition_coordinator.request_transition(
            db,
            ctx,
            record_id,
            dto.target_stage_id,
            field_values_snapshot=dto.field_values,
        )
    except AutomationError as exc:
        return automation_error_response(request, exc)
    return TransitionRead(
        record=RecordRead.model_validate(result.record),
        changed=result.changed,
        from_stage_id=result.from_stage_id,
        to_stage_id=result.to_stage_id,
        exit_request_ids=[item.request_id for item in result.exit_requests],
        enter_request_ids=[item.request_id for item in result.enter_requests],
    )


@records_router.get("/records/{record_id}/action-requests", response_model=list[ActionRequestRead])
def list_action_requests(
    request: Request,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> list[ActionRequestRead] | JSONResponse:
    try:
        record_registry.get_record(db, ctx, record_id)
    except AutomationError as exc:
        return automation_error_response(request, exc)
    return [ActionRequestRead.model_validate(item) for item in record_registry.list_action_requests(db, ctx, record_id)]


@operations_router.post("/scheduler/scan", response_model=ScanRunRead)
def run_duration_scan(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> ScanRunRead | JSONResponse:
    scan_ctx = ctx.for_pipeline(pipeline_id) if pipeline_id is not None else ctx
    try:
        emitted = duration_scan_scheduler.scan_once(db, scan_ctx)
    except AutomationError as exc:
        return automation_error_response(request, exc)
    return ScanRunRead(requests_emitted=emitted)


@operations_router.post("/executor/drain", response_model=DrainRead)
def drain_action_queue(
    limit: int | None = Query(default=None, ge=1, le=1000),
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> DrainRead:
    summary = action_executor.drain(db, limit=limit)
    return DrainRead(**asdict(summary))


@operations_router.get("/dead-letters", response_model=list[DeadLetterRead])
def list_dead_letters(
    include_requeued: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> list[DeadLetterRead]:
    entries = action_executor.list_dead_letters(db, ctx, include_requeued=include_requeued)
    return [DeadLetterRead.model_validate(entry) for entry in entries]


@operations_router.post("/dead-letters/{request_id}/requeue", response_model=ActionRequestRead)
def requeue_dead_letter(
    request: Request,
    request_id: str,
    db: Session = Depends(get_db),
    ctx: OrgPipelineContext = Depends(get_org_context),
) -> ActionRequestRead | JSONResponse:
    try:
        return ActionRequestRead.model_validate(action_executor.requeue_dead_letter(db, ctx, request_id))
    except AutomationError as exc:
        return automation_error_response(request, exc)
