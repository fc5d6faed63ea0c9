"""Run API Routes - Start, inspect and control playbook runs"""
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..deps import get_current_user_dep, get_correlation_id_dep, get_idempotency_key_dep, get_store_dep
from ...config.settings import settings
from ...domain.models import ActorContext, RunDetailOptions
from ...domain.enums import LogLevel
from ...domain.errors import DomainError
from ...repositories.store import StoreAdapter
from ...services.idempotency_service import IdempotentResult
from ...services.run_service import RunService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class StartRunRequest(BaseModel):
    """Request to start a run"""
    definition_id: str = Field(..., min_length=1)
    variables: Dict[str, Any] = Field(default_factory=dict)
    subject_entity_id: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, description="Alternative to the Idempotency-Key header")


class UpdateRunRequest(BaseModel):
    """Request to pause, resume or re-prioritise a run"""
    action: str = Field(..., min_length=1)
    priority: Optional[str] = None


class CancelRunRequest(BaseModel):
    """Optional body for cancellation"""
    reason: Optional[str] = Field(None, max_length=2000)


class CompleteStepRequest(BaseModel):
    """Outputs submitted for a user_action step"""
    outputs: Dict[str, Any] = Field(default_factory=dict)


class RetryRunRequest(BaseModel):
    """Optional body for retry"""
    idempotency_key: Optional[str] = None


def _idempotent_response(result: IdempotentResult) -> JSONResponse:
    headers = {"Idempotent-Replayed": "true"} if result.cached else {}
    return JSONResponse(status_code=result.status_code, content=result.response, headers=headers)


# ============================================================================
# Routes
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def start_run(
    request: StartRunRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    idempotency_key: Optional[str] = Depends(get_idempotency_key_dep),
    store: StoreAdapter = Depends(get_store_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Start a run of a published definition

    Retries carrying the same Idempotency-Key replay the first response.
    """
    try:
        service = RunService(store, actor.organization_id)
        result = await service.start_run(
            request.definition_id,
            actor,
            variables=request.variables,
            subject_entity_id=request.subject_entity_id,
            idempotency_key=idempotency_key or request.idempotency_key,
        )
        logger.info(
            f"Start run on {request.definition_id} (cached={result.cached})",
            extra={"definition_id": request.definition_id, "user_id": actor.user_id}
        )
        return _idempotent_response(result)

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{run_id}")
async def get_run(
    run_id: str,
    include_steps: bool = Query(True),
    include_step_details: bool = Query(False),
    include_logs: bool = Query(False),
    include_metrics: bool = Query(False),
    include_timeline: bool = Query(False),
    step_limit: int = Query(settings.run_step_limit_default, ge=1, le=1000),
    log_level: LogLevel = Query(LogLevel.INFO),
    actor: ActorContext = Depends(get_current_user_dep),
    store: StoreAdapter = Depends(get_store_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Run detail with progress, permitted actions and optional enrichments"""
    try:
        service = RunService(store, actor.organization_id)
        return await service.get_run_detail(
            run_id,
            actor,
            RunDetailOptions(
                include_steps=include_steps,
                include_step_details=include_step_details,
                include_logs=include_logs,
                include_metrics=include_metrics,
                include_timeline=include_timeline,
                step_limit=step_limit,
                log_level=log_level,
            ),
        )

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.put("/{run_id}")
async def update_run(
    run_id: str,
    request: UpdateRunRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    store: StoreAdapter = Depends(get_store_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Pause, resume or change the priority of a run"""
    try:
        service = RunService(store, actor.organization_id)
        instance = await service.update_run(run_id, actor, request.action, priority=request.priority)
        logger.info(
            f"Run {run_id} {request.action}",
            extra={"run_id": run_id, "action": request.action, "user_id": actor.user_id}
        )
        return instance.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/{run_id}")
async def cancel_run(
    run_id: str,
    request: Optional[CancelRunRequest] = None,
    actor: ActorContext = Depends(get_current_user_dep),
    store: StoreAdapter = Depends(get_store_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Cancel a run (initiator or holder of playbook_run:cancel)"""
    try:
        service = RunService(store, actor.organization_id)
        instance = await service.cancel_run(run_id, actor, reason=request.reason if request else None)
        return instance.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{run_id}/steps/{step_id}/complete")
async def complete_step(
    run_id: str,
    step_id: str,
    request: CompleteStepRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    store: StoreAdapter = Depends(get_store_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Complete the suspended user_action step of a run"""
    try:
        service = RunService(store, actor.organization_id)
        instance = await service.complete_step(run_id, step_id, actor, request.outputs)
        logger.info(
            f"Step {step_id} of run {run_id} completed",
            extra={"run_id": run_id, "step_id": step_id, "user_id": actor.user_id}
        )
        return instance.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{run_id}/retry", status_code=status.HTTP_201_CREATED)
async def retry_run(
    run_id: str,
    request: Optional[RetryRunRequest] = None,
    actor: ActorContext = Depends(get_current_user_dep),
    idempotency_key: Optional[str] = Depends(get_idempotency_key_dep),
    store: StoreAdapter = Depends(get_store_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Start a fresh run with the inputs of a failed or cancelled run"""
    try:
        service = RunService(store, actor.organization_id)
        result = await service.retry_run(
            run_id,
            actor,
            idempotency_key=idempotency_key or (request.idempotency_key if request else None),
        )
        return _idempotent_response(result)

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
