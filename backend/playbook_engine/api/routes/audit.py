"""Audit API Routes - Query the security audit trail"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from ..deps import get_current_user_dep, get_correlation_id_dep, get_store_dep
from ...domain.models import ActorContext
from ...domain.enums import AuditAction, AuditOutcome
from ...domain.errors import DomainError
from ...repositories.store import StoreAdapter
from ...services.run_service import RunService
from ...utils.time import ensure_utc

router = APIRouter()


@router.get("")
async def list_audit_events(
    actor_id: Optional[str] = Query(None),
    action: Optional[AuditAction] = Query(None),
    resource_type: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    outcome: Optional[AuditOutcome] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    actor: ActorContext = Depends(get_current_user_dep),
    store: StoreAdapter = Depends(get_store_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Audit events of the caller's organization, newest first (requires audit:read)"""
    try:
        service = RunService(store, actor.organization_id)
        events = await service.list_audit_events(
            actor,
            {
                "actor_id": actor_id,
                "action": action,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "outcome": outcome,
                "since": ensure_utc(since) if since else None,
                "until": ensure_utc(until) if until else None,
                "limit": limit,
            },
        )
        return {"items": [event.model_dump(mode="json") for event in events], "count": len(events)}

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
