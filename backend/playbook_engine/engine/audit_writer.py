"""Audit Writer - Append-only audit events"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING

from ..domain.models import AuditEvent, ActorContext
from ..domain.enums import AuditAction, AuditOutcome, TransactionType, SmartCode
from ..repositories.store import StoreAdapter, to_plain
from ..utils.idgen import generate_audit_event_id
from ..utils.time import utc_now
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


class AuditWriter:
    """
    Write audit events (append-only)

    One security_audit transaction per security-relevant action. Records
    are never updated; retrieval is filtered by actor, action, resource,
    outcome and time window.
    """

    def __init__(self, store: StoreAdapter, organization_id: str):
        self.store = store
        self.organization_id = organization_id

    async def write_event(
        self,
        actor_id: str,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str],
        outcome: AuditOutcome,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None
    ) -> AuditEvent:
        """Write a single audit event"""
        event = AuditEvent(
            id=generate_audit_event_id(),
            organization_id=self.organization_id,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome,
            context=context or {},
            correlation_id=correlation_id or get_correlation_id(),
            timestamp=utc_now(),
        )

        await self.store.create_transaction(
            self.organization_id,
            {
                "id": event.id,
                "transaction_type": TransactionType.SECURITY_AUDIT.value,
                "smart_code": SmartCode.SECURITY_AUDIT.value,
                "source_entity_id": actor_id,
                "target_entity_id": resource_id,
                "transaction_date": event.timestamp,
                "transaction_status": outcome.value,
                "metadata": to_plain(event.model_dump(exclude={"id", "organization_id"})),
            },
        )
        logger.info(
            f"Audit: {action.value} {resource_type}/{resource_id} -> {outcome.value}",
            extra={"user_id": actor_id, "action": action.value, "status": outcome.value}
        )
        return event

    async def write_permission_denied(
        self,
        actor: ActorContext,
        permission: str,
        resource_type: str,
        resource_id: Optional[str],
        attempted_action: str
    ) -> AuditEvent:
        """Write permission denial"""
        return await self.write_event(
            actor_id=actor.user_id,
            action=AuditAction.PERMISSION_DENIED,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=AuditOutcome.DENIED,
            context={"permission": permission, "attempted_action": attempted_action},
        )

    async def write_run_action(
        self,
        actor: ActorContext,
        action: AuditAction,
        run_id: str,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        context: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """Write a run control/lifecycle event"""
        return await self.write_event(
            actor_id=actor.user_id,
            action=action,
            resource_type="workflow_run",
            resource_id=run_id,
            outcome=outcome,
            context=context,
        )

    async def write_idempotent_replay(
        self,
        actor_id: str,
        endpoint: str,
        idempotency_key: str,
        status_code: Optional[int]
    ) -> AuditEvent:
        """Write replay of a cached response"""
        return await self.write_event(
            actor_id=actor_id,
            action=AuditAction.IDEMPOTENT_REPLAY,
            resource_type="idempotency_record",
            resource_id=f"{endpoint}::{idempotency_key}",
            outcome=AuditOutcome.SUCCESS,
            context={"endpoint": endpoint, "status_code": status_code},
        )

    async def query_events(
        self,
        actor_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        outcome: Optional[AuditOutcome] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100
    ) -> List[AuditEvent]:
        """Get audit events, newest first"""
        filters: Dict[str, Any] = {"transaction_type": TransactionType.SECURITY_AUDIT.value}
        if actor_id:
            filters["metadata.actor_id"] = actor_id
        if action:
            filters["metadata.action"] = action.value
        if resource_type:
            filters["metadata.resource_type"] = resource_type
        if resource_id:
            filters["metadata.resource_id"] = resource_id
        if outcome:
            filters["metadata.outcome"] = outcome.value
        window: Dict[str, Any] = {}
        if since:
            window["$gte"] = since
        if until:
            window["$lte"] = until
        if window:
            filters["transaction_date"] = window

        transactions = await self.store.query_transactions(
            self.organization_id,
            filters,
            sort=[("transaction_date", DESCENDING)],
            limit=limit,
        )
        return [
            AuditEvent.model_validate({
                **t.metadata,
                "id": t.id,
                "organization_id": t.organization_id,
            })
            for t in transactions
        ]
