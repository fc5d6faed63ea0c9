"""Guardrails - Step preconditions that fail closed"""
from typing import Any, Dict, List, Optional

from .status_manager import StatusTransitionManager
from .variable_resolver import get_path
from ..domain.models import StepGuardrail
from ..domain.enums import GuardrailType
from ..domain.errors import GuardrailViolationError
from ..repositories.store import StoreAdapter
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class GuardrailEvaluator:
    """
    Evaluate guardrails before a step's actions run

    Every guardrail either passes or raises GuardrailViolationError. A
    guardrail that cannot be evaluated (no subject entity, unknown target)
    counts as a violation.
    """

    def __init__(self, store: StoreAdapter, organization_id: str, status_manager: StatusTransitionManager):
        self.store = store
        self.organization_id = organization_id
        self.status_manager = status_manager

    async def enforce(
        self,
        guardrails: List[StepGuardrail],
        subject_entity_id: Optional[str],
        variables: Dict[str, Any]
    ) -> None:
        """Check guardrails in order, raising on the first violation"""
        for guardrail in guardrails:
            if guardrail.guardrail_type == GuardrailType.PAYMENT_REQUIRED:
                await self._check_payment(guardrail, subject_entity_id)
            elif guardrail.guardrail_type == GuardrailType.VARIABLE_REQUIRED:
                self._check_variables(guardrail, variables)
            elif guardrail.guardrail_type == GuardrailType.STATUS_REQUIRED:
                await self._check_status(guardrail, subject_entity_id)
            else:
                raise GuardrailViolationError(
                    f"Unsupported guardrail: {guardrail.guardrail_type}",
                    details={"guardrail_type": str(guardrail.guardrail_type)},
                )

    async def _check_payment(self, guardrail: StepGuardrail, subject_entity_id: Optional[str]) -> None:
        """At least one linked payment transaction must be settled"""
        violation = GuardrailViolationError(
            guardrail.message or "Payment required: no settled payment is linked to the subject",
            details={
                "guardrail_type": GuardrailType.PAYMENT_REQUIRED.value,
                "subject_entity_id": subject_entity_id,
            },
        )
        if not subject_entity_id:
            raise violation

        now = utc_now()
        links = await self.store.query_relationships(
            self.organization_id,
            {"from_entity_id": subject_entity_id, "is_active": True},
        )
        accepted = {status.lower() for status in guardrail.accepted_statuses}
        for link in links:
            if not link.relationship_type.endswith(guardrail.relationship_suffix) or not link.is_current(now):
                continue
            payment = await self.store.get_transaction(self.organization_id, link.to_entity_id)
            if payment is None:
                continue
            status = payment.transaction_status or payment.metadata.get("status")
            if status and str(status).lower() in accepted:
                logger.debug(f"Payment guardrail satisfied by {payment.id}")
                return

        logger.info(
            f"Payment guardrail blocked subject {subject_entity_id}",
            extra={"organization_id": self.organization_id}
        )
        raise violation

    def _check_variables(self, guardrail: StepGuardrail, variables: Dict[str, Any]) -> None:
        missing = [
            name for name in guardrail.variables
            if get_path(name, variables) in (None, "", [], {})
        ]
        if missing:
            raise GuardrailViolationError(
                guardrail.message or f"Required variables missing: {', '.join(missing)}",
                details={"guardrail_type": GuardrailType.VARIABLE_REQUIRED.value, "missing": missing},
            )

    async def _check_status(self, guardrail: StepGuardrail, subject_entity_id: Optional[str]) -> None:
        current = None
        if subject_entity_id:
            current = await self.status_manager.get_current_status_code(subject_entity_id)
        if current not in guardrail.allowed_statuses:
            raise GuardrailViolationError(
                guardrail.message or f"Subject status {current} is not one of {guardrail.allowed_statuses}",
                details={
                    "guardrail_type": GuardrailType.STATUS_REQUIRED.value,
                    "current_status": current,
                    "allowed_statuses": guardrail.allowed_statuses,
                },
            )
