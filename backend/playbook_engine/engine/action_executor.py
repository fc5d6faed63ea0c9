"""Action Executor - Closed dispatch over workflow action kinds"""
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .status_manager import StatusTransitionManager
from .variable_resolver import VariableResolver
from ..config.settings import settings
from ..domain.models import WorkflowAction
from ..domain.enums import ActionType, VariableOperation
from ..domain.errors import (
    DomainError, ActionExecutionError, ExternalServiceError, StoreError,
    NotFoundError, ValidationError, GuardrailViolationError
)
from ..repositories.store import StoreAdapter
from ..services.notification_service import Notifier, LoggingNotifier
from ..utils.logger import get_logger

logger = get_logger(__name__)

_ENVELOPE_FIELDS = {"action_type", "name", "output_variable"}

# Errors that keep their own code for error_handler routing
_PASSTHROUGH_ERRORS = (
    NotFoundError, ValidationError, GuardrailViolationError, ActionExecutionError, ExternalServiceError
)


class ActionExecutor:
    """
    Execute one workflow action against the store

    Parameters are interpolated against the run variables right before the
    call. The action's result (a plain dict) is stored under
    output_variable when the action declares one.
    """

    def __init__(
        self,
        store: StoreAdapter,
        organization_id: str,
        status_manager: StatusTransitionManager,
        notifier: Optional[Notifier] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.store = store
        self.organization_id = organization_id
        self.status_manager = status_manager
        self.notifier = notifier or LoggingNotifier()
        self.http_client = http_client
        self._handlers: Dict[ActionType, Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            ActionType.CREATE_ENTITY: self._create_entity,
            ActionType.CREATE_RELATIONSHIP: self._create_relationship,
            ActionType.SET_STATUS: self._set_status,
            ActionType.CREATE_TRANSACTION: self._create_transaction,
            ActionType.SEND_NOTIFICATION: self._send_notification,
            ActionType.CALL_API: self._call_api,
            ActionType.SET_VARIABLE: self._set_variable,
        }
        missing = set(ActionType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for action types: {sorted(m.value for m in missing)}")

    async def execute(
        self,
        action: WorkflowAction,
        variables: Dict[str, Any],
        reserved: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Execute action, mutating variables with its output

        Args:
            action: Validated action from the definition
            variables: Run variables (mutated in place)
            reserved: Read-only run context (run_id, subject_entity_id, ...)

        Raises:
            ActionExecutionError: store call failed or action crashed
            NotFoundError / ValidationError / ExternalServiceError: routed by code
        """
        resolver = VariableResolver({**variables, **reserved})
        params = resolver.resolve(action.model_dump(exclude=_ENVELOPE_FIELDS))
        label = action.name or action.action_type.value

        try:
            result = await self._handlers[action.action_type](params, variables)
        except StoreError as e:
            raise self._wrap(action, label, e.error_code, e.message)
        except _PASSTHROUGH_ERRORS:
            raise
        except DomainError as e:
            raise self._wrap(action, label, e.error_code, e.message)
        except Exception as e:
            logger.error(f"Action {label} crashed: {e}", exc_info=True)
            raise self._wrap(action, label, "INTERNAL_ERROR", str(e))

        if action.output_variable:
            variables[action.output_variable] = result
        logger.debug(f"Action {label} executed", extra={"action": action.action_type.value})
        return result

    def _wrap(self, action: WorkflowAction, label: str, cause: str, reason: str) -> ActionExecutionError:
        # Adapter text stays in details, which only surface through the redacted error_detail
        return ActionExecutionError(
            f"Action {label} failed ({cause})",
            details={"action_type": action.action_type.value, "cause": cause, "reason": reason},
        )

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _create_entity(self, params: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, Any]:
        entity = await self.store.create_entity(
            self.organization_id,
            entity_type=params["entity_type"],
            entity_name=str(params["entity_name"]),
            entity_code=params.get("entity_code"),
            smart_code=params["smart_code"],
            metadata=params.get("metadata") or {},
        )
        for field_name, value in (params.get("dynamic_fields") or {}).items():
            await self.store.set_dynamic_field(
                self.organization_id, entity.id, field_name, value, params["smart_code"]
            )
        return {
            "id": entity.id,
            "entity_type": entity.entity_type,
            "entity_name": entity.entity_name,
            "entity_code": entity.entity_code,
            "smart_code": entity.smart_code,
        }

    async def _create_relationship(self, params: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, Any]:
        relationship = await self.store.create_relationship(
            self.organization_id,
            from_entity_id=str(params["from_entity_id"]),
            to_entity_id=str(params["to_entity_id"]),
            relationship_type=params["relationship_type"],
            smart_code=params["smart_code"],
            metadata=params.get("metadata") or {},
        )
        return {
            "id": relationship.id,
            "from_entity_id": relationship.from_entity_id,
            "to_entity_id": relationship.to_entity_id,
            "relationship_type": relationship.relationship_type,
        }

    async def _set_status(self, params: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, Any]:
        subject_entity_id = params.get("subject_entity_id")
        if not subject_entity_id or str(subject_entity_id).startswith("${"):
            raise ValidationError(
                "set_status requires a subject entity",
                details={"subject_entity_id": subject_entity_id},
            )
        relationship = await self.status_manager.set_status(str(subject_entity_id), params["status_smart_code"])
        return {
            "relationship_id": relationship.id,
            "subject_entity_id": relationship.from_entity_id,
            "status_entity_id": relationship.to_entity_id,
            "status_smart_code": params["status_smart_code"],
        }

    async def _create_transaction(self, params: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            total_amount = float(params.get("total_amount") or 0)
        except (TypeError, ValueError):
            raise ValidationError(
                f"Invalid total_amount: {params.get('total_amount')}",
                details={"total_amount": params.get("total_amount")},
            )
        transaction = await self.store.create_transaction(
            self.organization_id,
            {
                "transaction_type": params["transaction_type"],
                "smart_code": params["smart_code"],
                "source_entity_id": params.get("source_entity_id"),
                "target_entity_id": params.get("target_entity_id"),
                "total_amount": total_amount,
                "transaction_status": params.get("transaction_status"),
                "metadata": params.get("metadata") or {},
            },
            params.get("lines") or [],
        )
        return {
            "id": transaction.id,
            "transaction_type": transaction.transaction_type,
            "total_amount": transaction.total_amount,
            "transaction_status": transaction.transaction_status,
            "line_count": len(transaction.lines),
        }

    async def _send_notification(self, params: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            await self.notifier.send(
                params.get("channel", "email"),
                str(params["recipient"]),
                params["template"],
                params.get("payload") or {},
            )
        except Exception as e:
            # Fire-and-forget: delivery problems never fail the step
            logger.warning(f"Notification {params.get('template')} to {params.get('recipient')} failed: {e}")
            return {"sent": False, "error": str(e)}
        return {"sent": True}

    async def _call_api(self, params: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, Any]:
        method = str(params.get("method", "POST")).upper()
        url = str(params["url"])
        request_kwargs: Dict[str, Any] = {"headers": params.get("headers") or {}}
        if params.get("body") is not None:
            request_kwargs["json"] = params["body"]

        try:
            if self.http_client is not None:
                response = await self.http_client.request(method, url, **request_kwargs)
            else:
                async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
                    response = await client.request(method, url, **request_kwargs)
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                f"{method} {url} failed", details={"url": url, "reason": f"{type(e).__name__}: {e}"}
            )

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"{method} {url} returned {response.status_code}",
                details={"url": url, "status_code": response.status_code},
            )

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return {"status_code": response.status_code, "body": body}

    async def _set_variable(self, params: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, Any]:
        name = params["variable"]
        operation = VariableOperation(params.get("operation", VariableOperation.SET))
        value = params.get("value")

        if operation == VariableOperation.SET:
            variables[name] = value
        elif operation == VariableOperation.INCREMENT:
            current = variables.get(name) or 0
            step = 1 if value is None else value
            try:
                variables[name] = current + step
            except TypeError:
                raise ValidationError(
                    f"Cannot increment {name}: {current!r} + {step!r}",
                    details={"variable": name},
                )
        elif operation == VariableOperation.APPEND:
            current = variables.get(name)
            if current is None:
                current = []
            if not isinstance(current, list):
                raise ValidationError(f"Cannot append to non-list variable {name}", details={"variable": name})
            variables[name] = current + [value]

        return {"variable": name, "value": variables[name]}
