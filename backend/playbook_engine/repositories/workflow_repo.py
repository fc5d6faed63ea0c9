"""Workflow Repository - Typed access to definitions, runs, step executions and run logs

All records live in the generic store: definitions are entities, everything
else is a bookkeeping transaction whose metadata carries the typed fields.
"""
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo import ASCENDING

from .store import StoreAdapter, to_plain
from ..domain.models import (
    WorkflowDefinition, WorkflowInstance, StepExecution, RunLogEntry, Transaction
)
from ..domain.enums import EntityType, TransactionType, SmartCode, LogLevel
from ..domain.errors import WorkflowNotFoundError, RunNotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)

_HEADER_FIELDS = {"id", "organization_id", "version"}


class WorkflowRepository:
    """Repository for workflow definitions and run bookkeeping"""

    def __init__(self, store: StoreAdapter, organization_id: str):
        self.store = store
        self.organization_id = organization_id

    # =========================================================================
    # Definitions
    # =========================================================================

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Persist a published definition as a workflow_definition entity"""
        await self.store.create_entity(
            self.organization_id,
            entity_id=definition.id,
            entity_type=EntityType.WORKFLOW_DEFINITION.value,
            entity_name=definition.name,
            smart_code=definition.smart_code or SmartCode.WORKFLOW_DEFINITION.value,
            metadata={"definition": definition.model_dump(mode="json")},
        )
        logger.info(
            f"Saved workflow definition: {definition.id}",
            extra={"definition_id": definition.id, "organization_id": self.organization_id}
        )
        return definition

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """Get definition by ID"""
        entity = await self.store.get_entity(self.organization_id, definition_id)
        if entity is None or entity.entity_type != EntityType.WORKFLOW_DEFINITION.value:
            return None
        try:
            return WorkflowDefinition.model_validate(entity.metadata.get("definition", {}))
        except ValidationError as e:
            logger.error(
                f"Corrupted workflow definition {definition_id}: {str(e)[:500]}",
                extra={"definition_id": definition_id, "organization_id": self.organization_id}
            )
            return None

    async def get_definition_or_raise(self, definition_id: str) -> WorkflowDefinition:
        """Get definition by ID or raise error"""
        definition = await self.get_definition(definition_id)
        if definition is None:
            raise WorkflowNotFoundError(f"Workflow definition {definition_id} not found")
        return definition

    # =========================================================================
    # Instances
    # =========================================================================

    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Create the WORKFLOW_INSTANCE transaction"""
        transaction = await self.store.create_transaction(
            self.organization_id,
            {
                "id": instance.id,
                "transaction_type": TransactionType.WORKFLOW_INSTANCE.value,
                "smart_code": SmartCode.WORKFLOW_INSTANCE.value,
                "source_entity_id": instance.subject_entity_id,
                "target_entity_id": instance.definition_id,
                "transaction_date": instance.started_at,
                "transaction_status": instance.status.value,
                "metadata": self._instance_metadata(instance),
            },
        )
        return self._to_instance(transaction)

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Get instance by ID"""
        transaction = await self.store.get_transaction(self.organization_id, instance_id)
        if transaction is None or transaction.transaction_type != TransactionType.WORKFLOW_INSTANCE.value:
            return None
        return self._to_instance(transaction)

    async def get_instance_or_raise(self, instance_id: str) -> WorkflowInstance:
        """Get instance by ID or raise error"""
        instance = await self.get_instance(instance_id)
        if instance is None:
            raise RunNotFoundError(f"Run {instance_id} not found")
        return instance

    async def update_instance(self, instance: WorkflowInstance, updates: Dict[str, Any]) -> WorkflowInstance:
        """
        Update instance fields with optimistic concurrency

        Raises:
            ConcurrencyError: if the instance changed since it was read
        """
        store_updates = {f"metadata.{field}": value for field, value in updates.items()}
        if "status" in updates:
            store_updates["transaction_status"] = updates["status"]
        transaction = await self.store.update_transaction(
            self.organization_id,
            instance.id,
            store_updates,
            expected_version=instance.version,
        )
        return self._to_instance(transaction)

    async def list_instances(self, definition_id: Optional[str] = None, status: Optional[str] = None) -> List[WorkflowInstance]:
        filters: Dict[str, Any] = {"transaction_type": TransactionType.WORKFLOW_INSTANCE.value}
        if definition_id:
            filters["target_entity_id"] = definition_id
        if status:
            filters["metadata.status"] = status
        transactions = await self.store.query_transactions(self.organization_id, filters)
        return [self._to_instance(t) for t in transactions]

    def _instance_metadata(self, instance: WorkflowInstance) -> Dict[str, Any]:
        return to_plain(instance.model_dump(exclude=_HEADER_FIELDS))

    def _to_instance(self, transaction: Transaction) -> WorkflowInstance:
        return WorkflowInstance.model_validate({
            **transaction.metadata,
            "id": transaction.id,
            "organization_id": transaction.organization_id,
            "version": transaction.version,
        })

    # =========================================================================
    # Step Executions
    # =========================================================================

    async def create_step_execution(self, execution: StepExecution) -> StepExecution:
        """Append a WORKFLOW_STEP_EXECUTION row"""
        transaction = await self.store.create_transaction(
            self.organization_id,
            {
                "id": execution.id,
                "transaction_type": TransactionType.WORKFLOW_STEP_EXECUTION.value,
                "smart_code": SmartCode.STEP_EXECUTION.value,
                "source_entity_id": execution.instance_id,
                "transaction_date": execution.started_at,
                "transaction_status": execution.status.value,
                "metadata": to_plain(execution.model_dump(exclude={"id", "version"})),
            },
        )
        return self._to_step_execution(transaction)

    async def update_step_execution(self, execution: StepExecution, updates: Dict[str, Any]) -> StepExecution:
        """Settle a pending step execution (same attempt, not a retry)"""
        store_updates = {f"metadata.{field}": value for field, value in updates.items()}
        if "status" in updates:
            store_updates["transaction_status"] = updates["status"]
        transaction = await self.store.update_transaction(
            self.organization_id,
            execution.id,
            store_updates,
            expected_version=execution.version,
        )
        return self._to_step_execution(transaction)

    async def get_step_execution(self, execution_id: str) -> Optional[StepExecution]:
        transaction = await self.store.get_transaction(self.organization_id, execution_id)
        if transaction is None or transaction.transaction_type != TransactionType.WORKFLOW_STEP_EXECUTION.value:
            return None
        return self._to_step_execution(transaction)

    async def list_step_executions(self, instance_id: str, limit: Optional[int] = None) -> List[StepExecution]:
        """Step executions of a run in step sequence order"""
        transactions = await self.store.query_transactions(
            self.organization_id,
            {
                "transaction_type": TransactionType.WORKFLOW_STEP_EXECUTION.value,
                "source_entity_id": instance_id,
            },
            sort=[("metadata.sequence", ASCENDING), ("transaction_date", ASCENDING)],
            limit=limit,
        )
        return [self._to_step_execution(t) for t in transactions]

    def _to_step_execution(self, transaction: Transaction) -> StepExecution:
        return StepExecution.model_validate({
            **transaction.metadata,
            "id": transaction.id,
            "version": transaction.version,
        })

    # =========================================================================
    # Run Logs
    # =========================================================================

    async def append_log(self, entry: RunLogEntry) -> None:
        await self.store.create_transaction(
            self.organization_id,
            {
                "id": entry.id,
                "transaction_type": TransactionType.WORKFLOW_LOG.value,
                "smart_code": SmartCode.RUN_LOG.value,
                "source_entity_id": entry.instance_id,
                "transaction_date": entry.timestamp,
                "metadata": to_plain(entry.model_dump(exclude={"id"})),
            },
        )

    async def list_logs(
        self, instance_id: str, min_level: LogLevel = LogLevel.DEBUG, limit: Optional[int] = None
    ) -> List[RunLogEntry]:
        """Run log lines at or above min_level, oldest first"""
        allowed = [level.value for level in LogLevel if level.rank >= min_level.rank]
        transactions = await self.store.query_transactions(
            self.organization_id,
            {
                "transaction_type": TransactionType.WORKFLOW_LOG.value,
                "source_entity_id": instance_id,
                "metadata.level": {"$in": allowed},
            },
            sort=[("transaction_date", ASCENDING)],
            limit=limit,
        )
        return [
            RunLogEntry.model_validate({**t.metadata, "id": t.id})
            for t in transactions
        ]
