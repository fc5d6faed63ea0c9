"""Persistent Store Adapter - contract consumed by the engine

Every call is organization-scoped. Filters are dicts whose keys are top-level
record fields or dotted ``metadata.*`` paths. Values match exactly, or carry
one of the operators ``$in``, ``$ne``, ``$lt``, ``$lte``, ``$gt``, ``$gte``,
``$exists``.

Updates are dicts of field -> value and accept dotted ``metadata.*`` keys
to patch a single metadata entry.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from ..domain.models import Entity, Relationship, Transaction, DynamicField

Filters = Dict[str, Any]
Sort = List[Tuple[str, int]]


class StoreAdapter(Protocol):
    """Protocol for generic record persistence backends."""

    # Entities --------------------------------------------------------------
    async def create_entity(
        self,
        organization_id: str,
        *,
        entity_type: str,
        entity_name: str,
        smart_code: str,
        entity_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        entity_id: Optional[str] = None,
    ) -> Entity:
        """Create an entity. Raises AlreadyExistsError when
        (organization_id, entity_type, entity_code) is taken."""

    async def get_entity(self, organization_id: str, entity_id: str) -> Optional[Entity]:
        """Fetch one entity."""

    async def update_entity(
        self,
        organization_id: str,
        entity_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Entity:
        """Patch an entity. Raises ConcurrencyError on version mismatch."""

    async def query_entities(
        self, organization_id: str, filters: Optional[Filters] = None, limit: Optional[int] = None
    ) -> List[Entity]:
        """Return matching entities."""

    # Dynamic attributes ----------------------------------------------------
    async def set_dynamic_field(
        self, organization_id: str, entity_id: str, field_name: str, value: Any, smart_code: str
    ) -> DynamicField:
        """Upsert one attribute value."""

    async def get_dynamic_fields(self, organization_id: str, entity_id: str) -> Dict[str, Any]:
        """Return field_name -> value for an entity."""

    # Relationships ---------------------------------------------------------
    async def create_relationship(
        self,
        organization_id: str,
        *,
        from_entity_id: str,
        to_entity_id: str,
        relationship_type: str,
        smart_code: str,
        effective_date: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Relationship:
        """Create an active relationship."""

    async def update_relationship(
        self,
        organization_id: str,
        relationship_id: str,
        updates: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Relationship:
        """Patch a relationship. ``expected`` is a compare-and-swap
        precondition; raises ConcurrencyError when it does not hold."""

    async def query_relationships(
        self, organization_id: str, filters: Optional[Filters] = None
    ) -> List[Relationship]:
        """Return matching relationships."""

    # Transactions ----------------------------------------------------------
    async def create_transaction(
        self, organization_id: str, header: Dict[str, Any], lines: Optional[List[Dict[str, Any]]] = None
    ) -> Transaction:
        """Create a transaction with ordered lines."""

    async def get_transaction(self, organization_id: str, transaction_id: str) -> Optional[Transaction]:
        """Fetch one transaction."""

    async def update_transaction(
        self,
        organization_id: str,
        transaction_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Transaction:
        """Patch a transaction header. Raises ConcurrencyError on version mismatch."""

    async def query_transactions(
        self,
        organization_id: str,
        filters: Optional[Filters] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        """Return matching transactions."""

    # System scope ----------------------------------------------------------
    async def find_due_instances(self, now: datetime) -> List[Transaction]:
        """Running workflow instances whose wake_at or timeout_at has passed,
        across organizations. Used by the scheduler only."""


def to_plain(value: Any) -> Any:
    """Strip enums from nested structures so every backend can encode them"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    return value
