"""In-memory implementation of the persistent store adapter."""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING

from .store import Filters, Sort, StoreAdapter, to_plain
from ..domain.enums import RunStatus, TransactionType
from ..domain.errors import AlreadyExistsError, ConcurrencyError, NotFoundError
from ..domain.models import DynamicField, Entity, Relationship, Transaction, TransactionLine
from ..utils.idgen import generate_entity_id, generate_relationship_id, generate_transaction_id
from ..utils.time import utc_now

_MISSING = object()


def _get_path(doc: Dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _matches_operator(actual: Any, operator: str, expected: Any) -> bool:
    if operator == "$exists":
        return (actual is not _MISSING and actual is not None) == bool(expected)
    if actual is _MISSING:
        actual = None
    if operator == "$in":
        return actual in expected
    if operator == "$ne":
        return actual != expected
    if actual is None or expected is None:
        return False
    try:
        if operator == "$lt":
            return actual < expected
        if operator == "$lte":
            return actual <= expected
        if operator == "$gt":
            return actual > expected
        if operator == "$gte":
            return actual >= expected
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator: {operator}")


def matches(doc: Dict[str, Any], filters: Optional[Filters]) -> bool:
    """Evaluate a store filter dict against a plain document"""
    for path, expected in (filters or {}).items():
        if path == "$or":
            if not any(matches(doc, clause) for clause in expected):
                return False
            continue
        actual = _get_path(doc, path)
        if isinstance(expected, dict) and expected and all(key.startswith("$") for key in expected):
            if not all(_matches_operator(actual, op, value) for op, value in expected.items()):
                return False
        elif actual is _MISSING or actual != expected:
            return False
    return True


def _sort_docs(docs: List[Dict[str, Any]], sort: Optional[Sort]) -> List[Dict[str, Any]]:
    # Stable multi-key sort: apply the least significant key first
    for path, direction in reversed(sort or []):
        present = [doc for doc in docs if _get_path(doc, path) not in (_MISSING, None)]
        absent = [doc for doc in docs if _get_path(doc, path) in (_MISSING, None)]
        present.sort(key=lambda doc: _get_path(doc, path), reverse=direction != ASCENDING)
        docs = present + absent
    return docs


class InMemoryStoreAdapter(StoreAdapter):
    """Keep generic records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every operation yields to the event
    loop once, so concurrent callers interleave the way they would against a
    networked store.
    """

    def __init__(self) -> None:
        self._entities: Dict[str, Dict[str, Any]] = {}
        self._entity_codes: Dict[Tuple[str, str, str], str] = {}
        self._dynamic: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._relationships: Dict[str, Dict[str, Any]] = {}
        self._transactions: Dict[str, Dict[str, Any]] = {}

    async def _io(self) -> None:
        await asyncio.sleep(0)

    # ------------------------------------------------------------------
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
        await self._io()
        if entity_code is not None:
            unique_key = (organization_id, entity_type, entity_code)
            if unique_key in self._entity_codes:
                raise AlreadyExistsError(
                    f"Entity {entity_type}/{entity_code} already exists",
                    details={"entity_id": self._entity_codes[unique_key]},
                )
        now = utc_now()
        doc = {
            "id": entity_id or generate_entity_id(),
            "organization_id": organization_id,
            "entity_type": entity_type,
            "entity_name": entity_name,
            "entity_code": entity_code,
            "smart_code": smart_code,
            "metadata": to_plain(copy.deepcopy(metadata or {})),
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }
        if doc["id"] in self._entities:
            raise AlreadyExistsError(f"Entity {doc['id']} already exists")
        self._entities[doc["id"]] = doc
        if entity_code is not None:
            self._entity_codes[(organization_id, entity_type, entity_code)] = doc["id"]
        return Entity.model_validate(copy.deepcopy(doc))

    async def get_entity(self, organization_id: str, entity_id: str) -> Optional[Entity]:
        await self._io()
        doc = self._entities.get(entity_id)
        if doc is None or doc["organization_id"] != organization_id:
            return None
        return Entity.model_validate(copy.deepcopy(doc))

    async def update_entity(
        self,
        organization_id: str,
        entity_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Entity:
        await self._io()
        doc = self._entities.get(entity_id)
        if doc is None or doc["organization_id"] != organization_id:
            raise NotFoundError(f"Entity {entity_id} not found")
        if expected_version is not None and doc["version"] != expected_version:
            raise ConcurrencyError(
                f"Entity {entity_id} was modified",
                details={"expected_version": expected_version, "actual_version": doc["version"]},
            )
        for path, value in to_plain(updates).items():
            _set_path(doc, path, copy.deepcopy(value))
        doc["version"] += 1
        doc["updated_at"] = utc_now()
        return Entity.model_validate(copy.deepcopy(doc))

    async def query_entities(
        self, organization_id: str, filters: Optional[Filters] = None, limit: Optional[int] = None
    ) -> List[Entity]:
        await self._io()
        docs = [
            doc for doc in self._entities.values()
            if doc["organization_id"] == organization_id and matches(doc, to_plain(filters))
        ]
        docs = _sort_docs(docs, [("created_at", ASCENDING)])
        if limit is not None:
            docs = docs[:limit]
        return [Entity.model_validate(copy.deepcopy(doc)) for doc in docs]

    # ------------------------------------------------------------------
    async def set_dynamic_field(
        self, organization_id: str, entity_id: str, field_name: str, value: Any, smart_code: str
    ) -> DynamicField:
        await self._io()
        doc = {
            "entity_id": entity_id,
            "organization_id": organization_id,
            "field_name": field_name,
            "field_value": to_plain(copy.deepcopy(value)),
            "smart_code": smart_code,
            "updated_at": utc_now(),
        }
        self._dynamic[(organization_id, entity_id, field_name)] = doc
        return DynamicField.model_validate(copy.deepcopy(doc))

    async def get_dynamic_fields(self, organization_id: str, entity_id: str) -> Dict[str, Any]:
        await self._io()
        return {
            name: copy.deepcopy(doc["field_value"])
            for (org, ent, name), doc in self._dynamic.items()
            if org == organization_id and ent == entity_id
        }

    # ------------------------------------------------------------------
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
        await self._io()
        doc = {
            "id": generate_relationship_id(),
            "organization_id": organization_id,
            "from_entity_id": from_entity_id,
            "to_entity_id": to_entity_id,
            "relationship_type": relationship_type,
            "is_active": True,
            "effective_date": effective_date or utc_now(),
            "expiration_date": None,
            "smart_code": smart_code,
            "metadata": to_plain(copy.deepcopy(metadata or {})),
            "version": 1,
        }
        self._relationships[doc["id"]] = doc
        return Relationship.model_validate(copy.deepcopy(doc))

    async def update_relationship(
        self,
        organization_id: str,
        relationship_id: str,
        updates: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Relationship:
        await self._io()
        doc = self._relationships.get(relationship_id)
        if doc is None or doc["organization_id"] != organization_id:
            raise NotFoundError(f"Relationship {relationship_id} not found")
        if expected and not matches(doc, to_plain(expected)):
            raise ConcurrencyError(
                f"Relationship {relationship_id} precondition failed",
                details={"expected": to_plain(expected)},
            )
        for path, value in to_plain(updates).items():
            _set_path(doc, path, copy.deepcopy(value))
        doc["version"] += 1
        return Relationship.model_validate(copy.deepcopy(doc))

    async def query_relationships(
        self, organization_id: str, filters: Optional[Filters] = None
    ) -> List[Relationship]:
        await self._io()
        docs = [
            doc for doc in self._relationships.values()
            if doc["organization_id"] == organization_id and matches(doc, to_plain(filters))
        ]
        docs = _sort_docs(docs, [("effective_date", ASCENDING), ("id", ASCENDING)])
        return [Relationship.model_validate(copy.deepcopy(doc)) for doc in docs]

    # ------------------------------------------------------------------
    async def create_transaction(
        self, organization_id: str, header: Dict[str, Any], lines: Optional[List[Dict[str, Any]]] = None
    ) -> Transaction:
        await self._io()
        header = to_plain(copy.deepcopy(header))
        doc = {
            "id": header.pop("id", None) or generate_transaction_id(),
            "organization_id": organization_id,
            "transaction_type": header.pop("transaction_type"),
            "smart_code": header.pop("smart_code"),
            "transaction_code": header.pop("transaction_code", None),
            "source_entity_id": header.pop("source_entity_id", None),
            "target_entity_id": header.pop("target_entity_id", None),
            "total_amount": header.pop("total_amount", 0) or 0,
            "transaction_date": header.pop("transaction_date", None) or utc_now(),
            "transaction_status": header.pop("transaction_status", None),
            "metadata": header.pop("metadata", {}) or {},
            "version": 1,
            "lines": [
                TransactionLine.model_validate({"line_number": index + 1, **to_plain(line)}).model_dump()
                for index, line in enumerate(lines or [])
            ],
        }
        if doc["id"] in self._transactions:
            raise AlreadyExistsError(f"Transaction {doc['id']} already exists")
        self._transactions[doc["id"]] = doc
        return Transaction.model_validate(copy.deepcopy(doc))

    async def get_transaction(self, organization_id: str, transaction_id: str) -> Optional[Transaction]:
        await self._io()
        doc = self._transactions.get(transaction_id)
        if doc is None or doc["organization_id"] != organization_id:
            return None
        return Transaction.model_validate(copy.deepcopy(doc))

    async def update_transaction(
        self,
        organization_id: str,
        transaction_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Transaction:
        await self._io()
        doc = self._transactions.get(transaction_id)
        if doc is None or doc["organization_id"] != organization_id:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if expected_version is not None and doc["version"] != expected_version:
            raise ConcurrencyError(
                f"Transaction {transaction_id} was modified",
                details={"expected_version": expected_version, "actual_version": doc["version"]},
            )
        for path, value in to_plain(updates).items():
            _set_path(doc, path, copy.deepcopy(value))
        doc["version"] += 1
        return Transaction.model_validate(copy.deepcopy(doc))

    async def query_transactions(
        self,
        organization_id: str,
        filters: Optional[Filters] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        await self._io()
        docs = [
            doc for doc in self._transactions.values()
            if doc["organization_id"] == organization_id and matches(doc, to_plain(filters))
        ]
        docs = _sort_docs(docs, sort or [("transaction_date", ASCENDING)])
        if limit is not None:
            docs = docs[:limit]
        return [Transaction.model_validate(copy.deepcopy(doc)) for doc in docs]

    async def find_due_instances(self, now: datetime) -> List[Transaction]:
        await self._io()
        due_filter = {
            "transaction_type": TransactionType.WORKFLOW_INSTANCE.value,
            "metadata.status": RunStatus.RUNNING.value,
            "$or": [
                {"metadata.wake_at": {"$lte": now}},
                {"metadata.timeout_at": {"$lte": now}},
            ],
        }
        return [
            Transaction.model_validate(copy.deepcopy(doc))
            for doc in self._transactions.values()
            if matches(doc, due_filter)
        ]
