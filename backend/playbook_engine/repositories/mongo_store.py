"""MongoDB (Motor) implementation of the persistent store adapter"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .async_mongo import ENTITIES, DYNAMIC_DATA, RELATIONSHIPS, TRANSACTIONS, get_async_database
from .store import Filters, Sort, StoreAdapter, to_plain
from ..domain.enums import RunStatus, TransactionType
from ..domain.errors import AlreadyExistsError, ConcurrencyError, NotFoundError, StoreError
from ..domain.models import DynamicField, Entity, Relationship, Transaction, TransactionLine
from ..utils.idgen import generate_entity_id, generate_relationship_id, generate_transaction_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


def _strip(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc.pop("_id", None)
    return doc


class MongoStoreAdapter(StoreAdapter):
    """Generic record store backed by four MongoDB collections"""

    def __init__(self, database: Optional[AsyncIOMotorDatabase] = None):
        db = database if database is not None else get_async_database()
        self._entities: AsyncIOMotorCollection = db[ENTITIES]
        self._dynamic: AsyncIOMotorCollection = db[DYNAMIC_DATA]
        self._relationships: AsyncIOMotorCollection = db[RELATIONSHIPS]
        self._transactions: AsyncIOMotorCollection = db[TRANSACTIONS]

    # =========================================================================
    # Entities
    # =========================================================================

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
        now = utc_now()
        entity = Entity(
            id=entity_id or generate_entity_id(),
            organization_id=organization_id,
            entity_type=entity_type,
            entity_name=entity_name,
            entity_code=entity_code,
            smart_code=smart_code,
            metadata=to_plain(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        doc = entity.model_dump()
        doc["_id"] = entity.id
        try:
            await self._entities.insert_one(doc)
        except DuplicateKeyError:
            existing = None
            if entity_code is not None:
                existing = await self._entities.find_one({
                    "organization_id": organization_id,
                    "entity_type": entity_type,
                    "entity_code": entity_code,
                })
            raise AlreadyExistsError(
                f"Entity {entity_type}/{entity_code or entity.id} already exists",
                details={"entity_id": existing["id"] if existing else entity.id},
            )
        except PyMongoError as e:
            raise StoreError(f"Failed to create entity: {e}")
        return entity

    async def get_entity(self, organization_id: str, entity_id: str) -> Optional[Entity]:
        doc = await self._entities.find_one({"id": entity_id, "organization_id": organization_id})
        return Entity.model_validate(_strip(doc)) if doc else None

    async def update_entity(
        self,
        organization_id: str,
        entity_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Entity:
        filter_query: Dict[str, Any] = {"id": entity_id, "organization_id": organization_id}
        if expected_version is not None:
            filter_query["version"] = expected_version

        result = await self._entities.find_one_and_update(
            filter_query,
            {"$set": {**to_plain(updates), "updated_at": utc_now()}, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if result is None:
            await self._raise_update_miss(self._entities, organization_id, entity_id, "Entity", expected_version)
        return Entity.model_validate(_strip(result))

    async def query_entities(
        self, organization_id: str, filters: Optional[Filters] = None, limit: Optional[int] = None
    ) -> List[Entity]:
        cursor = self._entities.find({**to_plain(filters or {}), "organization_id": organization_id})
        cursor = cursor.sort("created_at", ASCENDING)
        if limit is not None:
            cursor = cursor.limit(limit)
        return [Entity.model_validate(_strip(doc)) async for doc in cursor]

    # =========================================================================
    # Dynamic Attributes
    # =========================================================================

    async def set_dynamic_field(
        self, organization_id: str, entity_id: str, field_name: str, value: Any, smart_code: str
    ) -> DynamicField:
        field = DynamicField(
            entity_id=entity_id,
            organization_id=organization_id,
            field_name=field_name,
            field_value=to_plain(value),
            smart_code=smart_code,
            updated_at=utc_now(),
        )
        await self._dynamic.update_one(
            {"organization_id": organization_id, "entity_id": entity_id, "field_name": field_name},
            {"$set": field.model_dump()},
            upsert=True,
        )
        return field

    async def get_dynamic_fields(self, organization_id: str, entity_id: str) -> Dict[str, Any]:
        cursor = self._dynamic.find({"organization_id": organization_id, "entity_id": entity_id})
        return {doc["field_name"]: doc.get("field_value") async for doc in cursor}

    # =========================================================================
    # Relationships
    # =========================================================================

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
        relationship = Relationship(
            id=generate_relationship_id(),
            organization_id=organization_id,
            from_entity_id=from_entity_id,
            to_entity_id=to_entity_id,
            relationship_type=relationship_type,
            effective_date=effective_date or utc_now(),
            smart_code=smart_code,
            metadata=to_plain(metadata or {}),
        )
        doc = relationship.model_dump()
        doc["_id"] = relationship.id
        try:
            await self._relationships.insert_one(doc)
        except PyMongoError as e:
            raise StoreError(f"Failed to create relationship: {e}")
        return relationship

    async def update_relationship(
        self,
        organization_id: str,
        relationship_id: str,
        updates: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Relationship:
        filter_query = {**to_plain(expected or {}), "id": relationship_id, "organization_id": organization_id}
        result = await self._relationships.find_one_and_update(
            filter_query,
            {"$set": to_plain(updates), "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if result is None:
            exists = await self._relationships.find_one({"id": relationship_id, "organization_id": organization_id})
            if exists is None:
                raise NotFoundError(f"Relationship {relationship_id} not found")
            raise ConcurrencyError(
                f"Relationship {relationship_id} precondition failed",
                details={"expected": to_plain(expected or {})},
            )
        return Relationship.model_validate(_strip(result))

    async def query_relationships(
        self, organization_id: str, filters: Optional[Filters] = None
    ) -> List[Relationship]:
        cursor = self._relationships.find({**to_plain(filters or {}), "organization_id": organization_id})
        cursor = cursor.sort([("effective_date", ASCENDING), ("id", ASCENDING)])
        return [Relationship.model_validate(_strip(doc)) async for doc in cursor]

    # =========================================================================
    # Transactions
    # =========================================================================

    async def create_transaction(
        self, organization_id: str, header: Dict[str, Any], lines: Optional[List[Dict[str, Any]]] = None
    ) -> Transaction:
        header = to_plain(dict(header))
        transaction = Transaction(
            id=header.pop("id", None) or generate_transaction_id(),
            organization_id=organization_id,
            transaction_date=header.pop("transaction_date", None) or utc_now(),
            lines=[
                TransactionLine.model_validate({"line_number": index + 1, **to_plain(line)})
                for index, line in enumerate(lines or [])
            ],
            **header,
        )
        doc = transaction.model_dump()
        doc["_id"] = transaction.id
        try:
            await self._transactions.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyExistsError(f"Transaction {transaction.id} already exists")
        except PyMongoError as e:
            raise StoreError(f"Failed to create transaction: {e}")
        return transaction

    async def get_transaction(self, organization_id: str, transaction_id: str) -> Optional[Transaction]:
        doc = await self._transactions.find_one({"id": transaction_id, "organization_id": organization_id})
        return Transaction.model_validate(_strip(doc)) if doc else None

    async def update_transaction(
        self,
        organization_id: str,
        transaction_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Transaction:
        filter_query: Dict[str, Any] = {"id": transaction_id, "organization_id": organization_id}
        if expected_version is not None:
            filter_query["version"] = expected_version

        result = await self._transactions.find_one_and_update(
            filter_query,
            {"$set": to_plain(updates), "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if result is None:
            await self._raise_update_miss(
                self._transactions, organization_id, transaction_id, "Transaction", expected_version
            )
        return Transaction.model_validate(_strip(result))

    async def query_transactions(
        self,
        organization_id: str,
        filters: Optional[Filters] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        cursor = self._transactions.find({**to_plain(filters or {}), "organization_id": organization_id})
        cursor = cursor.sort(sort or [("transaction_date", ASCENDING)])
        if limit is not None:
            cursor = cursor.limit(limit)
        return [Transaction.model_validate(_strip(doc)) async for doc in cursor]

    async def find_due_instances(self, now: datetime) -> List[Transaction]:
        cursor = self._transactions.find({
            "transaction_type": TransactionType.WORKFLOW_INSTANCE.value,
            "metadata.status": RunStatus.RUNNING.value,
            "$or": [
                {"metadata.wake_at": {"$lte": now}},
                {"metadata.timeout_at": {"$lte": now}},
            ],
        })
        return [Transaction.model_validate(_strip(doc)) async for doc in cursor]

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _raise_update_miss(
        self,
        collection: AsyncIOMotorCollection,
        organization_id: str,
        record_id: str,
        kind: str,
        expected_version: Optional[int],
    ) -> None:
        """Distinguish a missing record from a lost compare-and-swap"""
        exists = await collection.find_one({"id": record_id, "organization_id": organization_id})
        if exists is not None and expected_version is not None:
            logger.warning(
                f"{kind} {record_id} version conflict",
                extra={"organization_id": organization_id},
            )
            raise ConcurrencyError(
                f"{kind} {record_id} was modified. Please refresh and try again.",
                details={"expected_version": expected_version, "actual_version": exists.get("version")},
            )
        raise NotFoundError(f"{kind} {record_id} not found")
