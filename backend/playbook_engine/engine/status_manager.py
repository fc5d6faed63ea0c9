"""Status Transition Manager - Current status as the newest active HAS_STATUS edge"""
from typing import List, Optional

from ..domain.models import Entity, Relationship
from ..domain.enums import EntityType, RelationshipType, SmartCode
from ..domain.errors import ConcurrencyError, NotFoundError
from ..repositories.store import StoreAdapter
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class StatusTransitionManager:
    """
    Maintain "current status" of subject entities

    Status is never a field: it is the newest active, unexpired HAS_STATUS
    relationship from the subject to a status entity. A transition creates
    the new edge first and then retires every other active edge with a
    compare-and-swap on is_active, so readers never see zero current
    statuses and always agree on the newest one.
    """

    def __init__(self, store: StoreAdapter, organization_id: str):
        self.store = store
        self.organization_id = organization_id

    async def set_status(self, subject_entity_id: str, new_status_smart_code: str) -> Relationship:
        """
        Transition subject to the status entity with the given smart code

        Raises:
            NotFoundError: no status entity carries the smart code
        """
        status_entity = await self._resolve_status_entity(new_status_smart_code)

        created = await self.store.create_relationship(
            self.organization_id,
            from_entity_id=subject_entity_id,
            to_entity_id=status_entity.id,
            relationship_type=RelationshipType.HAS_STATUS.value,
            smart_code=SmartCode.STATUS_ASSIGN.value,
            effective_date=utc_now(),
            metadata={"status_smart_code": new_status_smart_code},
        )

        await self._retire_superseded(subject_entity_id)

        logger.info(
            f"Status of {subject_entity_id} set to {new_status_smart_code}",
            extra={"status": new_status_smart_code, "organization_id": self.organization_id}
        )
        return created

    async def get_current_status(self, subject_entity_id: str) -> Optional[Relationship]:
        """Newest active, unexpired status edge, or None"""
        current = await self._current_edges(subject_entity_id)
        return current[-1] if current else None

    async def get_current_status_code(self, subject_entity_id: str) -> Optional[str]:
        """Smart code of the current status entity"""
        edge = await self.get_current_status(subject_entity_id)
        if edge is None:
            return None
        code = edge.metadata.get("status_smart_code")
        if code:
            return code
        status_entity = await self.store.get_entity(self.organization_id, edge.to_entity_id)
        return status_entity.smart_code if status_entity else None

    async def get_status_history(self, subject_entity_id: str) -> List[Relationship]:
        """All status edges of subject, oldest first"""
        return await self.store.query_relationships(
            self.organization_id,
            {
                "from_entity_id": subject_entity_id,
                "relationship_type": RelationshipType.HAS_STATUS.value,
            },
        )

    async def _resolve_status_entity(self, smart_code: str) -> Entity:
        matches = await self.store.query_entities(
            self.organization_id,
            {"entity_type": EntityType.STATUS.value, "smart_code": smart_code},
            limit=1,
        )
        if not matches:
            raise NotFoundError(
                f"Status {smart_code} not found",
                details={"smart_code": smart_code},
            )
        return matches[0]

    async def _current_edges(self, subject_entity_id: str) -> List[Relationship]:
        now = utc_now()
        edges = await self.store.query_relationships(
            self.organization_id,
            {
                "from_entity_id": subject_entity_id,
                "relationship_type": RelationshipType.HAS_STATUS.value,
                "is_active": True,
            },
        )
        current = [edge for edge in edges if edge.is_current(now)]
        current.sort(key=lambda edge: edge.ordering_key)
        return current

    async def _retire_superseded(self, subject_entity_id: str) -> None:
        """Retire every active edge except the newest"""
        current = await self._current_edges(subject_entity_id)
        superseded = current[:-1]
        if len(superseded) > 1:
            # More than the one edge a transition replaces: an earlier write was interrupted
            logger.warning(
                f"Repairing {len(superseded)} stale active statuses on {subject_entity_id}",
                extra={"organization_id": self.organization_id}
            )

        now = utc_now()
        for edge in superseded:
            try:
                await self.store.update_relationship(
                    self.organization_id,
                    edge.id,
                    {"is_active": False, "expiration_date": now},
                    expected={"is_active": True},
                )
            except ConcurrencyError:
                # Already retired by a concurrent transition
                logger.debug(f"Status edge {edge.id} already retired")
