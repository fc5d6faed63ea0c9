"""Idempotency Service - Deduplicate retried mutating requests

A record entity (entity_code = "<endpoint>::<key>") is claimed before the
handler runs. The store's unique (organization, entity_type, entity_code)
constraint decides races: the loser reads back the winner's record and
waits for its outcome instead of executing the handler again.
"""
import asyncio
import hashlib
import json
from typing import Any, Awaitable, Callable, Optional, Tuple

from pydantic import BaseModel

from ..config.settings import settings
from ..domain.models import Entity, IdempotencyRecord
from ..domain.enums import EntityType, SmartCode
from ..domain.errors import (
    DomainError, AlreadyExistsError, ConcurrencyError, ConflictError,
    IdempotencyConflictError, IdempotencyInProgressError, IdempotentReplayError
)
from ..engine.audit_writer import AuditWriter
from ..repositories.store import StoreAdapter
from ..utils.time import utc_now, add_seconds, is_past, parse_iso
from ..utils.logger import get_logger

logger = get_logger(__name__)

STATE_IN_PROGRESS = "in_progress"
STATE_COMPLETED = "completed"
OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"


class IdempotentResult(BaseModel):
    """Handler response plus whether it came from the cache"""
    response: Any = None
    cached: bool = False
    status_code: int = 200


def compute_request_hash(request_body: Any) -> str:
    """Field-order-independent SHA-256 of the request body"""
    canonical = json.dumps(request_body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyService:
    """Service for opt-in request deduplication"""

    def __init__(self, store: StoreAdapter, organization_id: str):
        self.store = store
        self.organization_id = organization_id
        self.audit_writer = AuditWriter(store, organization_id)

    async def process_request(
        self,
        key: Optional[str],
        endpoint: str,
        request_body: Any,
        handler: Callable[[], Awaitable[Any]],
        actor_id: Optional[str] = None,
        success_status: int = 200
    ) -> IdempotentResult:
        """
        Execute handler at most once per (key, endpoint) within the TTL

        Raises:
            IdempotencyConflictError: key reused with a different body
            IdempotencyInProgressError: the first request has not finished in time
            IdempotentReplayError: the first request failed; its error is replayed
        """
        if not key:
            response = await handler()
            return IdempotentResult(response=response, cached=False, status_code=success_status)

        request_hash = compute_request_hash(request_body)
        record, claimed = await self._claim(key, endpoint, request_hash)
        if claimed:
            return await self._execute(record, handler, success_status)

        logger.info(f"Idempotency key {key} already seen on {endpoint}", extra={"action": endpoint})
        return await self._replay(record, key, endpoint, request_hash, actor_id)

    async def get_record(self, key: str, endpoint: str) -> Optional[IdempotencyRecord]:
        """Current record for (key, endpoint), expired or not"""
        matches = await self.store.query_entities(
            self.organization_id,
            {"entity_type": EntityType.IDEMPOTENCY_RECORD.value, "entity_code": self._record_code(key, endpoint)},
            limit=1,
        )
        if not matches:
            return None
        return await self._to_record(matches[0])

    # =========================================================================
    # Claim
    # =========================================================================

    def _record_code(self, key: str, endpoint: str) -> str:
        return f"{endpoint}::{key}"

    async def _claim(self, key: str, endpoint: str, request_hash: str) -> Tuple[Entity, bool]:
        """Create the record, or reclaim an expired one; False when another request owns it"""
        code = self._record_code(key, endpoint)
        expires_at = add_seconds(utc_now(), settings.idempotency_ttl_seconds)
        try:
            record = await self.store.create_entity(
                self.organization_id,
                entity_type=EntityType.IDEMPOTENCY_RECORD.value,
                entity_name=code,
                entity_code=code,
                smart_code=SmartCode.IDEMPOTENCY_RECORD.value,
                metadata={
                    "key": key,
                    "endpoint": endpoint,
                    "request_hash": request_hash,
                    "state": STATE_IN_PROGRESS,
                    "expires_at": expires_at,
                },
            )
            return record, True
        except AlreadyExistsError as e:
            existing = await self.store.get_entity(self.organization_id, e.details.get("entity_id", ""))

        if existing is None:
            raise ConflictError(f"Idempotency record for {code} disappeared during claim")

        if not is_past(self._expires_at(existing)):
            return existing, False

        # Lazy expiry: reclaim in place, guarded by the record version
        try:
            reclaimed = await self.store.update_entity(
                self.organization_id,
                existing.id,
                {
                    "metadata.request_hash": request_hash,
                    "metadata.state": STATE_IN_PROGRESS,
                    "metadata.outcome": None,
                    "metadata.expires_at": expires_at,
                },
                expected_version=existing.version,
            )
            logger.info(f"Reclaimed expired idempotency record {code}")
            return reclaimed, True
        except ConcurrencyError:
            current = await self.store.get_entity(self.organization_id, existing.id)
            return current or existing, False

    def _expires_at(self, record: Entity):
        raw = record.metadata.get("expires_at")
        return parse_iso(raw) if raw else None

    # =========================================================================
    # Execute / Replay
    # =========================================================================

    async def _execute(
        self,
        record: Entity,
        handler: Callable[[], Awaitable[Any]],
        success_status: int
    ) -> IdempotentResult:
        try:
            response = await handler()
        except DomainError as e:
            await self._store_outcome(record, e.to_dict(), e.http_status, OUTCOME_ERROR)
            raise
        except Exception:
            await self._store_outcome(
                record,
                {"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred", "details": {}}},
                500,
                OUTCOME_ERROR,
            )
            raise

        await self._store_outcome(record, response, success_status, OUTCOME_SUCCESS)
        return IdempotentResult(response=response, cached=False, status_code=success_status)

    async def _store_outcome(self, record: Entity, payload: Any, status_code: int, outcome: str) -> None:
        """Response fields first, then the state flip that makes them visible"""
        await self.store.set_dynamic_field(
            self.organization_id, record.id, "cached_response", payload, SmartCode.IDEMPOTENCY_FIELD.value
        )
        await self.store.set_dynamic_field(
            self.organization_id, record.id, "status_code", status_code, SmartCode.IDEMPOTENCY_FIELD.value
        )
        await self.store.update_entity(
            self.organization_id,
            record.id,
            {
                "metadata.state": STATE_COMPLETED,
                "metadata.outcome": outcome,
                "metadata.completed_at": utc_now(),
            },
        )

    async def _replay(
        self,
        record: Entity,
        key: str,
        endpoint: str,
        request_hash: str,
        actor_id: Optional[str]
    ) -> IdempotentResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.idempotency_wait_seconds
        poll_seconds = settings.idempotency_poll_interval_ms / 1000

        while True:
            if record.metadata.get("request_hash") != request_hash:
                raise IdempotencyConflictError(
                    "Idempotency key reused with a different request",
                    details={"idempotency_key": key, "endpoint": endpoint},
                )
            if record.metadata.get("state") == STATE_COMPLETED:
                break
            if loop.time() >= deadline:
                raise IdempotencyInProgressError(
                    "A request with this idempotency key is still in progress",
                    details={"idempotency_key": key, "endpoint": endpoint},
                )
            await asyncio.sleep(poll_seconds)
            refreshed = await self.store.get_entity(self.organization_id, record.id)
            if refreshed is None:
                raise ConflictError(f"Idempotency record for {key} disappeared while waiting")
            record = refreshed

        stored = await self._to_record(record)
        await self.audit_writer.write_idempotent_replay(
            actor_id or "anonymous", endpoint, key, stored.status_code
        )

        if record.metadata.get("outcome") == OUTCOME_ERROR:
            error = (stored.cached_response or {}).get("error", {})
            raise IdempotentReplayError(
                error.get("message", "Original request failed"),
                stored.status_code or 500,
                stored_error=error,
            )
        return IdempotentResult(response=stored.cached_response, cached=True, status_code=stored.status_code or 200)

    async def _to_record(self, record: Entity) -> IdempotencyRecord:
        fields = await self.store.get_dynamic_fields(self.organization_id, record.id)
        return IdempotencyRecord(
            entity_id=record.id,
            key=record.metadata.get("key", ""),
            endpoint=record.metadata.get("endpoint", ""),
            request_hash=record.metadata.get("request_hash", ""),
            state=record.metadata.get("state", STATE_IN_PROGRESS),
            cached_response=fields.get("cached_response"),
            status_code=fields.get("status_code"),
            expires_at=self._expires_at(record) or utc_now(),
            version=record.version,
        )
