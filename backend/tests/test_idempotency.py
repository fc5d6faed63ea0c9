"""Idempotency tests: replay, key reuse, concurrent double submit, expiry."""

import asyncio
from datetime import timedelta

import pytest

from playbook_engine.config.settings import settings
from playbook_engine.domain.enums import AuditAction
from playbook_engine.domain.errors import (
    IdempotencyConflictError, IdempotencyInProgressError, IdempotentReplayError, RunNotFoundError
)
from playbook_engine.engine.audit_writer import AuditWriter
from playbook_engine.services.idempotency_service import IdempotencyService, compute_request_hash
from playbook_engine.utils.time import utc_now

from .conftest import ORG_ID, OTHER_ORG_ID

ENDPOINT = "POST /runs"


class CountingHandler:
    def __init__(self, delay: float = 0.0, error: Exception = None):
        self.calls = 0
        self.delay = delay
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return {"id": f"RUN-{self.calls}", "status": "running"}


def test_request_hash_ignores_field_order():
    assert compute_request_hash({"a": 1, "b": {"c": 2, "d": 3}}) == compute_request_hash({"b": {"d": 3, "c": 2}, "a": 1})
    assert compute_request_hash({"a": 1}) != compute_request_hash({"a": 2})


@pytest.mark.asyncio
async def test_no_key_disables_deduplication(store):
    service = IdempotencyService(store, ORG_ID)
    handler = CountingHandler()
    await service.process_request(None, ENDPOINT, {"a": 1}, handler)
    await service.process_request("", ENDPOINT, {"a": 1}, handler)
    assert handler.calls == 2


@pytest.mark.asyncio
async def test_retry_replays_cached_response(store):
    service = IdempotencyService(store, ORG_ID)
    handler = CountingHandler()

    first = await service.process_request("key-1", ENDPOINT, {"a": 1}, handler, actor_id="USR-OPERATOR", success_status=201)
    second = await service.process_request("key-1", ENDPOINT, {"a": 1}, handler, actor_id="USR-OPERATOR", success_status=201)

    assert handler.calls == 1
    assert first.cached is False and second.cached is True
    assert second.response == first.response
    assert second.status_code == 201

    record = await service.get_record("key-1", ENDPOINT)
    assert record.is_complete
    assert record.cached_response == first.response

    replays = await AuditWriter(store, ORG_ID).query_events(action=AuditAction.IDEMPOTENT_REPLAY)
    assert len(replays) == 1
    assert replays[0].actor_id == "USR-OPERATOR"


@pytest.mark.asyncio
async def test_key_reuse_with_different_body_conflicts(store):
    service = IdempotencyService(store, ORG_ID)
    handler = CountingHandler()
    await service.process_request("key-2", ENDPOINT, {"a": 1}, handler)

    with pytest.raises(IdempotencyConflictError) as exc_info:
        await service.process_request("key-2", ENDPOINT, {"a": 2}, handler)

    assert exc_info.value.http_status == 409
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_same_key_on_other_endpoint_or_organization_is_independent(store):
    handler = CountingHandler()
    await IdempotencyService(store, ORG_ID).process_request("key-3", ENDPOINT, {"a": 1}, handler)
    await IdempotencyService(store, ORG_ID).process_request("key-3", "POST /runs/RUN-1/retry", {"a": 1}, handler)
    await IdempotencyService(store, OTHER_ORG_ID).process_request("key-3", ENDPOINT, {"a": 1}, handler)
    assert handler.calls == 3


@pytest.mark.asyncio
async def test_concurrent_double_submit_executes_once(store):
    service = IdempotencyService(store, ORG_ID)
    handler = CountingHandler(delay=0.05)

    results = await asyncio.gather(*[
        service.process_request("key-4", ENDPOINT, {"a": 1}, handler) for _ in range(5)
    ])

    assert handler.calls == 1
    assert len({result.response["id"] for result in results}) == 1
    assert sum(1 for result in results if not result.cached) == 1
    records = await store.query_entities(ORG_ID, {"entity_type": "idempotency_record"})
    assert len(records) == 1


@pytest.mark.asyncio
async def test_duplicate_gives_up_while_first_is_in_flight(store, monkeypatch):
    monkeypatch.setattr(settings, "idempotency_wait_seconds", 0.05)
    service = IdempotencyService(store, ORG_ID)
    slow = CountingHandler(delay=0.5)

    first = asyncio.create_task(service.process_request("key-5", ENDPOINT, {"a": 1}, slow))
    await asyncio.sleep(0.01)
    with pytest.raises(IdempotencyInProgressError):
        await service.process_request("key-5", ENDPOINT, {"a": 1}, slow)
    await first
    assert slow.calls == 1


@pytest.mark.asyncio
async def test_failed_request_replays_its_error(store):
    service = IdempotencyService(store, ORG_ID)
    handler = CountingHandler(error=RunNotFoundError("Run RUN-X not found"))

    with pytest.raises(RunNotFoundError):
        await service.process_request("key-6", ENDPOINT, {"a": 1}, handler)
    with pytest.raises(IdempotentReplayError) as exc_info:
        await service.process_request("key-6", ENDPOINT, {"a": 1}, handler)

    assert handler.calls == 1
    assert exc_info.value.http_status == 404
    assert exc_info.value.error_code == "RUN_NOT_FOUND"


@pytest.mark.asyncio
async def test_expired_record_is_reclaimed(store):
    service = IdempotencyService(store, ORG_ID)
    handler = CountingHandler()
    await service.process_request("key-7", ENDPOINT, {"a": 1}, handler)

    record = await service.get_record("key-7", ENDPOINT)
    await store.update_entity(ORG_ID, record.entity_id, {"metadata.expires_at": utc_now() - timedelta(hours=1)})

    # Past expiry the key is free again, even with a different body
    result = await service.process_request("key-7", ENDPOINT, {"a": 2}, handler)
    assert result.cached is False
    assert handler.calls == 2
    assert len(await store.query_entities(ORG_ID, {"entity_type": "idempotency_record"})) == 1
