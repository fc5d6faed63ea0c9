"""Status transition tests: at most one current status per subject."""

import asyncio
from datetime import timedelta

import pytest

from playbook_engine.domain.errors import NotFoundError
from playbook_engine.engine.status_manager import StatusTransitionManager
from playbook_engine.utils.time import utc_now

from .conftest import ORG_ID, STATUS_ACTIVE, STATUS_CLOSED, STATUS_DRAFT, create_subject


async def active_edges(store, subject_id):
    return await store.query_relationships(
        ORG_ID, {"from_entity_id": subject_id, "relationship_type": "HAS_STATUS", "is_active": True}
    )


@pytest.mark.asyncio
async def test_transition_retires_previous_status(store):
    manager = StatusTransitionManager(store, ORG_ID)
    subject_id = await create_subject(store)

    await manager.set_status(subject_id, STATUS_DRAFT)
    await manager.set_status(subject_id, STATUS_ACTIVE)

    assert await manager.get_current_status_code(subject_id) == STATUS_ACTIVE
    assert len(await active_edges(store, subject_id)) == 1
    history = await manager.get_status_history(subject_id)
    assert len(history) == 2
    retired = [edge for edge in history if not edge.is_active]
    assert retired[0].metadata["status_smart_code"] == STATUS_DRAFT
    assert retired[0].expiration_date is not None


@pytest.mark.asyncio
async def test_unknown_status_fails_before_any_write(store):
    manager = StatusTransitionManager(store, ORG_ID)
    subject_id = await create_subject(store)
    await manager.set_status(subject_id, STATUS_DRAFT)

    with pytest.raises(NotFoundError):
        await manager.set_status(subject_id, "HERA.CRM.STATUS.UNKNOWN.V1")

    assert await manager.get_current_status_code(subject_id) == STATUS_DRAFT
    assert len(await manager.get_status_history(subject_id)) == 1


@pytest.mark.asyncio
async def test_concurrent_transitions_leave_one_active_status(store):
    manager = StatusTransitionManager(store, ORG_ID)
    subject_id = await create_subject(store)
    await manager.set_status(subject_id, STATUS_DRAFT)

    await asyncio.gather(*[
        manager.set_status(subject_id, code)
        for code in (STATUS_ACTIVE, STATUS_CLOSED, STATUS_ACTIVE, STATUS_CLOSED)
    ])

    edges = await active_edges(store, subject_id)
    assert len(edges) == 1
    current = await manager.get_current_status(subject_id)
    assert current.id == edges[0].id


@pytest.mark.asyncio
async def test_interrupted_transition_is_repaired_by_next_one(store):
    manager = StatusTransitionManager(store, ORG_ID)
    subject_id = await create_subject(store)
    status_entities = await store.query_entities(ORG_ID, {"entity_type": "status"})

    # Two active edges left behind by transitions that crashed between writes
    for offset, status_entity in enumerate(status_entities[:2]):
        await store.create_relationship(
            ORG_ID,
            from_entity_id=subject_id,
            to_entity_id=status_entity.id,
            relationship_type="HAS_STATUS",
            smart_code="HERA.WORKFLOW.STATUS.ASSIGN.V1",
            effective_date=utc_now() - timedelta(minutes=10 - offset),
        )
    assert len(await active_edges(store, subject_id)) == 2

    # Readers still agree on the newest one
    newest = await manager.get_current_status(subject_id)
    assert newest.to_entity_id == status_entities[1].id

    await manager.set_status(subject_id, STATUS_CLOSED)
    edges = await active_edges(store, subject_id)
    assert len(edges) == 1
    assert await manager.get_current_status_code(subject_id) == STATUS_CLOSED


@pytest.mark.asyncio
async def test_subject_without_status(store):
    manager = StatusTransitionManager(store, ORG_ID)
    subject_id = await create_subject(store)
    assert await manager.get_current_status(subject_id) is None
    assert await manager.get_current_status_code(subject_id) is None
