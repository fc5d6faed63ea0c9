"""Run scheduler tests."""

from datetime import timedelta

import pytest

from playbook_engine.domain.enums import RunStatus
from playbook_engine.engine.engine import WorkflowEngine
from playbook_engine.scheduler.run_scheduler import RunScheduler
from playbook_engine.services.run_service import RunService
from playbook_engine.utils.time import utc_now

from .conftest import MANAGER, OPERATOR, ORG_ID, OTHER_ORG_ID, actor, publish, seed_organization

WAITING = {
    "id": "WF-WAIT",
    "name": "Cool-off",
    "steps": [
        {"id": "cool_off", "name": "Cool off", "step_type": "wait", "wait_minutes": 60},
        {"id": "finish", "name": "Finish", "actions": [
            {"action_type": "set_variable", "variable": "finished", "value": True},
        ]},
    ],
}

APPROVAL = {
    "id": "WF-SLA",
    "name": "Approval with SLA",
    "steps": [
        {
            "id": "approve",
            "name": "Approve",
            "step_type": "user_action",
            "assignee_id": MANAGER,
            "timeout": {"duration_minutes": 30, "fallback_step_id": "escalate"},
            "next_step_id": "done",
        },
        {"id": "escalate", "name": "Escalate", "actions": [
            {"action_type": "set_variable", "variable": "escalated", "value": True},
        ]},
        {"id": "done", "name": "Done", "actions": [
            {"action_type": "set_variable", "variable": "done", "value": True},
        ]},
    ],
}


async def start(engine, definition):
    parsed = await publish(engine, definition)
    return await engine.start_run(parsed, actor(OPERATOR, engine.organization_id))


async def make_due(engine, instance, field):
    return await engine.repo.update_instance(instance, {field: utc_now() - timedelta(seconds=5)})


@pytest.mark.asyncio
async def test_nothing_due(store, engine, notifier):
    await start(engine, WAITING)
    assert await RunScheduler(store, notifier).tick() == 0


@pytest.mark.asyncio
async def test_tick_wakes_waiting_runs(store, engine, notifier):
    instance = await make_due(engine, await start(engine, WAITING), "wake_at")

    assert await RunScheduler(store, notifier).tick() == 1

    woken = await engine.repo.get_instance(instance.id)
    assert woken.status == RunStatus.COMPLETED
    assert woken.variables["finished"] is True


@pytest.mark.asyncio
async def test_tick_fires_timeouts_into_fallback(store, engine, notifier):
    instance = await make_due(engine, await start(engine, APPROVAL), "timeout_at")

    await RunScheduler(store, notifier).tick()

    escalated = await engine.repo.get_instance(instance.id)
    assert escalated.status == RunStatus.COMPLETED
    assert escalated.variables["escalated"] is True
    assert escalated.variables["done"] is True
    # Nothing left to process
    assert await RunScheduler(store, notifier).tick() == 0


@pytest.mark.asyncio
async def test_cancelled_runs_are_not_woken(store, engine, notifier):
    instance = await make_due(engine, await start(engine, WAITING), "wake_at")
    await RunService(store, ORG_ID, engine=engine).cancel_run(instance.id, actor(OPERATOR))

    assert await RunScheduler(store, notifier).tick() == 0
    assert (await engine.repo.get_instance(instance.id)).status == RunStatus.CANCELLED


@pytest.mark.asyncio
async def test_tick_covers_every_organization(store, engine, notifier):
    await seed_organization(store, OTHER_ORG_ID, with_users=False)
    other_engine = WorkflowEngine(store, OTHER_ORG_ID, notifier=notifier)
    ours = await make_due(engine, await start(engine, WAITING), "wake_at")
    theirs = await make_due(other_engine, await start(other_engine, WAITING), "wake_at")

    assert await RunScheduler(store, notifier).tick() == 2

    assert (await engine.repo.get_instance(ours.id)).status == RunStatus.COMPLETED
    assert (await other_engine.repo.get_instance(theirs.id)).status == RunStatus.COMPLETED
    assert await engine.repo.get_instance(theirs.id) is None


@pytest.mark.asyncio
async def test_start_and_stop(store, notifier):
    scheduler = RunScheduler(store, notifier)
    scheduler.start()
    try:
        assert scheduler.is_running
        scheduler.start()
        assert scheduler.scheduler.get_job("process_due_runs") is not None
    finally:
        scheduler.stop()
    assert not scheduler.is_running
