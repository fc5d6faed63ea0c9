"""HTTP surface tests (ASGI transport, in-memory store)."""

import pytest
import pytest_asyncio

from .conftest import (
    AUDITOR, MANAGER, OPERATOR, OTHER_ORG_ID, OTHER_OPERATOR, VIEWER, auth_headers, make_token, publish,
    two_step_definition
)

RUNS = "/api/v1/runs"

APPROVAL = {
    "id": "WF-APPROVAL",
    "name": "Approval",
    "steps": [
        {"id": "approve", "name": "Approve", "step_type": "user_action", "assignee_id": MANAGER},
        {"id": "record", "name": "Record", "actions": [
            {"action_type": "set_variable", "variable": "recorded", "value": True},
        ]},
    ],
}

FAILING = {
    "id": "WF-FAILING",
    "name": "Always blocked",
    "steps": [
        {"id": "check", "name": "Check", "guardrails": [
            {"guardrail_type": "variable_required", "variables": ["contract_id"]},
        ]},
    ],
}


@pytest_asyncio.fixture
async def published(engine):
    await publish(engine, two_step_definition())
    await publish(engine, APPROVAL)
    await publish(engine, FAILING)


async def start_run(client, definition_id="WF-ONBOARD", user=OPERATOR, **headers):
    body = {"definition_id": definition_id}
    if definition_id == "WF-ONBOARD":
        body["variables"] = {"client_name": "Acme"}
    response = await client.post(RUNS, json=body, headers=auth_headers(user, **headers))
    assert response.status_code == 201, response.text
    return response.json()


def error_code(response):
    body = response.json()
    return body.get("detail", body)["error"]["code"]


# ============================================================================
# Health / auth
# ============================================================================

@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health", headers={"X-Correlation-Id": "corr-123"})

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["store"]["type"] == "in_memory"
    assert response.headers["X-Correlation-Id"] == "corr-123"


@pytest.mark.asyncio
async def test_correlation_id_is_generated(client):
    response = await client.get("/health")
    assert response.headers["X-Correlation-Id"]


@pytest.mark.asyncio
async def test_missing_token_is_unauthorized(client, published):
    response = await client.post(RUNS, json={"definition_id": "WF-ONBOARD"})
    assert response.status_code == 401
    assert error_code(response) == "AUTHENTICATION_ERROR"


@pytest.mark.asyncio
async def test_expired_token_is_unauthorized(client, published):
    token = make_token(OPERATOR, expires_in=-60)
    response = await client.get(f"{RUNS}/RUN-X", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert "expired" in response.json()["detail"]["error"]["message"]


# ============================================================================
# Start / idempotency
# ============================================================================

@pytest.mark.asyncio
async def test_start_run(client, published):
    run = await start_run(client)
    assert run["status"] == "completed"
    assert run["definition_id"] == "WF-ONBOARD"


@pytest.mark.asyncio
async def test_idempotent_start_replays_the_first_response(client, published):
    first = await client.post(
        RUNS,
        json={"definition_id": "WF-ONBOARD", "variables": {"client_name": "Acme"}},
        headers=auth_headers(OPERATOR, **{"Idempotency-Key": "order-42"}),
    )
    second = await client.post(
        RUNS,
        json={"definition_id": "WF-ONBOARD", "variables": {"client_name": "Acme"}},
        headers=auth_headers(OPERATOR, **{"Idempotency-Key": "order-42"}),
    )
    reused = await client.post(
        RUNS,
        json={"definition_id": "WF-ONBOARD", "variables": {"client_name": "Globex"}},
        headers=auth_headers(OPERATOR, **{"Idempotency-Key": "order-42"}),
    )

    assert first.status_code == 201
    assert "Idempotent-Replayed" not in first.headers
    assert second.status_code == 201
    assert second.json()["id"] == first.json()["id"]
    assert second.headers["Idempotent-Replayed"] == "true"
    assert reused.status_code == 409
    assert error_code(reused) == "IDEMPOTENCY_KEY_REUSED"


@pytest.mark.asyncio
async def test_start_validation_and_lookup_errors(client, published):
    missing = await client.post(RUNS, json={"variables": {}}, headers=auth_headers(OPERATOR))
    unknown = await client.post(RUNS, json={"definition_id": "WF-NOPE"}, headers=auth_headers(OPERATOR))
    incomplete = await client.post(RUNS, json={"definition_id": "WF-ONBOARD"}, headers=auth_headers(OPERATOR))
    denied = await client.post(RUNS, json={"definition_id": "WF-APPROVAL"}, headers=auth_headers(VIEWER))

    assert missing.status_code == 400
    assert missing.json()["error"]["code"] == "VALIDATION_ERROR"
    assert unknown.status_code == 404
    assert error_code(unknown) == "WORKFLOW_NOT_FOUND"
    assert incomplete.status_code == 400
    assert error_code(incomplete) == "VALIDATION_ERROR"
    assert denied.status_code == 403
    assert error_code(denied) == "PERMISSION_DENIED"


# ============================================================================
# Detail
# ============================================================================

@pytest.mark.asyncio
async def test_get_run(client, published):
    run = await start_run(client)

    response = await client.get(
        f"{RUNS}/{run['id']}",
        params={"include_metrics": "true", "include_logs": "true"},
        headers=auth_headers(MANAGER),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["run"]["id"] == run["id"]
    assert body["progress"]["completed_steps"] == 2
    assert body["metrics"]["total_executions"] == 2
    assert body["logs"][-1]["message"] == "Run completed"


@pytest.mark.asyncio
async def test_get_run_errors(client, published):
    run = await start_run(client)

    assert (await client.get(f"{RUNS}/RUN-MISSING", headers=auth_headers(OPERATOR))).status_code == 404
    assert (await client.get(f"{RUNS}/{run['id']}", headers=auth_headers(VIEWER))).status_code == 403
    other_org = await client.get(f"{RUNS}/{run['id']}", headers=auth_headers(OPERATOR, OTHER_ORG_ID))
    assert other_org.status_code == 404
    assert error_code(other_org) == "RUN_NOT_FOUND"
    too_many = await client.get(f"{RUNS}/{run['id']}", params={"step_limit": 0}, headers=auth_headers(OPERATOR))
    assert too_many.status_code == 400


# ============================================================================
# Control
# ============================================================================

@pytest.mark.asyncio
async def test_pause_and_invalid_action(client, published):
    run = await start_run(client, "WF-APPROVAL")
    url = f"{RUNS}/{run['id']}"

    paused = await client.put(url, json={"action": "pause"}, headers=auth_headers(MANAGER))
    invalid = await client.put(url, json={"action": "explode"}, headers=auth_headers(MANAGER))
    not_allowed = await client.put(url, json={"action": "resume"}, headers=auth_headers(OPERATOR))

    assert paused.status_code == 200
    assert paused.json()["status"] == "paused"
    assert invalid.status_code == 400
    assert error_code(invalid) == "INVALID_ACTION"
    assert not_allowed.status_code == 403


@pytest.mark.asyncio
async def test_cancel(client, published):
    run = await start_run(client, "WF-APPROVAL")
    url = f"{RUNS}/{run['id']}"

    forbidden = await client.delete(url, headers=auth_headers(OTHER_OPERATOR))
    cancelled = await client.request("DELETE", url, json={"reason": "customer withdrew"}, headers=auth_headers(OPERATOR))
    again = await client.delete(url, headers=auth_headers(OPERATOR))

    assert forbidden.status_code == 403
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert again.status_code == 400
    assert error_code(again) == "ALREADY_CANCELLED"


@pytest.mark.asyncio
async def test_complete_step(client, published):
    run = await start_run(client, "WF-APPROVAL")
    url = f"{RUNS}/{run['id']}/steps/approve/complete"

    by_operator = await client.post(url, json={"outputs": {"approved": True}}, headers=auth_headers(OPERATOR))
    by_assignee = await client.post(url, json={"outputs": {"approved": True}}, headers=auth_headers(MANAGER))
    late = await client.post(url, json={"outputs": {}}, headers=auth_headers(MANAGER))

    assert by_operator.status_code == 403
    assert by_assignee.status_code == 200
    assert by_assignee.json()["status"] == "completed"
    assert by_assignee.json()["variables"]["recorded"] is True
    assert late.status_code == 400
    assert error_code(late) == "INVALID_STATUS"


@pytest.mark.asyncio
async def test_retry(client, published):
    failed = await start_run(client, "WF-FAILING")
    completed = await start_run(client)

    retried = await client.post(f"{RUNS}/{failed['id']}/retry", headers=auth_headers(OPERATOR))
    rejected = await client.post(f"{RUNS}/{completed['id']}/retry", headers=auth_headers(OPERATOR))

    assert failed["status"] == "failed"
    assert retried.status_code == 201
    assert retried.json()["retry_of"] == failed["id"]
    assert rejected.status_code == 400
    assert error_code(rejected) == "INVALID_STATUS"


# ============================================================================
# Audit
# ============================================================================

@pytest.mark.asyncio
async def test_audit_listing(client, published):
    run = await start_run(client)

    listed = await client.get("/api/v1/audit", params={"action": "run_started"}, headers=auth_headers(AUDITOR))
    forbidden = await client.get("/api/v1/audit", headers=auth_headers(OPERATOR))

    assert listed.status_code == 200
    assert listed.json()["count"] == 1
    assert listed.json()["items"][0]["resource_id"] == run["id"]
    assert forbidden.status_code == 403
