"""Permission resolution tests."""

import pytest

from playbook_engine.domain.errors import PermissionDeniedError
from playbook_engine.engine.permission_guard import PermissionGuard

from .conftest import ADMIN, MANAGER, OPERATOR, ORG_ID, OTHER_ORG_ID, VIEWER, seed_organization, seed_user


@pytest.mark.asyncio
async def test_admin_holds_every_permission(store):
    guard = PermissionGuard(store, ORG_ID)
    assert await guard.check_permission(ADMIN, "playbook_run:cancel")
    assert await guard.check_permission(ADMIN, "anything:at_all")


@pytest.mark.asyncio
async def test_role_permissions_are_resolved_through_has_role(store):
    guard = PermissionGuard(store, ORG_ID)
    security = await guard.resolve_security_context(MANAGER)
    assert "manager" in security.roles
    assert guard.has_permission(security, "playbook_run:manage")
    assert not guard.has_permission(security, "audit:read")


@pytest.mark.asyncio
async def test_unknown_user_has_no_permissions(store):
    guard = PermissionGuard(store, ORG_ID)
    security = await guard.resolve_security_context("USR-NOBODY")
    assert security.permissions == set()
    assert not guard.has_permission(security, "playbook:execute")


@pytest.mark.asyncio
async def test_permissions_do_not_cross_organizations(store):
    guard = PermissionGuard(store, OTHER_ORG_ID)
    assert not await guard.check_permission(ADMIN, "playbook:execute")


@pytest.mark.asyncio
async def test_second_organization_has_its_own_roles(store):
    await seed_organization(store, OTHER_ORG_ID, with_users=False)
    await seed_user(store, "USR-ELSEWHERE", roles=["manager"], organization_id=OTHER_ORG_ID)

    assert await PermissionGuard(store, OTHER_ORG_ID).check_permission("USR-ELSEWHERE", "playbook_run:manage")
    assert not await PermissionGuard(store, ORG_ID).check_permission("USR-ELSEWHERE", "playbook_run:manage")
    assert await PermissionGuard(store, ORG_ID).check_permission(MANAGER, "playbook_run:manage")


@pytest.mark.asyncio
async def test_resource_wildcard(store):
    await seed_user(store, "USR-WILD", permissions=["playbook_run:*"])
    guard = PermissionGuard(store, ORG_ID)
    assert await guard.check_permission("USR-WILD", "playbook_run:cancel")
    assert not await guard.check_permission("USR-WILD", "playbook:execute")


@pytest.mark.asyncio
async def test_owner_may_read_own_resource(store):
    guard = PermissionGuard(store, ORG_ID)
    assert await guard.check_permission(VIEWER, "playbook_run:read", {"owner_id": VIEWER})
    assert not await guard.check_permission(VIEWER, "playbook_run:read", {"owner_id": OPERATOR})
    assert not await guard.check_permission(VIEWER, "playbook_run:cancel", {"owner_id": VIEWER})


@pytest.mark.asyncio
async def test_department_scoped_permission(store):
    await seed_user(store, "USR-FIN", permissions=["playbook:execute@finance"], department="finance")
    guard = PermissionGuard(store, ORG_ID)
    assert await guard.check_permission("USR-FIN", "playbook:execute", {"department": "finance"})
    assert not await guard.check_permission("USR-FIN", "playbook:execute", {"department": "sales"})
    assert not await guard.check_permission("USR-FIN", "playbook:execute")


@pytest.mark.asyncio
async def test_enforce_raises_on_first_missing_permission(store):
    guard = PermissionGuard(store, ORG_ID)
    await guard.enforce_permissions(OPERATOR, ["playbook:execute"])
    with pytest.raises(PermissionDeniedError) as exc_info:
        await guard.enforce_permissions(OPERATOR, ["playbook:execute", "playbook_run:manage", "audit:read"])
    assert exc_info.value.http_status == 403
    assert "playbook_run:manage" in exc_info.value.message


@pytest.mark.asyncio
async def test_revoked_role_takes_effect_immediately(store):
    guard = PermissionGuard(store, ORG_ID)
    assert await guard.check_permission(OPERATOR, "playbook:execute")

    links = await store.query_relationships(ORG_ID, {"from_entity_id": OPERATOR, "relationship_type": "has_role"})
    await store.update_relationship(ORG_ID, links[0].id, {"is_active": False})

    assert not await guard.check_permission(OPERATOR, "playbook:execute")
