"""
Pytest Configuration and Fixtures

Every test gets a fresh in-memory store seeded with users, roles and
status entities for one organization.
"""

from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from playbook_engine.config.settings import settings
from playbook_engine.domain.enums import EntityType, RelationshipType
from playbook_engine.domain.models import ActorContext, WorkflowDefinition
from playbook_engine.engine.engine import WorkflowEngine
from playbook_engine.main import create_app
from playbook_engine.repositories.inmemory_store import InMemoryStoreAdapter
from playbook_engine.utils.time import utc_now

ORG_ID = "ORG-TEST"
OTHER_ORG_ID = "ORG-OTHER"

STATUS_DRAFT = "HERA.CRM.STATUS.DRAFT.V1"
STATUS_ACTIVE = "HERA.CRM.STATUS.ACTIVE.V1"
STATUS_CLOSED = "HERA.CRM.STATUS.CLOSED.V1"

ADMIN = "USR-ADMIN"
OPERATOR = "USR-OPERATOR"
MANAGER = "USR-MANAGER"
AUDITOR = "USR-AUDITOR"
VIEWER = "USR-VIEWER"
OTHER_OPERATOR = "USR-OTHER"

ROLE_PERMISSIONS = {
    "operator": ["playbook:execute"],
    "manager": [
        "playbook:execute",
        "playbook_run:manage",
        "playbook_run:cancel",
        "playbook_run:view_logs",
    ],
}


class RecordingNotifier:
    """Notifier double that keeps every send"""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send(self, channel: str, recipient: str, template: str, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append({"channel": channel, "recipient": recipient, "template": template, "payload": payload})


def actor(user_id: str, organization_id: str = ORG_ID) -> ActorContext:
    return ActorContext(user_id=user_id, organization_id=organization_id, email=f"{user_id.lower()}@example.com")


def make_token(user_id: str, organization_id: str = ORG_ID, expires_in: int = 3600, **claims: Any) -> str:
    payload = {
        "sub": user_id,
        "org": organization_id,
        "exp": utc_now() + timedelta(seconds=expires_in),
        **claims,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def auth_headers(user_id: str, organization_id: str = ORG_ID, **extra: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, organization_id)}", **extra}


def role_id(role: str, organization_id: str = ORG_ID) -> str:
    """Entity ids are unique across organizations, so role ids carry the organization"""
    return f"ROLE-{role.upper()}-{organization_id}"


async def seed_user(
    store: InMemoryStoreAdapter,
    user_id: str,
    permissions: Iterable[str] = (),
    roles: Iterable[str] = (),
    department: Optional[str] = None,
    organization_id: str = ORG_ID,
) -> None:
    await store.create_entity(
        organization_id,
        entity_id=user_id,
        entity_type=EntityType.USER.value,
        entity_name=user_id,
        smart_code="HERA.SECURITY.USER.V1",
        metadata={"permissions": list(permissions), "department": department},
    )
    for role in roles:
        await store.create_relationship(
            organization_id,
            from_entity_id=user_id,
            to_entity_id=role_id(role, organization_id),
            relationship_type=RelationshipType.HAS_ROLE.value,
            smart_code="HERA.SECURITY.ROLE.ASSIGN.V1",
        )


async def seed_organization(
    store: InMemoryStoreAdapter, organization_id: str = ORG_ID, with_users: bool = True
) -> None:
    """
    Seed roles and status entities, plus the test principals

    User ids are global identities; pass with_users=False when seeding a
    second organization into the same store.
    """
    for role, permissions in ROLE_PERMISSIONS.items():
        await store.create_entity(
            organization_id,
            entity_id=role_id(role, organization_id),
            entity_type=EntityType.ROLE.value,
            entity_name=role.title(),
            entity_code=role,
            smart_code="HERA.SECURITY.ROLE.V1",
            metadata={"permissions": permissions},
        )
    for smart_code in (STATUS_DRAFT, STATUS_ACTIVE, STATUS_CLOSED):
        await store.create_entity(
            organization_id,
            entity_type=EntityType.STATUS.value,
            entity_name=smart_code.split(".")[3].title(),
            entity_code=smart_code,
            smart_code=smart_code,
        )
    if not with_users:
        return

    await seed_user(store, ADMIN, permissions=["admin"], organization_id=organization_id)
    await seed_user(store, OPERATOR, roles=["operator"], organization_id=organization_id)
    await seed_user(store, OTHER_OPERATOR, roles=["operator"], organization_id=organization_id)
    await seed_user(store, MANAGER, roles=["manager"], organization_id=organization_id)
    await seed_user(store, AUDITOR, permissions=["audit:read"], organization_id=organization_id)
    await seed_user(store, VIEWER, organization_id=organization_id)


async def create_subject(store: InMemoryStoreAdapter, name: str = "Acme Ltd", organization_id: str = ORG_ID) -> str:
    subject = await store.create_entity(
        organization_id,
        entity_type="client",
        entity_name=name,
        smart_code="HERA.CRM.CLIENT.V1",
    )
    return subject.id


async def link_payment(
    store: InMemoryStoreAdapter, subject_id: str, status: str, organization_id: str = ORG_ID
) -> str:
    payment = await store.create_transaction(
        organization_id,
        {
            "transaction_type": "payment",
            "smart_code": "HERA.FIN.PAYMENT.V1",
            "total_amount": 250.0,
            "transaction_status": status,
        },
    )
    await store.create_relationship(
        organization_id,
        from_entity_id=subject_id,
        to_entity_id=payment.id,
        relationship_type="CLIENT_LINKED_TO_PAYMENT",
        smart_code="HERA.FIN.PAYMENT.LINK.V1",
    )
    return payment.id


def two_step_definition(definition_id: str = "WF-ONBOARD", **overrides: Any) -> Dict[str, Any]:
    """Create a client entity, then mark it active"""
    definition = {
        "id": definition_id,
        "name": "Onboard client",
        "variables": [{"name": "client_name", "required": True}],
        "steps": [
            {
                "id": "create_client",
                "name": "Create client",
                "actions": [{
                    "action_type": "create_entity",
                    "entity_type": "client",
                    "entity_name": "${client_name}",
                    "smart_code": "HERA.CRM.CLIENT.V1",
                    "output_variable": "client",
                }],
            },
            {
                "id": "activate",
                "name": "Activate client",
                "actions": [{
                    "action_type": "set_status",
                    "subject_entity_id": "${client.id}",
                    "status_smart_code": STATUS_ACTIVE,
                }],
            },
        ],
    }
    definition.update(overrides)
    return definition


async def publish(engine: WorkflowEngine, definition: Dict[str, Any]) -> WorkflowDefinition:
    parsed = WorkflowDefinition.model_validate(definition)
    await engine.publish_definition(parsed)
    return parsed


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def store() -> InMemoryStoreAdapter:
    adapter = InMemoryStoreAdapter()
    await seed_organization(adapter)
    return adapter


@pytest.fixture
def engine(store: InMemoryStoreAdapter, notifier: RecordingNotifier) -> WorkflowEngine:
    return WorkflowEngine(store, ORG_ID, notifier=notifier)


@pytest_asyncio.fixture
async def client(store: InMemoryStoreAdapter):
    app = create_app(store=store, start_scheduler=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
