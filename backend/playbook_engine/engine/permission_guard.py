"""Permission Guard - Authorization enforcement for run operations"""
from typing import Any, Dict, List, Optional

from ..domain.models import SecurityContext
from ..domain.enums import EntityType, RelationshipType, Permission
from ..domain.errors import PermissionDeniedError
from ..repositories.store import StoreAdapter
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

WILDCARD_ACTION = "*"
DEPARTMENT_SEPARATOR = "@"


class PermissionGuard:
    """
    Permission enforcement backed by user/role entities

    Resolution order:
    - Global `admin` grants everything
    - Direct permissions on the user entity (metadata.permissions)
    - Permissions of role entities linked through active has_role edges
    - `resource:*` wildcard grants any action on the resource
    - Contextual: `<resource>:read` on a resource the caller owns
    - Contextual: `perm@department` grants `perm` inside that department

    The security context is derived fresh on every call and never cached.
    """

    def __init__(self, store: StoreAdapter, organization_id: str):
        self.store = store
        self.organization_id = organization_id

    async def resolve_security_context(self, user_id: str) -> SecurityContext:
        """Build effective permissions for user; unknown users get an empty set"""
        context = SecurityContext(user_id=user_id, organization_id=self.organization_id)

        user = await self.store.get_entity(self.organization_id, user_id)
        if user is None or user.entity_type != EntityType.USER.value:
            logger.debug(f"Unknown user {user_id}; empty permission set", extra={"user_id": user_id})
            return context

        context.permissions.update(user.metadata.get("permissions", []))
        context.department = user.metadata.get("department")

        now = utc_now()
        role_links = await self.store.query_relationships(
            self.organization_id,
            {
                "from_entity_id": user_id,
                "relationship_type": RelationshipType.HAS_ROLE.value,
                "is_active": True,
            },
        )
        for link in role_links:
            if not link.is_current(now):
                continue
            role = await self.store.get_entity(self.organization_id, link.to_entity_id)
            if role is None or role.entity_type != EntityType.ROLE.value:
                continue
            context.roles.add(role.entity_code or role.entity_name)
            context.permissions.update(role.metadata.get("permissions", []))

        return context

    async def check_permission(
        self,
        user_id: str,
        permission: str,
        context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Check a single permission"""
        security = await self.resolve_security_context(user_id)
        return self.has_permission(security, permission, context)

    async def enforce_permissions(
        self,
        user_id: str,
        permissions: List[str],
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Require every permission, failing on the first missing one

        Raises:
            PermissionDeniedError: carrying the missing permission
        """
        security = await self.resolve_security_context(user_id)
        for permission in permissions:
            if not self.has_permission(security, permission, context):
                logger.info(
                    f"Permission denied: {permission}",
                    extra={"user_id": user_id, "organization_id": self.organization_id}
                )
                raise PermissionDeniedError(permission)

    def has_permission(
        self,
        security: SecurityContext,
        permission: str,
        context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Evaluate a permission against an already-resolved security context"""
        context = context or {}
        held = security.permissions

        if Permission.ADMIN.value in held:
            return True
        if permission in held:
            return True

        resource, _, action = permission.partition(":")
        if action and f"{resource}:{WILDCARD_ACTION}" in held:
            return True

        # Ownership grants read on the owned resource
        if action == "read" and context.get("owner_id") and context.get("owner_id") == security.user_id:
            return True

        department = context.get("department")
        if department:
            for scoped in held:
                base, separator, scope = scoped.partition(DEPARTMENT_SEPARATOR)
                if not separator or scope != department:
                    continue
                if base == permission or (action and base == f"{resource}:{WILDCARD_ACTION}"):
                    return True

        return False
