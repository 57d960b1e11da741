from motor.motor_asyncio import AsyncIOMotorDatabase
import logging

from finance_core.persistence import storage_errors

logger = logging.getLogger(__name__)

# Roles that hold every capability in their organization
SUPERUSER_ROLES = {"Admin", "Owner"}


class PermissionService:
    """
    Capability lookup for the finance engine.

    RULES:
    1. User must be active in the organization (user_roles entry)
    2. Admin/Owner roles hold every capability
    3. Otherwise the capability must be listed on the user's role
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    @storage_errors
    async def has_capability(self, user_id: str, organization_id: str, capability: str) -> bool:
        membership = await self.db.user_roles.find_one({
            "user_id": user_id,
            "organization_id": organization_id,
            "active_status": True
        })

        if not membership:
            logger.info(f"User {user_id} has no active role in organization {organization_id}")
            return False

        role_name = membership.get("role")
        if role_name in SUPERUSER_ROLES:
            return True

        role = await self.db.roles.find_one({
            "organization_id": organization_id,
            "name": role_name
        })
        allowed = bool(role) and capability in role.get("capabilities", [])

        if not allowed:
            logger.info(f"Capability '{capability}' denied for user {user_id} (role {role_name})")
        return allowed
