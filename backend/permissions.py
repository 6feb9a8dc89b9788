from fastapi import Depends
import logging

from auth import get_current_user
from engine.approval_workflow import Role
from engine.errors import PermissionDeniedError

logger = logging.getLogger(__name__)

# Route-level role sets
FINANCE_WRITERS = (Role.ADMIN, Role.ACCOUNT_MANAGER)
APPROVERS = (Role.ADMIN, Role.ACCOUNT_MANAGER, Role.HOF)
ADMIN_ONLY = (Role.ADMIN,)


class PermissionChecker:
    """
    Role enforcement for the HTTP layer.

    RULES:
    1. User must carry a valid bearer token (auth.get_current_user)
    2. Role-based permissions apply per route
    3. Approval gate roles are enforced again inside the engine
    """

    async def check_roles(self, user: dict, *roles: str):
        if user.get("role") not in roles:
            logger.warning(
                f"[PERMISSIONS] {user.get('role')}:{user.get('user_id')} denied; requires one of {roles}"
            )
            raise PermissionDeniedError(
                f"This operation requires one of the roles: {', '.join(roles)}",
                {"role": user.get("role"), "allowed": list(roles)}
            )
        return True

    def require(self, *roles: str):
        """Dependency returning the current user once their role is allowed."""
        async def dependency(current_user: dict = Depends(get_current_user)):
            await self.check_roles(current_user, *roles)
            return current_user
        return dependency
