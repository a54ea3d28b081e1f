from collections.abc import Callable

from fastapi import Depends

from leadledger.core.auth import AuthUser, get_current_user
from leadledger.errors import AccessDeniedError


def require_roles(*roles: str) -> Callable[[AuthUser], AuthUser]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if user.role not in roles:
            raise AccessDeniedError(
                f"role '{user.role}' may not perform this operation",
                details={"required_roles": list(roles)},
            )
        return user

    return checker
