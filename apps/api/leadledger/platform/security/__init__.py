from leadledger.platform.security.context import ActorUser, Role
from leadledger.platform.security.errors import ScopeDeniedError
from leadledger.platform.security.repository import BaseRepository
from leadledger.platform.security.scoping import (
    ScopePredicate,
    apply_scope_filter,
    is_admin_bypass,
    require_admin,
    scope_for,
    validate_owner_access,
)

__all__ = [
    "ActorUser",
    "Role",
    "ScopeDeniedError",
    "BaseRepository",
    "ScopePredicate",
    "apply_scope_filter",
    "is_admin_bypass",
    "require_admin",
    "scope_for",
    "validate_owner_access",
]
