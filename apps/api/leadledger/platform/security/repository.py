from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from leadledger.platform.security.context import ActorUser
from leadledger.platform.security.scoping import apply_scope_filter, require_admin, validate_owner_access


class BaseRepository:
    resource = ""
    model: Any = None
    owner_attribute: str | None = None

    def owner_column(self) -> Any:
        if self.model is None or self.owner_attribute is None:
            raise RuntimeError(f"{type(self).__name__} does not declare an owner column")
        return getattr(self.model, self.owner_attribute)

    def apply_scope_query(self, query: Select[Any], actor: ActorUser) -> Select[Any]:
        if self.owner_attribute is None:
            return query
        return apply_scope_filter(query, self.owner_column(), actor)

    def validate_read_scope(self, owner_id: str | None, actor: ActorUser, *, action: str = "read") -> None:
        validate_owner_access(self.resource, owner_id, actor, action=action)

    def validate_write_scope(self, owner_id: str | None, actor: ActorUser, *, action: str = "write") -> None:
        validate_owner_access(self.resource, owner_id, actor, action=action)

    def require_admin(self, actor: ActorUser, *, action: str) -> None:
        require_admin(self.resource, actor, action=action)
