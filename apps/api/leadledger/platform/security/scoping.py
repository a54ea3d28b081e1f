from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import true
from sqlalchemy.sql import ColumnElement, Select

from leadledger import audit
from leadledger.metrics import observe_scope_denied
from leadledger.platform.security.context import ActorUser
from leadledger.platform.security.errors import ScopeDeniedError


@dataclass(frozen=True, slots=True)
class ScopePredicate:
    """Ownership restriction for a caller. ``owner_id=None`` means unrestricted."""

    owner_id: str | None = None

    @property
    def unrestricted(self) -> bool:
        return self.owner_id is None

    def allows(self, owner_id: str | None) -> bool:
        return self.unrestricted or owner_id == self.owner_id

    def as_clause(self, owner_column: Any) -> ColumnElement[bool]:
        if self.unrestricted:
            return true()
        return owner_column == self.owner_id


def is_admin_bypass(actor: ActorUser) -> bool:
    return actor.is_admin


def scope_for(actor: ActorUser) -> ScopePredicate:
    if is_admin_bypass(actor):
        return ScopePredicate()
    return ScopePredicate(owner_id=actor.user_id)


def apply_scope_filter(query: Select[Any], owner_column: Any, actor: ActorUser) -> Select[Any]:
    """Restrict a query to the rows the caller may see.

    Every list query over owned records goes through here, so a caller-supplied
    filter can only narrow the result further.
    """

    return query.where(scope_for(actor).as_clause(owner_column))


def validate_owner_access(
    resource: str,
    owner_id: str | None,
    actor: ActorUser,
    *,
    action: str = "read",
) -> None:
    if scope_for(actor).allows(owner_id):
        return
    _emit_scope_denied(resource=resource, action=action, target=owner_id, actor=actor)
    raise ScopeDeniedError(resource, action, f"{resource} is outside the caller's scope")


def require_admin(resource: str, actor: ActorUser, *, action: str) -> None:
    if is_admin_bypass(actor):
        return
    _emit_scope_denied(resource=resource, action=action, target=None, actor=actor)
    raise ScopeDeniedError(resource, action, f"admin role required for {resource}.{action}")


def _emit_scope_denied(
    *,
    resource: str,
    action: str,
    target: str | None,
    actor: ActorUser,
) -> None:
    observe_scope_denied(resource=resource, operation=action)
    audit.record(
        actor_user_id=actor.user_id,
        entity_type="security.scope",
        entity_id="scope",
        action="scope.denied",
        before=None,
        after={
            "resource": resource,
            "action": action,
            "target_owner_id": target,
            "role": actor.role,
            "user_id": actor.user_id,
        },
        correlation_id=actor.correlation_id,
    )
