from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Role(StrEnum):
    ADMIN = "admin"
    CSR = "csr"


@dataclass(slots=True)
class ActorUser:
    """The authenticated caller for the remainder of a request."""

    user_id: str
    role: str
    name: str | None = None
    correlation_id: str | None = None

    def has_role(self, role: str) -> bool:
        return self.role == role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
