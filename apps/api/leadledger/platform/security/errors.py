from __future__ import annotations

from leadledger.errors import AccessDeniedError


class ScopeDeniedError(AccessDeniedError):
    """Raised when a record or operation falls outside the caller's scope."""

    def __init__(self, resource: str, action: str, message: str | None = None) -> None:
        self.resource = resource
        self.action = action
        super().__init__(message or f"access denied for {resource}.{action}")
