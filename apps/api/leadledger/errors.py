from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base class for failures surfaced to callers with a stable code."""

    code = "CRM_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(CRMError):
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(CRMError):
    code = "NOT_FOUND"
    status_code = 404


class AccessDeniedError(CRMError):
    code = "ACCESS_DENIED"
    status_code = 403


class ConflictError(CRMError):
    code = "CONFLICT"
    status_code = 409


class ParseError(CRMError):
    code = "PARSE_ERROR"
    status_code = 422


class StorageError(CRMError):
    """Persistence failure. The message never carries driver detail."""

    code = "STORAGE_ERROR"
    status_code = 500

    def __init__(self, message: str = "storage operation failed", *, details: Any = None) -> None:
        super().__init__(message, details=details)


class UnauthenticatedError(CRMError):
    code = "UNAUTHENTICATED"
    status_code = 401
