"""
Operational errors surfaced to callers with a stable machine-readable code.

None of these represent a programming-fatal condition; the HTTP layer maps
each class to one status code and renders
``{"error": {"code", "message", "details"}}``.
"""

from __future__ import annotations

from typing import Any

# Stable error codes
AUDIT_LOG_NOT_FOUND = "AUDIT_LOG_NOT_FOUND"
INVALID_DATE_RANGE = "INVALID_DATE_RANGE"
VALIDATION_ERROR = "VALIDATION_ERROR"
ROLE_NOT_FOUND = "ROLE_NOT_FOUND"
ROLE_ALREADY_EXISTS = "ROLE_ALREADY_EXISTS"
INVALID_PERMISSION = "INVALID_PERMISSION"
PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
SYSTEM_ROLE_IMMUTABLE = "SYSTEM_ROLE_IMMUTABLE"
ROLE_IN_USE = "ROLE_IN_USE"
USER_NOT_FOUND = "USER_NOT_FOUND"
ASSIGNMENT_NOT_FOUND = "ASSIGNMENT_NOT_FOUND"
ASSIGNMENT_EXISTS = "ASSIGNMENT_EXISTS"
PERMISSION_DENIED = "PERMISSION_DENIED"
BRANCH_ACCESS_DENIED = "BRANCH_ACCESS_DENIED"
INVALID_BRANCH = "INVALID_BRANCH"
BRANCH_REQUIRED = "BRANCH_REQUIRED"


class AppError(Exception):
    status_code: int = 400
    default_code: str = "ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message, "details": self.details}}


class NotFoundError(AppError):
    """Entry absent, or present under another tenant/branch. Callers cannot tell which."""

    status_code = 404
    default_code = "NOT_FOUND"


class ValidationError(AppError):
    status_code = 400
    default_code = VALIDATION_ERROR


class PermissionDenied(AppError):
    status_code = 403
    default_code = PERMISSION_DENIED


class InvariantViolation(AppError):
    """Escalation attempt, system role mutation, or deleting a role in use."""

    status_code = 409
    default_code = "INVARIANT_VIOLATION"


class ConflictError(AppError):
    status_code = 409
    default_code = "CONFLICT"
