"""Structured error codes and engine exceptions.

Usage:
    from dojo_console.backend.core.errors import api_error, E

    raise api_error(404, E.OPERATION_NOT_FOUND)
    raise api_error(400, E.VALIDATION_ERROR, "Reason is required for DELETE")

Engine code raises ``EngineError`` subclasses; each carries its ``code`` and
the HTTP status the API layer should answer with (see ``to_http_error``).
"""
from enum import Enum
from typing import Optional

from fastapi import HTTPException


class ErrorCode(str, Enum):
    """All error codes. Per-item failures in bulk results use the same values."""

    # ── Request validation ────────────────────────────────────
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TOO_MANY_TARGETS = "TOO_MANY_TARGETS"

    # ── Authorization ─────────────────────────────────────────
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ROLE_LEVEL_VIOLATION = "ROLE_LEVEL_VIOLATION"
    OWNER_ROLE_IMMUTABLE = "OWNER_ROLE_IMMUTABLE"
    SELF_ACTION_FORBIDDEN = "SELF_ACTION_FORBIDDEN"

    # ── Targets / downstream ──────────────────────────────────
    NOT_FOUND = "NOT_FOUND"
    DOWNSTREAM_ERROR = "DOWNSTREAM_ERROR"
    SYSTEM_UNAVAILABLE = "SYSTEM_UNAVAILABLE"
    CANCELLED = "CANCELLED"

    # ── Roles ─────────────────────────────────────────────────
    FETCH_ERROR = "FETCH_ERROR"
    ROLE_NOT_FOUND = "ROLE_NOT_FOUND"
    MISSING_METADATA = "MISSING_METADATA"

    # ── Operations ────────────────────────────────────────────
    OPERATION_NOT_FOUND = "OPERATION_NOT_FOUND"
    OPERATION_NOT_FINISHED = "OPERATION_NOT_FINISHED"
    OPERATION_ALREADY_STARTED = "OPERATION_ALREADY_STARTED"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # ── Generic ───────────────────────────────────────────────
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Shorthand alias
E = ErrorCode

# Default human-readable messages per code (English fallback)
_DEFAULT_MESSAGES: dict[str, str] = {
    E.VALIDATION_ERROR: "Invalid request",
    E.TOO_MANY_TARGETS: "Too many target users for one bulk operation",
    E.PERMISSION_DENIED: "Access denied",
    E.ROLE_LEVEL_VIOLATION: "Target role is not below your role",
    E.OWNER_ROLE_IMMUTABLE: "The owner role cannot be changed or assigned",
    E.SELF_ACTION_FORBIDDEN: "This operation cannot target your own account",
    E.NOT_FOUND: "User not found",
    E.DOWNSTREAM_ERROR: "User store call failed",
    E.SYSTEM_UNAVAILABLE: "User store unavailable",
    E.CANCELLED: "Operation cancelled",
    E.FETCH_ERROR: "Role hierarchy could not be loaded",
    E.ROLE_NOT_FOUND: "Role not found",
    E.MISSING_METADATA: "Metadata not available",
    E.OPERATION_NOT_FOUND: "Bulk operation not found",
    E.OPERATION_NOT_FINISHED: "Bulk operation still running",
    E.OPERATION_ALREADY_STARTED: "Bulk operation already started",
    E.INVALID_TRANSITION: "Invalid operation state transition",
    E.UNAUTHENTICATED: "Actor identity missing",
    E.INTERNAL_ERROR: "Internal error",
}


def default_message(code: ErrorCode) -> str:
    return _DEFAULT_MESSAGES.get(code, code.value)


# ── Engine exceptions ───────────────────────────────────────────

class EngineError(Exception):
    """Base class for all errors raised by the engine."""

    code: ErrorCode = E.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or default_message(self.code)
        super().__init__(self.detail)


class ValidationError(EngineError):
    code = E.VALIDATION_ERROR
    status_code = 400


class TooManyTargets(ValidationError):
    code = E.TOO_MANY_TARGETS


class AuthorizationError(EngineError):
    """Base for the four authorization failures."""

    code = E.PERMISSION_DENIED
    status_code = 403


class PermissionDenied(AuthorizationError):
    code = E.PERMISSION_DENIED


class RoleLevelViolation(AuthorizationError):
    code = E.ROLE_LEVEL_VIOLATION


class OwnerRoleImmutable(AuthorizationError):
    code = E.OWNER_ROLE_IMMUTABLE


class SelfActionForbidden(AuthorizationError):
    code = E.SELF_ACTION_FORBIDDEN


class NotFound(EngineError):
    code = E.NOT_FOUND
    status_code = 404


class RoleNotFound(NotFound):
    code = E.ROLE_NOT_FOUND


class MissingMetadata(NotFound):
    code = E.MISSING_METADATA


class DownstreamError(EngineError):
    """A user store or audit store call failed or timed out."""

    code = E.DOWNSTREAM_ERROR
    status_code = 502


class SystemUnavailable(DownstreamError):
    """The user store is judged unreachable; the batch must stop dispatching."""

    code = E.SYSTEM_UNAVAILABLE
    status_code = 503


class FetchError(EngineError):
    code = E.FETCH_ERROR
    status_code = 503


class RoleHierarchyNotLoaded(FetchError):
    pass


class OperationNotFound(EngineError):
    code = E.OPERATION_NOT_FOUND
    status_code = 404


class OperationNotFinished(EngineError):
    code = E.OPERATION_NOT_FINISHED
    status_code = 409


class OperationAlreadyStarted(EngineError):
    code = E.OPERATION_ALREADY_STARTED
    status_code = 409


class InvalidTransition(EngineError):
    code = E.INVALID_TRANSITION
    status_code = 409


# ── HTTP helpers ────────────────────────────────────────────────

def api_error(
    status_code: int,
    code: ErrorCode,
    detail: str | None = None,
) -> HTTPException:
    """Create an HTTPException with a structured error code.

    Args:
        status_code: HTTP status code (400, 404, 500, etc.)
        code: ErrorCode enum value
        detail: Human-readable message. If None, uses default for the code.

    Returns:
        HTTPException with JSON body {"detail": "...", "code": "ERROR_CODE"}
    """
    message = detail or default_message(code)
    return HTTPException(
        status_code=status_code,
        detail={"detail": message, "code": code.value},
    )


def to_http_error(exc: EngineError) -> HTTPException:
    """Translate an engine exception into the structured HTTPException."""
    return api_error(exc.status_code, exc.code, exc.detail)
