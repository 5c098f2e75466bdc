"""
Shared error handling for the Access Core.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for Access Core components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class UnauthenticatedError(AccessLayerException):
    """Missing or invalid actor context."""

    def __init__(self, message: str = "Actor is not authenticated", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAUTHENTICATED", message, details)


class PermissionDeniedError(AccessLayerException):
    """Evaluated and no permission matched."""

    def __init__(self, reason: str = "no matching permission", details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__("PERMISSION_DENIED", "Permission denied", {"reason": reason, **(details or {})})


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class StoreUnavailableError(AccessLayerException):
    """Backing key-value store timed out or failed."""

    def __init__(self, operation: str, message: str = "Key-value store unavailable", details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__("STORE_UNAVAILABLE", f"{operation}: {message}", details)


class PermissionSourceError(AccessLayerException):
    """Role/permission data-access provider failed."""

    def __init__(self, message: str = "Permission source error", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERMISSION_SOURCE_ERROR", message, details)


class LockConflictError(AccessLayerException):
    """Lock already held by another actor."""

    def __init__(self, record: Any, details: Optional[Dict[str, Any]] = None):
        self.record = record
        payload: Dict[str, Any] = {}
        if record is not None:
            payload = {
                "locked_by": record.locked_by,
                "expires_at": record.expires_at.isoformat(),
                "reason": record.reason,
            }
        payload.update(details or {})
        super().__init__("LOCK_CONFLICT", "Entity is locked", payload)


class NotLockOwnerError(AccessLayerException):
    """Release attempted by an actor that does not hold the lock."""

    def __init__(self, requested_by: str, locked_by: str, details: Optional[Dict[str, Any]] = None):
        self.requested_by = requested_by
        self.locked_by = locked_by
        super().__init__(
            "NOT_LOCK_OWNER",
            "not lock owner",
            {"requested_by": requested_by, "locked_by": locked_by, **(details or {})}
        )
