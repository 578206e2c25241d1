"""
Custom exceptions for the MusicService operator.

The hierarchy mirrors the error taxonomy of a reconcile pass:

- NotFoundError: benign, the caller creates the missing resource
- ConflictError: stale optimistic-concurrency token, resolved on the next pass
- ValidationError: terminal for the current generation, surfaces as phase Failed
- TransientError: I/O failure, retried through the work queue backoff
"""
from typing import Optional, Dict, Any

from fastapi import status


class OperatorException(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    reason: str = "ReconcileError"

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(OperatorException):
    """
    Raised when a resource does not exist in the state store.

    Used by the orchestrator as the signal to create from the descriptor.
    """

    reason = "NotFound"

    def __init__(self, kind: str, namespace: str, name: str, details: Optional[Dict[str, Any]] = None):
        message = f"{kind} '{namespace}/{name}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details or {"kind": kind, "namespace": namespace, "name": name},
        )


class ConflictError(OperatorException):
    """
    Raised when a write is rejected by optimistic concurrency.

    Used for stale resourceVersion tokens and create of an existing resource.
    """

    reason = "Conflict"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class ValidationError(OperatorException):
    """
    Raised when the desired state cannot be built from the spec.

    Used for malformed quantities, unsupported topology/engine combinations,
    and specs rejected by the API server.
    """

    reason = "InvalidSpec"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class TransientError(OperatorException):
    """
    Raised when the state store is temporarily unavailable.

    Used for timeouts, rate limiting and 5xx responses.
    """

    reason = "TransientError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class ReconcileStepError(OperatorException):
    """
    Raised when one step of a reconcile pass fails.

    Wraps the underlying error with the condition reason reported for the step
    (e.g. "StatefulSetFailed", "DBMasterFailed").
    """

    def __init__(self, reason: str, cause: Exception):
        self.reason = reason
        self.cause = cause
        super().__init__(
            message=str(cause),
            status_code=getattr(cause, "status_code", status.HTTP_500_INTERNAL_SERVER_ERROR),
            details={"step": reason, "error_type": type(cause).__name__},
        )


__all__ = [
    "OperatorException",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "TransientError",
    "ReconcileStepError",
]
