"""Structured errors for the tutor core.

Custom exception hierarchy shared by the resilience gate, the inference
client and the chat gateway, plus a structured error body for the HTTP
surface.
"""

from pydantic import BaseModel


class TutorCoreError(Exception):
    """Base exception for all tutor core errors."""


class CircuitOpenError(TutorCoreError):
    """Raised when the gate rejects a call without attempting it.

    Not counted as a failure against the breaker: the wrapped operation
    was never invoked.
    """

    def __init__(self, backend_name: str, retry_after: float) -> None:
        self.backend_name = backend_name
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Circuit open for '{backend_name}' — retry after {self.retry_after:.1f}s")


class OperationError(TutorCoreError):
    """Raised when the wrapped remote operation fails.

    The original exception, if any, is chained as ``__cause__``.
    """

    def __init__(self, backend_name: str, detail: str = "") -> None:
        self.backend_name = backend_name
        self.detail = detail
        msg = f"Operation failed: {backend_name}"
        if detail:
            msg += f" — {detail}"
        super().__init__(msg)


class OperationTimeoutError(OperationError):
    """Raised when the wrapped operation exceeds its caller-imposed timeout."""

    def __init__(self, backend_name: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(backend_name, f"timed out after {timeout_seconds}s")


class StructuredErrorResponse(BaseModel):
    """Structured error body.

    Returns ``{"error": str, "code": str, "request_id": str}`` — no stack traces.
    """

    error: str
    code: str
    request_id: str

    @classmethod
    def from_exception(cls, exc: Exception, request_id: str) -> "StructuredErrorResponse":
        """Create from an exception, mapping to machine-readable codes.

        Never leaks internal details for unhandled exceptions.
        """
        if isinstance(exc, CircuitOpenError):
            return cls(error=str(exc), code="CIRCUIT_OPEN", request_id=request_id)
        if isinstance(exc, OperationTimeoutError):
            return cls(error=str(exc), code="OPERATION_TIMEOUT", request_id=request_id)
        if isinstance(exc, OperationError):
            return cls(error=str(exc), code="OPERATION_FAILED", request_id=request_id)
        if isinstance(exc, TutorCoreError):
            return cls(error=str(exc), code="CORE_ERROR", request_id=request_id)
        # Unhandled — never expose internal details
        return cls(
            error="An internal error occurred",
            code="INTERNAL_ERROR",
            request_id=request_id,
        )
