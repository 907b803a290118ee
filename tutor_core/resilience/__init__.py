"""Resilience patterns — circuit breaker guarding the remote inference call.

Rejects calls to a failing backend for a cooldown period after repeated
failures and reports every transition to the telemetry aggregator.
"""

from tutor_core.core.errors import CircuitOpenError, OperationError, OperationTimeoutError
from tutor_core.models.schemas import CircuitState
from tutor_core.resilience.circuit_breaker import CircuitBreaker

__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "OperationError",
    "OperationTimeoutError",
]
