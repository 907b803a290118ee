"""Async circuit breaker guarding the remote inference call.

Implements the three-state resilience gate:

    CLOSED    →  (failure_threshold consecutive failures)  →  OPEN
    OPEN      →  (first call after recovery_timeout)       →  HALF_OPEN
    HALF_OPEN →  (probe succeeds)                          →  CLOSED
    HALF_OPEN →  (probe fails)                             →  OPEN

While OPEN, calls are rejected with ``CircuitOpenError`` without invoking
the wrapped operation.  Every admitted attempt is recorded in the
``TelemetryAggregator`` and every state change is reported to it before
control returns to the caller.  The gate never retries.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tutor_core.core.errors import CircuitOpenError, OperationError, OperationTimeoutError
from tutor_core.models.schemas import CircuitState, TransactionOutcome
from tutor_core.telemetry.aggregator import TelemetryAggregator

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """Async-safe circuit breaker for a single backend.

    Args:
        name:               Human-readable backend name (for logging/errors).
        telemetry:          Aggregator receiving outcomes and state changes.
        failure_threshold:  Consecutive failures before opening the circuit.
        recovery_timeout:   Seconds the circuit stays OPEN before probing.
        clock:              Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        telemetry: TelemetryAggregator | None = None,
        failure_threshold: int = 3,
        recovery_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.telemetry = telemetry or TelemetryAggregator()
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_until: float = 0.0
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0
        self.total_successes = 0

    # ── Public properties ────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def retry_after(self) -> float:
        """Seconds left in the current cooldown; 0 unless OPEN."""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._opened_until - self._clock())

    # ── Core call wrapper ────────────────────────────────────────────

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """Run *operation* through the gate.

        Args:
            operation: Zero-argument callable returning an awaitable.
            timeout:   Optional bound in seconds; exceeding it is a failure.

        Raises:
            CircuitOpenError: The call was rejected and *operation* never ran.
            OperationTimeoutError: *operation* exceeded *timeout*.
            OperationError: *operation* raised; the original is chained.
        """
        is_probe = await self._admit()
        start = time.perf_counter()
        try:
            if timeout is None:
                result = await operation()
            else:
                result = await asyncio.wait_for(operation(), timeout)
        except asyncio.CancelledError:
            await self._on_failure(start, "cancelled", is_probe)
            raise
        except OperationError as exc:
            await self._on_failure(start, str(exc), is_probe)
            raise
        except asyncio.TimeoutError as exc:
            if timeout is None:
                await self._on_failure(start, str(exc) or "timeout", is_probe)
                raise OperationError(self.name, str(exc) or "timeout") from exc
            await self._on_failure(start, f"timed out after {timeout}s", is_probe)
            raise OperationTimeoutError(self.name, timeout) from None
        except Exception as exc:
            detail = str(exc) or type(exc).__name__
            await self._on_failure(start, detail, is_probe)
            raise OperationError(self.name, detail) from exc

        await self._on_success(start, is_probe)
        return result

    async def reset(self) -> None:
        """Force-reset the circuit breaker to CLOSED state."""
        async with self._lock:
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot for health/metrics."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "retry_after": round(self.retry_after, 3),
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
            "total_successes": self.total_successes,
        }

    # ── Bookkeeping (under self._lock) ───────────────────────────────

    async def _admit(self) -> bool:
        """Admit or reject a call; return ``True`` if it is the HALF_OPEN probe."""
        async with self._lock:
            if self._state == CircuitState.OPEN:
                now = self._clock()
                if now <= self._opened_until:
                    self.total_rejections += 1
                    logger.debug("Circuit open for %s, rejecting call", self.name)
                    raise CircuitOpenError(self.name, self._opened_until - now)
                self._transition(CircuitState.HALF_OPEN)

            is_probe = False
            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    self.total_rejections += 1
                    raise CircuitOpenError(self.name, 0.0)
                self._probe_in_flight = True
                is_probe = True

            self.total_calls += 1
            return is_probe

    async def _on_success(self, start: float, is_probe: bool) -> None:
        latency_ms = (time.perf_counter() - start) * 1000
        async with self._lock:
            self.total_successes += 1
            self.telemetry.record_transaction(TransactionOutcome(latency_ms=latency_ms, success=True))
            if is_probe:
                self._probe_in_flight = False
                logger.info("Probe succeeded for %s, closing circuit", self.name)
                self._transition(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    async def _on_failure(self, start: float, error: str, is_probe: bool) -> None:
        latency_ms = (time.perf_counter() - start) * 1000
        async with self._lock:
            self.total_failures += 1
            self._failure_count += 1
            self.telemetry.record_transaction(
                TransactionOutcome(latency_ms=latency_ms, success=False, error=error)
            )
            if is_probe:
                self._probe_in_flight = False
                self._open(f"probe failed: {error}")
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._open(f"{self._failure_count} consecutive failures, last: {error}")

    def _open(self, reason: str) -> None:
        self._opened_until = self._clock() + self.recovery_timeout
        logger.warning(
            "Opening circuit for %s for %.1fs (%s)",
            self.name,
            self.recovery_timeout,
            reason,
        )
        self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState) -> None:
        self._state = state
        if state == CircuitState.CLOSED:
            self._failure_count = 0
        self.telemetry.set_circuit_state(state)
