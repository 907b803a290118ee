"""Rolling telemetry aggregator.

Keeps request counters, a bounded FIFO window of recent latencies and
the circuit state reported by the resilience gate, and derives a system
health status from them after every mutation:

    circuit OPEN                                   →  DOWN
    error rate > 20%  or  average latency > 3000ms →  DEGRADED
    otherwise                                      →  HEALTHY

Writers take a short lock and publish a fresh immutable
``TelemetrySnapshot``; readers get the last published snapshot without
waiting on writers.
"""

from __future__ import annotations

import logging
import threading
from collections import deque

from tutor_core.models.schemas import (
    CircuitState,
    SystemStatus,
    TelemetrySnapshot,
    TransactionOutcome,
)

logger = logging.getLogger(__name__)


def derive_status(
    circuit_state: CircuitState,
    requests_total: int,
    requests_failed: int,
    average_latency_ms: float,
    *,
    error_rate_threshold: float = 0.20,
    latency_threshold_ms: float = 3000.0,
) -> SystemStatus:
    """Return the health status; an OPEN circuit always wins."""
    if circuit_state == CircuitState.OPEN:
        return SystemStatus.DOWN
    error_rate = requests_failed / max(requests_total, 1)
    if error_rate > error_rate_threshold or average_latency_ms > latency_threshold_ms:
        return SystemStatus.DEGRADED
    return SystemStatus.HEALTHY


class TelemetryAggregator:
    """Process-lifetime telemetry store.

    Args:
        window_size:           Number of latency samples kept for the average.
        error_rate_threshold:  Error rate above which the system is DEGRADED.
        latency_threshold_ms:  Average latency above which the system is DEGRADED.
    """

    def __init__(
        self,
        window_size: int = 20,
        error_rate_threshold: float = 0.20,
        latency_threshold_ms: float = 3000.0,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.window_size = window_size
        self.error_rate_threshold = error_rate_threshold
        self.latency_threshold_ms = latency_threshold_ms

        self._lock = threading.Lock()
        self._requests_total = 0
        self._requests_failed = 0
        self._latencies: deque[float] = deque(maxlen=window_size)
        self._circuit_state = CircuitState.CLOSED
        self._last_error: str | None = None
        self._snapshot = TelemetrySnapshot()

    def record_transaction(self, outcome: TransactionOutcome) -> TelemetrySnapshot:
        """Fold one completed attempt into the rolling statistics."""
        with self._lock:
            self._requests_total += 1
            if not outcome.success:
                self._requests_failed += 1
                self._last_error = outcome.error
            self._latencies.append(outcome.latency_ms)
            return self._publish()

    def set_circuit_state(self, state: CircuitState) -> TelemetrySnapshot:
        """Overwrite the circuit state; only the resilience gate calls this."""
        with self._lock:
            self._circuit_state = state
            return self._publish()

    def snapshot(self) -> TelemetrySnapshot:
        """Return the last published state. Never blocks on writers."""
        return self._snapshot

    def _publish(self) -> TelemetrySnapshot:
        # Caller holds self._lock.
        latencies = tuple(self._latencies)
        average = sum(latencies) / len(latencies) if latencies else 0.0
        status = derive_status(
            self._circuit_state,
            self._requests_total,
            self._requests_failed,
            average,
            error_rate_threshold=self.error_rate_threshold,
            latency_threshold_ms=self.latency_threshold_ms,
        )
        previous = self._snapshot.status
        self._snapshot = TelemetrySnapshot(
            requests_total=self._requests_total,
            requests_failed=self._requests_failed,
            recent_latencies=latencies,
            average_latency_ms=average,
            circuit_state=self._circuit_state,
            status=status,
            last_error=self._last_error,
        )
        if status != previous:
            logger.info("System status %s -> %s", previous.value, status.value)
        return self._snapshot
