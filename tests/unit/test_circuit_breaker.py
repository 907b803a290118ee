"""Tests for the resilience gate (circuit breaker).

Covers:
- CircuitBreaker state transitions (CLOSED → OPEN → HALF_OPEN → CLOSED)
- Fail-fast rejection while OPEN without invoking the operation
- Single HALF_OPEN probe, cooldown reset on probe failure
- Timeout and cancellation recorded as failures
- Telemetry reporting of outcomes and state changes
- CircuitOpenError in StructuredErrorResponse
"""

from __future__ import annotations

import asyncio

import pytest

from tutor_core.core.errors import (
    CircuitOpenError,
    OperationError,
    OperationTimeoutError,
    StructuredErrorResponse,
)
from tutor_core.models.schemas import CircuitState, SystemStatus
from tutor_core.resilience import CircuitBreaker
from tutor_core.telemetry.aggregator import TelemetryAggregator


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _ok():
    return "ok"


async def _boom():
    raise RuntimeError("backend down")


async def _trip(cb: CircuitBreaker, times: int = 3) -> None:
    for _ in range(times):
        with pytest.raises(OperationError):
            await cb.execute(_boom)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def telemetry() -> TelemetryAggregator:
    return TelemetryAggregator()


@pytest.fixture
def cb(clock: FakeClock, telemetry: TelemetryAggregator) -> CircuitBreaker:
    return CircuitBreaker("tutor-backend", telemetry=telemetry, clock=clock)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# CircuitBreaker State Machine Tests
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCircuitBreakerStates:
    """Test the three-state circuit breaker transitions."""

    async def test_initial_state_is_closed(self, cb: CircuitBreaker):
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert cb.failure_threshold == 3
        assert cb.recovery_timeout == 10.0

    async def test_success_returns_result(self, cb: CircuitBreaker):
        assert await cb.execute(_ok) == "ok"
        assert cb.state == CircuitState.CLOSED

    async def test_stays_closed_below_threshold(self, cb: CircuitBreaker):
        await _trip(cb, times=2)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 2

    async def test_opens_at_threshold(self, cb: CircuitBreaker):
        await _trip(cb)
        assert cb.state == CircuitState.OPEN
        assert cb.failure_count == 3

    async def test_success_resets_failure_count(self, cb: CircuitBreaker):
        await _trip(cb, times=2)
        await cb.execute(_ok)
        assert cb.failure_count == 0
        await _trip(cb, times=2)
        assert cb.state == CircuitState.CLOSED

    async def test_open_rejects_without_invoking_operation(self, cb: CircuitBreaker):
        await _trip(cb)
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            return "ok"

        for _ in range(5):
            with pytest.raises(CircuitOpenError, match="Circuit open for 'tutor-backend'"):
                await cb.execute(op)
        assert calls == 0
        assert cb.total_rejections == 5

    async def test_rejection_carries_remaining_cooldown(self, cb: CircuitBreaker, clock: FakeClock):
        await _trip(cb)
        clock.advance(4.0)
        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.execute(_ok)
        assert exc_info.value.retry_after == pytest.approx(6.0)
        assert cb.retry_after == pytest.approx(6.0)

    async def test_still_open_exactly_at_cooldown_boundary(self, cb: CircuitBreaker, clock: FakeClock):
        await _trip(cb)
        clock.advance(10.0)
        with pytest.raises(CircuitOpenError):
            await cb.execute(_ok)
        assert cb.state == CircuitState.OPEN

    async def test_after_cooldown_probe_invoked_exactly_once(self, cb: CircuitBreaker, clock: FakeClock):
        await _trip(cb)
        clock.advance(10.01)
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            assert cb.state == CircuitState.HALF_OPEN
            return "ok"

        assert await cb.execute(op) == "ok"
        assert calls == 1

    async def test_half_open_probe_success_closes(self, cb: CircuitBreaker, clock: FakeClock):
        await _trip(cb)
        clock.advance(11.0)
        await cb.execute(_ok)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    async def test_half_open_probe_failure_reopens_with_fresh_cooldown(
        self, cb: CircuitBreaker, clock: FakeClock
    ):
        await _trip(cb)
        clock.advance(11.0)
        with pytest.raises(OperationError):
            await cb.execute(_boom)
        assert cb.state == CircuitState.OPEN

        # The cooldown restarted at the probe failure, not the original opening.
        clock.advance(9.5)
        with pytest.raises(CircuitOpenError):
            await cb.execute(_ok)
        clock.advance(1.0)
        assert await cb.execute(_ok) == "ok"
        assert cb.state == CircuitState.CLOSED

    async def test_half_open_limits_concurrent_probes(self, cb: CircuitBreaker, clock: FakeClock):
        await _trip(cb)
        clock.advance(11.0)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_probe():
            started.set()
            await release.wait()
            return "probe"

        probe = asyncio.create_task(cb.execute(slow_probe))
        await started.wait()
        with pytest.raises(CircuitOpenError):
            await cb.execute(_ok)  # Second probe blocked
        release.set()
        assert await probe == "probe"
        assert cb.state == CircuitState.CLOSED

    async def test_real_clock_recovery(self):
        cb = CircuitBreaker("test", failure_threshold=1, recovery_timeout=0.01)
        with pytest.raises(OperationError):
            await cb.execute(_boom)
        assert cb.state == CircuitState.OPEN
        await asyncio.sleep(0.02)
        assert await cb.execute(_ok) == "ok"
        assert cb.state == CircuitState.CLOSED

    async def test_force_reset(self, cb: CircuitBreaker, telemetry: TelemetryAggregator):
        await _trip(cb)
        await cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert telemetry.snapshot().circuit_state == CircuitState.CLOSED


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Failure kinds
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFailureKinds:
    """Timeouts, cancellations and typed errors all count as failures."""

    async def test_generic_exception_wrapped_and_chained(self, cb: CircuitBreaker):
        with pytest.raises(OperationError, match="backend down") as exc_info:
            await cb.execute(_boom)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.backend_name == "tutor-backend"

    async def test_operation_error_passes_through(self, cb: CircuitBreaker):
        original = OperationError("inference-backend", "HTTP 503")

        async def op():
            raise original

        with pytest.raises(OperationError) as exc_info:
            await cb.execute(op)
        assert exc_info.value is original
        assert cb.failure_count == 1

    async def test_timeout_is_failure(self, cb: CircuitBreaker, telemetry: TelemetryAggregator):
        async def slow():
            await asyncio.sleep(1.0)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await cb.execute(slow, timeout=0.01)
        assert exc_info.value.timeout_seconds == 0.01
        assert cb.failure_count == 1
        snap = telemetry.snapshot()
        assert snap.requests_failed == 1
        assert "timed out" in snap.last_error

    async def test_timeouts_trip_the_circuit(self, cb: CircuitBreaker):
        async def slow():
            await asyncio.sleep(1.0)

        for _ in range(3):
            with pytest.raises(OperationTimeoutError):
                await cb.execute(slow, timeout=0.01)
        assert cb.state == CircuitState.OPEN

    async def test_cancellation_recorded_as_failure(
        self, cb: CircuitBreaker, telemetry: TelemetryAggregator
    ):
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(cb.execute(hang))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert cb.failure_count == 1
        snap = telemetry.snapshot()
        assert snap.requests_total == 1
        assert snap.requests_failed == 1
        assert snap.last_error == "cancelled"

    async def test_cancelled_probe_reopens(self, cb: CircuitBreaker, clock: FakeClock):
        await _trip(cb)
        clock.advance(11.0)
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(cb.execute(hang))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert cb.state == CircuitState.OPEN


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Telemetry reporting
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTelemetryReporting:
    """Every admitted attempt and every transition reaches the aggregator."""

    async def test_outcomes_recorded(self, cb: CircuitBreaker, telemetry: TelemetryAggregator):
        await cb.execute(_ok)
        with pytest.raises(OperationError):
            await cb.execute(_boom)
        snap = telemetry.snapshot()
        assert snap.requests_total == 2
        assert snap.requests_failed == 1
        assert snap.last_error == "backend down"
        assert len(snap.recent_latencies) == 2

    async def test_open_transition_forces_down(self, cb: CircuitBreaker, telemetry: TelemetryAggregator):
        await _trip(cb)
        snap = telemetry.snapshot()
        assert snap.circuit_state == CircuitState.OPEN
        assert snap.status == SystemStatus.DOWN

    async def test_rejections_not_counted(self, cb: CircuitBreaker, telemetry: TelemetryAggregator):
        await _trip(cb)
        for _ in range(4):
            with pytest.raises(CircuitOpenError):
                await cb.execute(_ok)
        assert telemetry.snapshot().requests_total == 3

    async def test_half_open_reported_during_probe(
        self, cb: CircuitBreaker, clock: FakeClock, telemetry: TelemetryAggregator
    ):
        await _trip(cb)
        clock.advance(11.0)
        seen: list[CircuitState] = []

        async def op():
            seen.append(telemetry.snapshot().circuit_state)
            return "ok"

        await cb.execute(op)
        assert seen == [CircuitState.HALF_OPEN]
        assert telemetry.snapshot().circuit_state == CircuitState.CLOSED
        assert telemetry.snapshot().status != SystemStatus.DOWN


class TestCircuitBreakerMetrics:
    """Test the metrics/snapshot reporting."""

    async def test_snapshot_structure(self):
        cb = CircuitBreaker("my-backend")
        snap = cb.snapshot()
        assert snap["name"] == "my-backend"
        assert snap["state"] == "CLOSED"
        assert snap["failure_count"] == 0
        assert snap["retry_after"] == 0.0
        assert snap["total_calls"] == 0

    async def test_metrics_track_correctly(self, cb: CircuitBreaker):
        await cb.execute(_ok)
        with pytest.raises(OperationError):
            await cb.execute(_boom)
        assert cb.total_calls == 2
        assert cb.total_successes == 1
        assert cb.total_failures == 1

    async def test_default_telemetry_created(self):
        cb = CircuitBreaker("solo")
        await cb.execute(_ok)
        assert cb.telemetry.snapshot().requests_total == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Error Response Integration
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCircuitOpenErrorResponse:
    """Test CircuitOpenError maps to structured error responses."""

    def test_circuit_open_error_code(self):
        exc = CircuitOpenError("inference-backend", 7.5)
        resp = StructuredErrorResponse.from_exception(exc, "req-123")
        assert resp.code == "CIRCUIT_OPEN"
        assert "inference-backend" in resp.error
        assert resp.request_id == "req-123"

    def test_circuit_open_negative_retry_clamped(self):
        exc = CircuitOpenError("test", -5.0)
        assert exc.retry_after == 0.0
