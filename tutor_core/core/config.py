"""Settings for the tutor chat core.

Centralized configuration for the resilience gate, telemetry aggregator,
context retriever and the remote inference call.
All settings are loaded from environment variables with the TUTOR_CORE_ prefix.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Tutor core configuration.

    All fields can be overridden by environment variables prefixed with
    ``TUTOR_CORE_``.  For example, ``TUTOR_CORE_CIRCUIT_BREAKER_THRESHOLD=5``
    overrides the default threshold.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "tutor-core"
    SERVICE_VERSION: str = "0.1.0"

    # ── Remote inference backend ────────────────────────────────────
    INFERENCE_URL: str = "http://localhost:8000/api/v1/chat"
    INFERENCE_TIMEOUT_SECONDS: float = 5.0  # Caller-imposed bound on one attempt

    # ── Resilience ──────────────────────────────────────────────────
    CIRCUIT_BREAKER_THRESHOLD: int = 3  # Consecutive failures before OPEN
    CIRCUIT_BREAKER_RECOVERY_SECONDS: float = 10.0  # Cooldown before HALF_OPEN probe

    # ── Telemetry ───────────────────────────────────────────────────
    TELEMETRY_WINDOW_SIZE: int = 20  # Rolling latency samples
    DEGRADED_ERROR_RATE: float = 0.20
    DEGRADED_LATENCY_MS: float = 3000.0

    # ── Retrieval ───────────────────────────────────────────────────
    RETRIEVAL_TOP_K: int = 2

    model_config = {
        "env_prefix": "TUTOR_CORE_",
    }
