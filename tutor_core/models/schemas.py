"""Shared Pydantic models for the tutor core.

Immutable domain records (transaction outcomes, telemetry snapshots,
knowledge chunks) and the request/response models of the chat contract.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class SystemStatus(str, Enum):
    """Health status derived from circuit state, error rate and latency."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


class ModuleType(str, Enum):
    """Tutoring module the learner is working in."""

    PYTHON = "PYTHON"
    PROMPT_ENG = "PROMPT_ENG"


class Role(str, Enum):
    USER = "user"
    MODEL = "model"


# ── Telemetry ───────────────────────────────────────────────────────────


class TransactionOutcome(BaseModel):
    """One completed attempt, consumed once by the telemetry aggregator."""

    model_config = ConfigDict(frozen=True)

    latency_ms: float = Field(..., ge=0.0)
    success: bool
    error: str | None = None
    source: str = Field(default="remote", pattern=r"^(remote|fallback)$")


class TelemetrySnapshot(BaseModel):
    """Read-only copy of the aggregated telemetry state."""

    model_config = ConfigDict(frozen=True)

    requests_total: int = 0
    requests_failed: int = 0
    recent_latencies: tuple[float, ...] = ()
    average_latency_ms: float = 0.0
    circuit_state: CircuitState = CircuitState.CLOSED
    status: SystemStatus = SystemStatus.HEALTHY
    last_error: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def error_rate(self) -> float:
        return self.requests_failed / max(self.requests_total, 1)


# ── Retrieval ───────────────────────────────────────────────────────────


class KnowledgeChunk(BaseModel):
    """Static corpus entry used for context retrieval."""

    model_config = ConfigDict(frozen=True)

    id: str
    tags: frozenset[str]
    content: str


class ScoredChunk(BaseModel):
    """A chunk paired with its lexical relevance score for one query."""

    model_config = ConfigDict(frozen=True)

    chunk: KnowledgeChunk
    score: int


# ── Chat contract ───────────────────────────────────────────────────────


class HistoryMessage(BaseModel):
    role: Role
    text: str


class Attachment(BaseModel):
    name: str
    mime_type: str
    data: str  # Base64


class ChatRequest(BaseModel):
    """Inbound chat turn from the UI."""

    message: str = Field(..., min_length=1, max_length=20000)
    history: list[HistoryMessage] = Field(default_factory=list)
    module: ModuleType = ModuleType.PYTHON
    attachments: list[Attachment] = Field(default_factory=list)


class ChatResponse(BaseModel):
    """Body returned by the remote inference backend."""

    text: str
    latency_ms: float = Field(default=0.0, ge=0.0)
    used_rag: bool = False
    system_status: str = SystemStatus.HEALTHY.value
    suggested_actions: list[str] | None = None


class ChatReply(BaseModel):
    """What the chat gateway hands back to the UI."""

    text: str
    latency_ms: float
    used_rag: bool
    system_status: str
    degraded: bool = False


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    service: str
    version: str
    status: SystemStatus
    uptime_seconds: float
