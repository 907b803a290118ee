"""FastAPI application entrypoint.

Wires one of each core component for the process lifetime and exposes:

- ``GET /health``     service identity, telemetry status and uptime
- ``GET /telemetry``  aggregator snapshot plus circuit breaker snapshot
- ``POST /chat``      one tutoring chat turn through the chat gateway
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response

from tutor_core.chat_gateway import ChatGateway
from tutor_core.core.config import Settings
from tutor_core.inference_client import BACKEND_NAME, InferenceClient
from tutor_core.models.schemas import ChatReply, ChatRequest, HealthResponse
from tutor_core.resilience.circuit_breaker import CircuitBreaker
from tutor_core.retrieval.retriever import ContextRetriever
from tutor_core.telemetry.aggregator import TelemetryAggregator

logger = logging.getLogger(__name__)

settings = Settings()

_start_time = time.monotonic()

telemetry = TelemetryAggregator(
    window_size=settings.TELEMETRY_WINDOW_SIZE,
    error_rate_threshold=settings.DEGRADED_ERROR_RATE,
    latency_threshold_ms=settings.DEGRADED_LATENCY_MS,
)
breaker = CircuitBreaker(
    BACKEND_NAME,
    telemetry=telemetry,
    failure_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
    recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_SECONDS,
)
inference_client = InferenceClient(settings)
gateway = ChatGateway(
    client=inference_client,
    breaker=breaker,
    retriever=ContextRetriever(top_k=settings.RETRIEVAL_TOP_K),
    timeout=settings.INFERENCE_TIMEOUT_SECONDS,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info("%s %s starting", settings.SERVICE_NAME, settings.SERVICE_VERSION)
    yield
    await inference_client.close()


app = FastAPI(
    title=settings.SERVICE_NAME,
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next) -> Response:
    """Assign or preserve a unique request ID on every request."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Return service health with name, version, status, and uptime."""
    return HealthResponse(
        service=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        status=telemetry.snapshot().status,
        uptime_seconds=round(time.monotonic() - _start_time, 2),
    )


@app.get("/telemetry")
async def telemetry_snapshot() -> dict:
    """Dashboard polling endpoint."""
    return {
        "telemetry": telemetry.snapshot().model_dump(mode="json"),
        "circuit_breaker": breaker.snapshot(),
    }


@app.post("/chat", response_model=ChatReply)
async def chat(request: ChatRequest) -> ChatReply:
    return await gateway.generate_response(
        request.message,
        history=request.history,
        module=request.module,
        attachments=request.attachments,
    )
