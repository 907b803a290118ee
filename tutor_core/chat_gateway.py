"""ChatGateway — orchestrates one tutoring chat turn.

Flow for every turn:

1. Retrieve local context for the learner's message.
2. Call the remote inference backend through the circuit breaker.
3. On ``OperationError`` or ``CircuitOpenError`` substitute a locally
   computed reply (simulation mode) and record that substitution as a
   ``fallback`` transaction so telemetry stays accurate.

No exception escapes to the UI: if even the fallback fails, the turn is
answered with a "System Failure" message and recorded as failed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Protocol

from tutor_core.core.errors import CircuitOpenError, OperationError
from tutor_core.inference_client import InferenceClient
from tutor_core.models.schemas import (
    Attachment,
    ChatReply,
    ChatResponse,
    HistoryMessage,
    ModuleType,
    TransactionOutcome,
)
from tutor_core.resilience.circuit_breaker import CircuitBreaker
from tutor_core.retrieval.retriever import CONTEXT_HEADER, ContextRetriever
from tutor_core.telemetry.aggregator import TelemetryAggregator

logger = logging.getLogger(__name__)

SIMULATION_STATUS = "DEGRADED (Simulation Mode)"

_MODULE_SUBJECTS: dict[ModuleType, str] = {
    ModuleType.PYTHON: "Python",
    ModuleType.PROMPT_ENG: "Prompt Engineering",
}


def build_system_prompt(module: ModuleType, context: str | None) -> str:
    """Tutor instructions with the retrieved context embedded."""
    return (
        f"You are an expert AI Tutor teaching {_MODULE_SUBJECTS[module]}.\n\n"
        "[SYSTEMS THINKING CONTEXT]\n"
        f"{context or ''}\n\n"
        "[INSTRUCTIONS]\n"
        "- Explain concepts using Systems Thinking analogies (Stocks, Flows, Loops).\n"
        "- If RAG context is present, explicitly reference it.\n"
        "- Be concise and educational."
    )


def build_payload(
    message: str,
    history: Sequence[HistoryMessage],
    module: ModuleType,
    attachments: Sequence[Attachment],
    context: str | None,
) -> dict:
    """Backend request body for one turn."""
    payload: dict = {
        "message": message,
        "history": [{"role": m.role.value, "text": m.text} for m in history],
        "module": module.value,
        "attachments": [
            {"name": a.name, "mime_type": a.mime_type, "data": a.data} for a in attachments
        ],
    }
    if context:
        payload["context"] = context
    return payload


class FallbackResponder(Protocol):
    """Produces a reply locally when the remote backend is unavailable."""

    async def __call__(
        self,
        message: str,
        *,
        module: ModuleType,
        system_prompt: str,
        context: str | None,
    ) -> str: ...


class LocalTutorResponder:
    """Deterministic offline tutor that answers from retrieved context only."""

    async def __call__(
        self,
        message: str,
        *,
        module: ModuleType,
        system_prompt: str,
        context: str | None,
    ) -> str:
        del system_prompt  # no model to instruct offline
        subject = _MODULE_SUBJECTS[module]
        if not context:
            return (
                f"The {subject} tutor backend is unreachable, so this is a local answer. "
                f'Treat "{message}" as a system: find the stocks (what accumulates), '
                "the flows (what changes them) and the feedback loops between them."
            )
        notes = context.removeprefix(CONTEXT_HEADER).strip()
        return (
            f"The {subject} tutor backend is unreachable, so here are the most relevant "
            f"notes from the local knowledge base:\n\n{notes}"
        )


class ChatGateway:
    """Entry point the UI calls for every chat turn.

    Args:
        client:    Remote inference client.
        breaker:   Circuit breaker guarding *client*; its telemetry
                   aggregator also receives fallback outcomes.
        retriever: Context retriever for prompt augmentation.
        fallback:  Local responder used in simulation mode.
        timeout:   Caller-imposed bound on one remote attempt, in seconds.
    """

    def __init__(
        self,
        client: InferenceClient,
        breaker: CircuitBreaker,
        retriever: ContextRetriever,
        fallback: FallbackResponder | None = None,
        timeout: float | None = 5.0,
    ) -> None:
        self.client = client
        self.breaker = breaker
        self.retriever = retriever
        self.fallback = fallback or LocalTutorResponder()
        self.timeout = timeout

    @property
    def telemetry(self) -> TelemetryAggregator:
        return self.breaker.telemetry

    async def generate_response(
        self,
        message: str,
        history: Sequence[HistoryMessage] = (),
        module: ModuleType = ModuleType.PYTHON,
        attachments: Sequence[Attachment] = (),
    ) -> ChatReply:
        start = time.perf_counter()
        context = self.retriever.retrieve(message)
        payload = build_payload(message, history, module, attachments, context)

        try:
            response: ChatResponse = await self.breaker.execute(
                lambda: self.client.complete(payload),
                timeout=self.timeout,
            )
        except (OperationError, CircuitOpenError) as exc:
            logger.warning("Remote inference unavailable (%s), activating simulation mode", exc)
        else:
            return ChatReply(
                text=response.text,
                latency_ms=round(response.latency_ms),
                used_rag=response.used_rag,
                system_status=response.system_status,
            )

        return await self._simulate(message, module, context, start)

    async def _simulate(
        self,
        message: str,
        module: ModuleType,
        context: str | None,
        start: float,
    ) -> ChatReply:
        try:
            text = await self.fallback(
                message,
                module=module,
                system_prompt=build_system_prompt(module, context),
                context=context,
            )
        except Exception as exc:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.exception("Simulation mode failed")
            self.telemetry.record_transaction(
                TransactionOutcome(
                    latency_ms=latency_ms,
                    success=False,
                    error=str(exc) or type(exc).__name__,
                    source="fallback",
                )
            )
            return ChatReply(
                text=(
                    f"❌ **System Failure**: {str(exc) or 'Unknown error'}. \n\n"
                    "Please check your API Key and network connection."
                ),
                latency_ms=round(latency_ms),
                used_rag=False,
                system_status=self.telemetry.snapshot().status.value,
                degraded=True,
            )

        latency_ms = (time.perf_counter() - start) * 1000
        self.telemetry.record_transaction(
            TransactionOutcome(latency_ms=latency_ms, success=True, source="fallback")
        )
        return ChatReply(
            text=text or "No response generated.",
            latency_ms=round(latency_ms),
            used_rag=context is not None,
            system_status=SIMULATION_STATUS,
            degraded=True,
        )
