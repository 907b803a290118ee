"""InferenceClient — HTTP call to the remote tutoring backend.

Posts one chat turn to the backend and parses the reply.  Transport
failures are translated into the core's error taxonomy so that the
resilience gate can count them:

    httpx timeouts              →  OperationTimeoutError
    connection errors / non-2xx →  OperationError
    malformed JSON body         →  OperationError

Retry and circuit breaking are not done here; the caller wraps
``complete()`` in ``CircuitBreaker.execute``.
"""

from __future__ import annotations

import logging
import time

import httpx
from pydantic import ValidationError

from tutor_core.core.config import Settings
from tutor_core.core.errors import OperationError, OperationTimeoutError
from tutor_core.models.schemas import ChatResponse

logger = logging.getLogger(__name__)

BACKEND_NAME = "inference-backend"


class InferenceClient:
    """Sends chat payloads to the inference backend via HTTP.

    Args:
        settings: Application settings with the backend URL and timeout.
        client:   Optional pre-built ``httpx.AsyncClient`` (tests inject a
                  mock transport through this).
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.url = settings.INFERENCE_URL
        self.timeout = settings.INFERENCE_TIMEOUT_SECONDS
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def complete(self, payload: dict) -> ChatResponse:
        """Send *payload* and return the parsed backend reply.

        Raises:
            OperationTimeoutError: The request exceeded the configured timeout.
            OperationError: The backend was unreachable or replied badly.
        """
        start = time.monotonic()
        try:
            response = await self._get_client().post(self.url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException:
            raise OperationTimeoutError(BACKEND_NAME, self.timeout) from None
        except httpx.HTTPError as exc:
            raise OperationError(BACKEND_NAME, f"Connection failed: {exc}") from exc

        if response.is_error:
            raise OperationError(BACKEND_NAME, f"HTTP {response.status_code}")

        try:
            body = ChatResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise OperationError(BACKEND_NAME, "Malformed response body") from exc

        elapsed_ms = (time.monotonic() - start) * 1000
        if not body.latency_ms:
            body = body.model_copy(update={"latency_ms": round(elapsed_ms, 2)})
        logger.debug("Inference backend replied in %.1fms", elapsed_ms)
        return body

    async def close(self) -> None:
        """Close the pooled httpx client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
