"""
Language model client.

Thin wrapper over LiteLLM so any provider LiteLLM supports can back the
agent (model name from ``LITELLM_MODEL``). Calls go through a circuit breaker;
any provider failure surfaces as ``ModelUnavailableError``.
"""

import logging
from collections.abc import AsyncIterator

import litellm

from approvalflow.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from approvalflow.config import settings
from approvalflow.exceptions import ModelUnavailableError
from approvalflow.observability import trace_span

logger = logging.getLogger(__name__)


class ModelClient:
    """Plain and streaming chat completions."""

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ):
        self.model = model or settings.litellm_model
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout,
            name="ModelCircuitBreaker",
        )
        logger.info(f"Model client initialized: model={self.model}")

    def _request(self, messages: list[dict], **overrides) -> dict:
        request = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.api_key:
            request["api_key"] = self.api_key
        request.update(overrides)
        return request

    async def complete(self, messages: list[dict], **overrides) -> str:
        with trace_span("model.complete", model=self.model, messages=len(messages)):
            try:
                response = await self.circuit_breaker.call_async(
                    litellm.acompletion, **self._request(messages, **overrides)
                )
            except CircuitBreakerOpenError as e:
                raise ModelUnavailableError(str(e)) from e
            except Exception as e:
                logger.error(f"Model call failed: {e}")
                raise ModelUnavailableError(f"Model call failed: {e}") from e
        return response.choices[0].message.content or ""

    async def stream(self, messages: list[dict], **overrides) -> AsyncIterator[str]:
        """Yield text deltas as the model produces them."""
        with trace_span("model.stream", model=self.model, messages=len(messages)):
            try:
                response = await self.circuit_breaker.call_async(
                    litellm.acompletion, **self._request(messages, stream=True, **overrides)
                )
            except CircuitBreakerOpenError as e:
                raise ModelUnavailableError(str(e)) from e
            except Exception as e:
                logger.error(f"Model stream failed to start: {e}")
                raise ModelUnavailableError(f"Model call failed: {e}") from e

            try:
                async for chunk in response:
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta.content
                    if delta:
                        yield delta
            except Exception as e:
                logger.error(f"Model stream interrupted: {e}")
                raise ModelUnavailableError(f"Model stream interrupted: {e}") from e
