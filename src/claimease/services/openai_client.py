"""Shared OpenAI client with configured timeout and resilience."""

import logging
from typing import Any

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, InternalServerError, RateLimitError
from openai.types.chat import ChatCompletion

from claimease.config import settings
from claimease.services.resilience import openai_circuit, retrying

logger = logging.getLogger(__name__)

OPENAI_RETRYABLE = (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    RateLimitError,
)


def get_openai_client() -> AsyncOpenAI:
    """Get an AsyncOpenAI client.

    SDK retries are disabled (max_retries=0); tenacity handles them so
    attempts are logged and counted by the circuit breaker once.
    """
    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.openai_timeout,
        max_retries=0,
    )


async def create_chat_completion(
    messages: list[dict[str, Any]],
    model: str | None = None,
    temperature: float = 0.7,
    max_completion_tokens: int | None = None,
    **kwargs: Any,
) -> ChatCompletion:
    """Create a chat completion with retry and circuit breaker.

    Raises:
        CircuitOpenError: If the OpenAI circuit breaker is open
        openai.OpenAIError: If all retries fail
    """
    params: dict[str, Any] = {
        "model": model or settings.active_chat_model,
        "messages": messages,
        "temperature": temperature,
        **kwargs,
    }
    if max_completion_tokens is not None:
        params["max_completion_tokens"] = max_completion_tokens

    async def _call() -> ChatCompletion:
        client = get_openai_client()
        async for attempt in retrying(OPENAI_RETRYABLE):
            with attempt:
                return await client.chat.completions.create(**params)  # type: ignore[arg-type]
        raise RuntimeError("Unreachable")  # For type checker

    return await openai_circuit.call(_call)
