"""Answer suggestion endpoint tests."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from httpx import AsyncClient
from openai import APIConnectionError

from claimease.services.resilience import CircuitOpenError
from tests.conftest import AuthenticatedClient, make_openai_chat_response

BODY = {"question": "Preparing food", "answer": "I get dizzy standing at the cooker"}


@pytest.mark.asyncio
async def test_returns_rewritten_answer(free_client: AuthenticatedClient):
    response_content = "ClaimEase Answer:\nMost of the time I cannot stand long enough to cook safely."
    with patch(
        "claimease.services.suggestions.create_chat_completion",
        new_callable=AsyncMock,
        return_value=make_openai_chat_response(response_content),
    ):
        response = await free_client.post("/api/suggestions", json=BODY)

    assert response.status_code == 200
    assert response.json() == {
        "suggested_response": "Most of the time I cannot stand long enough to cook safely."
    }
    assert response.headers["X-RateLimit-Limit"] == "20"


@pytest.mark.asyncio
async def test_requires_auth(client: AsyncClient):
    response = await client.post("/api/suggestions", json=BODY)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_validates_lengths(free_client: AuthenticatedClient):
    response = await free_client.post("/api/suggestions", json={"question": "", "answer": "x"})
    assert response.status_code == 422

    response = await free_client.post("/api/suggestions", json={"question": "q", "answer": "x" * 5001})
    assert response.status_code == 422


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        CircuitOpenError("Circuit breaker 'openai' is open"),
        APIConnectionError(request=httpx.Request("POST", "https://api.openai.com")),
    ],
)
async def test_provider_failure_is_503(free_client: AuthenticatedClient, error: Exception):
    with patch(
        "claimease.services.suggestions.create_chat_completion",
        new_callable=AsyncMock,
        side_effect=error,
    ):
        response = await free_client.post("/api/suggestions", json=BODY)

    assert response.status_code == 503
    assert response.json()["code"] == "suggestion_unavailable"


@pytest.mark.asyncio
async def test_rate_limited_per_account(free_client: AuthenticatedClient):
    with patch(
        "claimease.services.suggestions.create_chat_completion",
        new_callable=AsyncMock,
        return_value=make_openai_chat_response("I need help."),
    ):
        for _ in range(20):
            assert (await free_client.post("/api/suggestions", json=BODY)).status_code == 200
        response = await free_client.post("/api/suggestions", json=BODY)

    assert response.status_code == 429
    assert "Retry-After" in response.headers
