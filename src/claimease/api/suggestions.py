"""AI rewriting of claim answers."""

import logging

from fastapi import APIRouter, status
from openai import OpenAIError
from pydantic import BaseModel, Field

from claimease.api.deps import CurrentUser, RateLimitGuardDep
from claimease.api.utils import APIError
from claimease.schemas import ErrorResponse
from claimease.services.rate_limit import RateLimitType
from claimease.services.resilience import CircuitOpenError
from claimease.services.suggestions import SuggestionError, suggest_response

logger = logging.getLogger(__name__)

router = APIRouter()


class SuggestionRequest(BaseModel):
    question: str = Field(min_length=1, max_length=500)
    answer: str = Field(min_length=1, max_length=5000)


class SuggestionResponse(BaseModel):
    suggested_response: str


@router.post(
    "",
    response_model=SuggestionResponse,
    responses={429: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def create_suggestion(
    body: SuggestionRequest,
    user: CurrentUser,
    rate_limit: RateLimitGuardDep,
):
    """Rewrite a raw answer into a clear first-person PIP statement."""
    await rate_limit.enforce(RateLimitType.SUGGEST, user_id=user.id)
    try:
        suggestion = await suggest_response(body.question, body.answer)
    except (CircuitOpenError, OpenAIError, SuggestionError) as e:
        logger.error(f"Suggestion failed for account {user.id}: {e!r}")
        raise APIError(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to generate AI suggestion",
            code="suggestion_unavailable",
        ) from e

    return SuggestionResponse(suggested_response=suggestion)
