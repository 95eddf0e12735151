"""Stripe checkout endpoints."""

import logging
from collections.abc import Coroutine
from typing import Any, Literal

from fastapi import APIRouter, Header, HTTPException, Path, Request, status
from pydantic import BaseModel, EmailStr

from claimease.api.deps import CurrentUser, RateLimitGuardDep, SessionDep
from claimease.api.utils import APIError
from claimease.schemas import ErrorResponse
from claimease.services.checkout import (
    CheckoutError,
    CheckoutSession,
    CheckoutSessionNotFoundError,
    InvalidSignatureError,
    PaymentsNotConfiguredError,
    construct_event,
    create_checkout_session,
    create_guest_checkout_session,
    get_checkout_status,
    handle_event,
)
from claimease.services.rate_limit import RateLimitType
from claimease.services.resilience import CircuitOpenError

logger = logging.getLogger(__name__)

router = APIRouter()


class CheckoutRequest(BaseModel):
    plan: Literal["standard", "pro"]


class GuestCheckoutRequest(CheckoutRequest):
    email: EmailStr


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class CheckoutStatusResponse(BaseModel):
    session_id: str
    status: str
    tier: str
    payment_status: str | None = None


class WebhookResponse(BaseModel):
    received: bool = True
    status: str


@router.post(
    "/session",
    response_model=CheckoutResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def create_session(body: CheckoutRequest, user: CurrentUser):
    """Start a Stripe Checkout payment for a plan upgrade."""
    return await _checkout_response(create_checkout_session(user, body.plan))


@router.post(
    "/guest-session",
    response_model=CheckoutResponse,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def create_guest_session(body: GuestCheckoutRequest, rate_limit: RateLimitGuardDep):
    """Start a checkout before signing up.

    The account for ``email`` is found or created when the payment webhook
    arrives; the payer then signs in with a magic link.
    """
    await rate_limit.enforce(RateLimitType.CHECKOUT)
    return await _checkout_response(create_guest_checkout_session(body.email, body.plan))


async def _checkout_response(pending: Coroutine[Any, Any, CheckoutSession]) -> CheckoutResponse:
    try:
        checkout = await pending
    except (PaymentsNotConfiguredError, CircuitOpenError) as e:
        raise APIError(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payments are currently unavailable",
            code="payments_unavailable",
        ) from e
    except CheckoutError as e:
        raise APIError(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
            code="checkout_failed",
        ) from e

    return CheckoutResponse(checkout_url=checkout.checkout_url, session_id=checkout.session_id)


@router.get(
    "/session/{session_id}",
    response_model=CheckoutStatusResponse,
    responses={404: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def get_session_status(
    session: SessionDep,
    rate_limit: RateLimitGuardDep,
    session_id: str = Path(max_length=255, pattern=r"^cs_[A-Za-z0-9_]+$"),
):
    """Poll a checkout from the payment-success page.

    ``completed`` means the plan has been applied; ``pending`` means Stripe
    knows the session but its webhook has not been reconciled yet.
    """
    await rate_limit.enforce(RateLimitType.CHECKOUT)
    try:
        checkout_status = await get_checkout_status(session, session_id)
    except CheckoutSessionNotFoundError as e:
        raise APIError(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Checkout session not found",
            code="checkout_not_found",
        ) from e
    except (CheckoutError, CircuitOpenError) as e:
        raise APIError(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payments are currently unavailable",
            code="payments_unavailable",
        ) from e

    return CheckoutStatusResponse(
        session_id=checkout_status.session_id,
        status=checkout_status.status,
        tier=checkout_status.tier,
        payment_status=checkout_status.payment_status,
    )


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse}},
)
async def stripe_webhook(
    request: Request,
    session: SessionDep,
    stripe_signature: str | None = Header(default=None),
):
    """Receive a signed Stripe event.

    Anything that verifies is acknowledged with 200; processing failures are
    kept on the webhook event row for follow-up.
    """
    payload = await request.body()
    try:
        event = construct_event(payload, stripe_signature)
    except PaymentsNotConfiguredError as e:
        logger.error("Webhook received but no webhook secret is configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhooks are not configured",
        ) from e
    except InvalidSignatureError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise APIError(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
            code="invalid_signature",
        ) from e

    try:
        record = await handle_event(session, event)
    except CheckoutError as e:
        raise APIError(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
            code="invalid_event",
        ) from e

    return WebhookResponse(status=record.status)
