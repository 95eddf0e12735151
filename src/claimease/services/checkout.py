"""Stripe checkout and payment reconciliation.

A plan upgrade is applied only from a signed webhook. Each Stripe checkout
session id is written to the ``payments`` ledger once, so redelivered or
duplicated notifications leave the account untouched.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from claimease.config import settings
from claimease.models import (
    Account,
    Payment,
    PaymentStatus,
    PlanTier,
    WebhookEvent,
    WebhookEventStatus,
    utcnow,
)
from claimease.services.auth import get_or_create_account
from claimease.services.email import email_service
from claimease.services.entitlements import effective_tier, set_tier
from claimease.services.resilience import retrying, stripe_circuit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutPlan:
    """A purchasable plan and the tier it grants."""

    name: str
    tier: PlanTier
    label: str

    @property
    def price_id(self) -> str:
        if self.tier == PlanTier.UNLIMITED:
            return settings.stripe_pro_price_id
        return settings.stripe_standard_price_id


CHECKOUT_PLANS: dict[str, CheckoutPlan] = {
    "standard": CheckoutPlan(name="standard", tier=PlanTier.SINGLE_CLAIM, label="Single Claim"),
    "pro": CheckoutPlan(name="pro", tier=PlanTier.UNLIMITED, label="Unlimited Claims"),
}

STRIPE_RETRYABLE = (stripe.APIConnectionError, stripe.RateLimitError)


class CheckoutError(Exception):
    """Checkout or reconciliation failure."""

    pass


class InvalidSignatureError(CheckoutError):
    """Webhook payload is unsigned or the signature does not verify."""

    pass


class PaymentsNotConfiguredError(CheckoutError):
    """Stripe keys or price ids are missing."""

    pass


class AccountResolutionError(CheckoutError):
    """A confirmed payment names neither a known account nor an email."""

    pass


class CheckoutSessionNotFoundError(CheckoutError):
    """The checkout session id is unknown."""

    pass


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"


@dataclass
class CheckoutSession:
    checkout_url: str
    session_id: str


# Paid or not, the webhook has not been reconciled yet
CHECKOUT_PENDING = "pending"


@dataclass
class CheckoutStatus:
    """Reconciliation state of one checkout session."""

    session_id: str
    status: str
    tier: str
    payment_status: str | None = None


@dataclass
class PaymentConfirmation:
    """A verified statement that a transaction paid for a tier."""

    transaction_id: str
    tier: PlanTier
    account_id: str | None = None
    email: str | None = None
    customer_id: str | None = None
    amount_total: int | None = None
    currency: str | None = None


def upgrade_plans(account: Account, now: datetime | None = None) -> list[str]:
    """Checkout plans that would change the account's current tier."""
    current = effective_tier(account, now)
    return [name for name, plan in CHECKOUT_PLANS.items() if plan.tier != current]


def _checkout_plan(plan: str) -> CheckoutPlan:
    if not settings.payments_enabled:
        raise PaymentsNotConfiguredError("Payments are not configured")

    checkout_plan = CHECKOUT_PLANS.get(plan)
    if checkout_plan is None:
        raise CheckoutError(f"Unknown plan: {plan}")
    if not checkout_plan.price_id:
        raise PaymentsNotConfiguredError(f"No price configured for plan {plan}")
    return checkout_plan


async def _start_checkout(
    checkout_plan: CheckoutPlan,
    metadata: dict[str, str],
    customer_params: dict[str, Any],
    payer: str,
) -> CheckoutSession:
    app_url = settings.app_url.rstrip("/")
    params: dict[str, Any] = {
        "mode": "payment",
        "line_items": [{"price": checkout_plan.price_id, "quantity": 1}],
        "success_url": f"{app_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{app_url}/account",
        "metadata": metadata,
        "payment_intent_data": {"metadata": metadata},
        **customer_params,
    }

    async def _call() -> Any:
        async for attempt in retrying(STRIPE_RETRYABLE):
            with attempt:
                return await asyncio.to_thread(
                    stripe.checkout.Session.create,
                    api_key=settings.stripe_secret_key,
                    **params,
                )
        raise RuntimeError("Unreachable")  # For type checker

    try:
        session = await stripe_circuit.call(_call)
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout creation failed for {payer}: {e}")
        raise CheckoutError("Failed to create checkout session") from e

    logger.info(f"Checkout session {session.id} created for {payer} plan={checkout_plan.name}")
    return CheckoutSession(checkout_url=session.url, session_id=session.id)


async def create_checkout_session(account: Account, plan: str) -> CheckoutSession:
    """Start a one-off Stripe Checkout payment for a plan.

    Raises:
        PaymentsNotConfiguredError: If Stripe is not configured
        CheckoutError: Unknown plan, plan already active, or Stripe rejected the request
    """
    checkout_plan = _checkout_plan(plan)

    current = effective_tier(account)
    if current == checkout_plan.tier:
        raise CheckoutError(f"Account is already on the {checkout_plan.label} plan")

    metadata = {
        "account_id": account.id,
        "email": account.email,
        "plan": checkout_plan.name,
        "previous_plan": current.value,
    }
    customer_params: dict[str, Any] = {"client_reference_id": account.id}
    if account.stripe_customer_id:
        customer_params["customer"] = account.stripe_customer_id
    else:
        customer_params["customer_email"] = account.email
        customer_params["customer_creation"] = "always"

    return await _start_checkout(checkout_plan, metadata, customer_params, f"account {account.id}")


async def create_guest_checkout_session(email: str, plan: str) -> CheckoutSession:
    """Start a checkout for a visitor who has not signed in.

    Only the email travels in the metadata. The webhook resolves it to an
    existing account or creates a Free one before applying the plan, and the
    payer then signs in with a magic link for that address.

    Raises:
        PaymentsNotConfiguredError: If Stripe is not configured
        CheckoutError: Unknown plan or Stripe rejected the request
    """
    checkout_plan = _checkout_plan(plan)
    metadata = {"email": email, "plan": checkout_plan.name}
    customer_params = {"customer_email": email, "customer_creation": "always"}
    return await _start_checkout(checkout_plan, metadata, customer_params, email)


async def get_checkout_status(session: AsyncSession, session_id: str) -> CheckoutStatus:
    """Report whether a checkout session has been reconciled.

    The ledger answers once the webhook has landed; until then Stripe is asked
    for the session so the success page can tell pending from unknown.

    Raises:
        CheckoutSessionNotFoundError: Stripe does not know the session, or it is not one of ours
        PaymentsNotConfiguredError: If Stripe is not configured
        CheckoutError: Stripe could not be reached
    """
    stmt = select(Payment).where(Payment.transaction_id == session_id)
    payment = (await session.execute(stmt)).scalar_one_or_none()
    if payment is not None:
        return CheckoutStatus(
            session_id=session_id,
            status=payment.status,
            tier=payment.plan,
        )

    if not settings.payments_enabled:
        raise PaymentsNotConfiguredError("Payments are not configured")

    async def _call() -> Any:
        async for attempt in retrying(STRIPE_RETRYABLE):
            with attempt:
                return await asyncio.to_thread(
                    stripe.checkout.Session.retrieve,
                    session_id,
                    api_key=settings.stripe_secret_key,
                )
        raise RuntimeError("Unreachable")  # For type checker

    try:
        stripe_session = await stripe_circuit.call(_call)
    except stripe.InvalidRequestError as e:
        raise CheckoutSessionNotFoundError(f"No checkout session {session_id}") from e
    except stripe.StripeError as e:
        logger.error(f"Stripe lookup of checkout session {session_id} failed: {e}")
        raise CheckoutError("Failed to look up checkout session") from e

    metadata = stripe_session.get("metadata") or {}
    plan = CHECKOUT_PLANS.get(metadata.get("plan", ""))
    if plan is None:
        raise CheckoutSessionNotFoundError(f"Checkout session {session_id} is not a plan purchase")

    return CheckoutStatus(
        session_id=session_id,
        status=CHECKOUT_PENDING,
        tier=plan.tier.value,
        payment_status=stripe_session.get("payment_status"),
    )


def construct_event(payload: bytes, signature: str | None) -> dict[str, Any]:
    """Verify a webhook signature and decode the event.

    Raises:
        InvalidSignatureError: Missing or invalid signature, or an undecodable body
        PaymentsNotConfiguredError: No webhook secret configured
    """
    if not settings.stripe_webhook_secret:
        raise PaymentsNotConfiguredError("Webhook secret is not configured")
    if not signature:
        raise InvalidSignatureError("Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(
            payload,
            signature,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
    except stripe.SignatureVerificationError as e:
        raise InvalidSignatureError(str(e)) from e
    except ValueError as e:
        raise InvalidSignatureError(f"Invalid payload: {e}") from e

    return event.to_dict()


def confirmation_from_checkout(obj: dict[str, Any]) -> PaymentConfirmation:
    """Build a confirmation from a ``checkout.session`` object.

    Raises:
        CheckoutError: If the session does not name a known plan
    """
    metadata = obj.get("metadata") or {}
    plan = CHECKOUT_PLANS.get(metadata.get("plan", ""))
    if plan is None:
        raise CheckoutError(f"Checkout session {obj.get('id')} has unknown plan {metadata.get('plan')!r}")

    customer = obj.get("customer")
    customer_details = obj.get("customer_details") or {}
    return PaymentConfirmation(
        transaction_id=obj["id"],
        tier=plan.tier,
        account_id=metadata.get("account_id") or obj.get("client_reference_id"),
        email=metadata.get("email") or customer_details.get("email") or obj.get("customer_email"),
        customer_id=customer if isinstance(customer, str) else None,
        amount_total=obj.get("amount_total"),
        currency=obj.get("currency"),
    )


async def _resolve_account(session: AsyncSession, confirmation: PaymentConfirmation) -> Account:
    if confirmation.account_id:
        account = await session.get(Account, confirmation.account_id)
        if account is not None:
            return account
    if confirmation.email:
        account, created = await get_or_create_account(session, confirmation.email)
        if created:
            logger.info(f"Created account {account.id} for paying email {confirmation.email}")
        return account
    raise AccountResolutionError(
        f"Transaction {confirmation.transaction_id} names no known account and no email"
    )


async def _already_recorded(session: AsyncSession, transaction_id: str) -> bool:
    stmt = select(Payment.id).where(Payment.transaction_id == transaction_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def reconcile_payment(
    session: AsyncSession,
    confirmation: PaymentConfirmation,
    now: datetime | None = None,
) -> ReconcileOutcome:
    """Apply a confirmed payment to its account at most once.

    Raises:
        AccountResolutionError: If no account can be found or created
    """
    now = now or utcnow()

    if await _already_recorded(session, confirmation.transaction_id):
        logger.info(f"Transaction {confirmation.transaction_id} already reconciled")
        return ReconcileOutcome.DUPLICATE

    account = await _resolve_account(session, confirmation)
    previous = effective_tier(account, now)

    session.add(
        Payment(
            transaction_id=confirmation.transaction_id,
            account_id=account.id,
            email=account.email,
            previous_plan=previous.value,
            plan=confirmation.tier.value,
            amount_total=confirmation.amount_total,
            currency=confirmation.currency,
            status=PaymentStatus.COMPLETED.value,
            created_at=now,
        )
    )
    try:
        await session.flush()
    except IntegrityError:
        # Concurrent delivery inserted the ledger row first
        await session.rollback()
        logger.info(f"Transaction {confirmation.transaction_id} reconciled concurrently")
        return ReconcileOutcome.DUPLICATE

    set_tier(account, confirmation.tier, now + timedelta(days=settings.plan_duration_days))
    if confirmation.customer_id:
        account.stripe_customer_id = confirmation.customer_id
    await session.commit()

    logger.info(
        f"Account {account.id} upgraded {previous.value} -> {confirmation.tier.value} "
        f"(transaction {confirmation.transaction_id})"
    )
    await email_service.send_plan_confirmation(account.email, confirmation.tier.value)
    return ReconcileOutcome.APPLIED


async def record_failed_payment(session: AsyncSession, obj: dict[str, Any]) -> None:
    """Log an asynchronous payment failure in the ledger."""
    transaction_id = obj["id"]
    if await _already_recorded(session, transaction_id):
        return
    metadata = obj.get("metadata") or {}
    plan = CHECKOUT_PLANS.get(metadata.get("plan", ""))
    session.add(
        Payment(
            transaction_id=transaction_id,
            account_id=metadata.get("account_id"),
            email=metadata.get("email"),
            previous_plan=metadata.get("previous_plan"),
            plan=plan.tier.value if plan else metadata.get("plan", "unknown"),
            amount_total=obj.get("amount_total"),
            currency=obj.get("currency"),
            status=PaymentStatus.FAILED.value,
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
    logger.warning(f"Payment failed for checkout session {transaction_id}")


async def _dispatch(session: AsyncSession, event_type: str, obj: dict[str, Any]) -> WebhookEventStatus:
    match event_type:
        case "checkout.session.completed":
            # Delayed payment methods complete unpaid and confirm via async_payment_succeeded
            if obj.get("payment_status") not in ("paid", "no_payment_required"):
                logger.info(f"Checkout {obj.get('id')} completed unpaid, awaiting confirmation")
                return WebhookEventStatus.IGNORED
            await reconcile_payment(session, confirmation_from_checkout(obj))
            return WebhookEventStatus.PROCESSED
        case "checkout.session.async_payment_succeeded":
            await reconcile_payment(session, confirmation_from_checkout(obj))
            return WebhookEventStatus.PROCESSED
        case "checkout.session.async_payment_failed":
            await record_failed_payment(session, obj)
            return WebhookEventStatus.PROCESSED
    return WebhookEventStatus.IGNORED


async def _finish(
    session: AsyncSession,
    record: WebhookEvent,
    status: WebhookEventStatus,
    error: str | None = None,
) -> WebhookEvent:
    # A rollback during processing expires the row
    await session.refresh(record)
    record.status = status.value
    record.last_error = error
    record.processed_at = utcnow()
    await session.commit()
    return record


async def _get_event(session: AsyncSession, event_id: str) -> WebhookEvent | None:
    stmt = (
        select(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def handle_event(session: AsyncSession, event: dict[str, Any]) -> WebhookEvent:
    """Process a verified webhook event once.

    Processing errors are stored on the event row rather than raised, so the
    provider gets an acknowledgement either way.

    Raises:
        CheckoutError: If the event has no id or type
    """
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise CheckoutError("Malformed event: missing id or type")

    record = await _get_event(session, event_id)
    if record is not None and record.status in (
        WebhookEventStatus.PROCESSED.value,
        WebhookEventStatus.IGNORED.value,
    ):
        logger.info(f"Webhook event {event_id} already handled ({record.status})")
        return record

    if record is None:
        record = WebhookEvent(event_id=event_id, event_type=event_type, payload=event)
        session.add(record)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.info(f"Webhook event {event_id} is being handled by another delivery")
            existing = await _get_event(session, event_id)
            if existing is None:
                raise
            return existing
    else:
        # Retry of a previously failed event
        record.status = WebhookEventStatus.PROCESSING.value
        record.last_error = None
        await session.commit()

    logger.info(f"Webhook event {event_id} received: {event_type}")
    obj = (event.get("data") or {}).get("object") or {}
    try:
        status = await _dispatch(session, event_type, obj)
    except Exception as e:
        await session.rollback()
        logger.exception(f"Webhook event {event_id} ({event_type}) failed")
        return await _finish(session, record, WebhookEventStatus.FAILED, error=str(e))

    return await _finish(session, record, status)


async def list_failed_events(session: AsyncSession, limit: int = 50) -> list[WebhookEvent]:
    """Most recent events whose processing failed."""
    stmt = (
        select(WebhookEvent)
        .where(WebhookEvent.status == WebhookEventStatus.FAILED.value)
        .order_by(WebhookEvent.received_at.desc())  # type: ignore[attr-defined]
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
