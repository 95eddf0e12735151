"""Checkout reconciler tests."""

import json
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import stripe
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from claimease.models import Account, Payment, PlanTier, WebhookEvent, WebhookEventStatus, utcnow
from claimease.services.checkout import (
    AccountResolutionError,
    CheckoutError,
    CheckoutSessionNotFoundError,
    InvalidSignatureError,
    PaymentConfirmation,
    ReconcileOutcome,
    confirmation_from_checkout,
    construct_event,
    create_checkout_session,
    create_guest_checkout_session,
    get_checkout_status,
    handle_event,
    reconcile_payment,
    upgrade_plans,
)
from claimease.services.entitlements import can_start_claim, start_claim
from tests.conftest import make_checkout_event, sign_stripe_payload


async def get_payments(session: AsyncSession) -> list[Payment]:
    result = await session.execute(select(Payment))
    return list(result.scalars().all())


class TestReconcilePayment:
    @pytest.mark.asyncio
    async def test_applies_upgrade(self, session: AsyncSession, free_account: Account):
        now = utcnow()
        outcome = await reconcile_payment(
            session,
            PaymentConfirmation(
                transaction_id="cs_1",
                tier=PlanTier.SINGLE_CLAIM,
                account_id=free_account.id,
                customer_id="cus_1",
                amount_total=2999,
                currency="gbp",
            ),
            now=now,
        )

        assert outcome == ReconcileOutcome.APPLIED
        await session.refresh(free_account)
        assert free_account.plan == PlanTier.SINGLE_CLAIM
        assert free_account.plan_expires_at == now + timedelta(days=365)
        assert free_account.stripe_customer_id == "cus_1"

        payments = await get_payments(session)
        assert len(payments) == 1
        assert payments[0].previous_plan == "free"
        assert payments[0].plan == "single_claim"

    @pytest.mark.asyncio
    async def test_same_transaction_applied_once(self, session: AsyncSession, free_account: Account):
        confirmation = PaymentConfirmation(
            transaction_id="cs_dup", tier=PlanTier.SINGLE_CLAIM, account_id=free_account.id
        )
        first_time = utcnow()
        assert await reconcile_payment(session, confirmation, now=first_time) == ReconcileOutcome.APPLIED

        await start_claim(session, free_account)
        await session.commit()

        later = first_time + timedelta(days=3)
        assert await reconcile_payment(session, confirmation, now=later) == ReconcileOutcome.DUPLICATE

        await session.refresh(free_account)
        assert free_account.claims_used == 1
        assert free_account.plan_expires_at == first_time + timedelta(days=365)
        assert can_start_claim(free_account) is False
        assert len(await get_payments(session)) == 1

    @pytest.mark.asyncio
    async def test_upgrade_keeps_claim_usage(self, session: AsyncSession, single_claim_account: Account):
        await start_claim(session, single_claim_account)
        await session.commit()

        await reconcile_payment(
            session,
            PaymentConfirmation(
                transaction_id="cs_pro", tier=PlanTier.UNLIMITED, account_id=single_claim_account.id
            ),
        )

        await session.refresh(single_claim_account)
        assert single_claim_account.plan == PlanTier.UNLIMITED
        assert single_claim_account.claims_used == 1
        assert can_start_claim(single_claim_account) is True

    @pytest.mark.asyncio
    async def test_unknown_email_creates_account(self, session: AsyncSession):
        outcome = await reconcile_payment(
            session,
            PaymentConfirmation(transaction_id="cs_new", tier=PlanTier.UNLIMITED, email="new@example.com"),
        )
        assert outcome == ReconcileOutcome.APPLIED

        result = await session.execute(select(Account).where(Account.email == "new@example.com"))
        account = result.scalar_one()
        assert account.plan == PlanTier.UNLIMITED
        assert account.claims_used == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_email_for_unknown_id(self, session: AsyncSession, free_account: Account):
        await reconcile_payment(
            session,
            PaymentConfirmation(
                transaction_id="cs_email",
                tier=PlanTier.SINGLE_CLAIM,
                account_id="missing",
                email=free_account.email,
            ),
        )
        await session.refresh(free_account)
        assert free_account.plan == PlanTier.SINGLE_CLAIM

    @pytest.mark.asyncio
    async def test_unresolvable_account(self, session: AsyncSession):
        with pytest.raises(AccountResolutionError):
            await reconcile_payment(
                session,
                PaymentConfirmation(transaction_id="cs_orphan", tier=PlanTier.SINGLE_CLAIM),
            )
        assert await get_payments(session) == []


class TestConfirmationFromCheckout:
    def test_maps_plan_to_tier(self):
        event = make_checkout_event(metadata={"plan": "pro", "account_id": "acc_1", "email": "a@example.com"})
        confirmation = confirmation_from_checkout(event["data"]["object"])

        assert confirmation.tier == PlanTier.UNLIMITED
        assert confirmation.transaction_id == "cs_test_1"
        assert confirmation.account_id == "acc_1"
        assert confirmation.customer_id == "cus_test_1"

    def test_email_from_customer_details(self):
        event = make_checkout_event(
            metadata={"plan": "standard"}, customer_details={"email": "buyer@example.com"}
        )
        confirmation = confirmation_from_checkout(event["data"]["object"])
        assert confirmation.email == "buyer@example.com"
        assert confirmation.tier == PlanTier.SINGLE_CLAIM

    def test_unknown_plan(self):
        event = make_checkout_event(metadata={"plan": "platinum"})
        with pytest.raises(CheckoutError):
            confirmation_from_checkout(event["data"]["object"])


class TestConstructEvent:
    def test_valid_signature(self):
        payload = json.dumps(make_checkout_event())
        event = construct_event(payload.encode(), sign_stripe_payload(payload))
        assert event["id"] == "evt_test_1"

    def test_missing_signature(self):
        with pytest.raises(InvalidSignatureError):
            construct_event(b"{}", None)

    def test_wrong_secret(self):
        payload = json.dumps(make_checkout_event())
        with pytest.raises(InvalidSignatureError):
            construct_event(payload.encode(), sign_stripe_payload(payload, secret="whsec_wrong"))

    def test_tampered_payload(self):
        payload = json.dumps(make_checkout_event())
        signature = sign_stripe_payload(payload)
        tampered = payload.replace("cs_test_1", "cs_test_2")
        with pytest.raises(InvalidSignatureError):
            construct_event(tampered.encode(), signature)

    def test_stale_timestamp(self):
        payload = json.dumps(make_checkout_event())
        old = int(utcnow().timestamp()) - 3600
        with pytest.raises(InvalidSignatureError):
            construct_event(payload.encode(), sign_stripe_payload(payload, timestamp=old))

    def test_body_that_is_not_json(self):
        payload = "not json"
        with pytest.raises(InvalidSignatureError):
            construct_event(payload.encode(), sign_stripe_payload(payload))


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_completed_checkout_is_processed(self, session: AsyncSession, free_account: Account):
        event = make_checkout_event(metadata={"plan": "standard", "account_id": free_account.id})

        record = await handle_event(session, event)

        assert record.status == WebhookEventStatus.PROCESSED.value
        assert record.processed_at is not None
        await session.refresh(free_account)
        assert free_account.plan == PlanTier.SINGLE_CLAIM

    @pytest.mark.asyncio
    async def test_redelivered_event_is_skipped(self, session: AsyncSession, free_account: Account):
        event = make_checkout_event(metadata={"plan": "standard", "account_id": free_account.id})
        await handle_event(session, event)
        await start_claim(session, free_account)
        await session.commit()

        record = await handle_event(session, event)
        assert record.status == WebhookEventStatus.PROCESSED.value

        await session.refresh(free_account)
        assert free_account.claims_used == 1
        assert can_start_claim(free_account) is False

    @pytest.mark.asyncio
    async def test_unpaid_completion_waits_for_async_success(self, session: AsyncSession, free_account: Account):
        metadata = {"plan": "pro", "account_id": free_account.id}
        pending = make_checkout_event(event_id="evt_pending", payment_status="unpaid", metadata=metadata)
        record = await handle_event(session, pending)
        assert record.status == WebhookEventStatus.IGNORED.value

        await session.refresh(free_account)
        assert free_account.plan == PlanTier.FREE

        succeeded = make_checkout_event(
            event_id="evt_succeeded",
            event_type="checkout.session.async_payment_succeeded",
            metadata=metadata,
        )
        record = await handle_event(session, succeeded)
        assert record.status == WebhookEventStatus.PROCESSED.value

        await session.refresh(free_account)
        assert free_account.plan == PlanTier.UNLIMITED

    @pytest.mark.asyncio
    async def test_async_failure_is_recorded(self, session: AsyncSession, free_account: Account):
        event = make_checkout_event(
            event_type="checkout.session.async_payment_failed",
            payment_status="unpaid",
            metadata={"plan": "standard", "account_id": free_account.id},
        )
        await handle_event(session, event)

        payments = await get_payments(session)
        assert [p.status for p in payments] == ["failed"]
        await session.refresh(free_account)
        assert free_account.plan == PlanTier.FREE

    @pytest.mark.asyncio
    async def test_other_events_are_ignored(self, session: AsyncSession):
        record = await handle_event(session, {"id": "evt_other", "type": "customer.created", "data": {"object": {}}})
        assert record.status == WebhookEventStatus.IGNORED.value

    @pytest.mark.asyncio
    async def test_processing_failure_is_recorded(self, session: AsyncSession):
        event = make_checkout_event(event_id="evt_bad", metadata={"plan": "standard"})

        record = await handle_event(session, event)

        assert record.status == WebhookEventStatus.FAILED.value
        assert "no known account" in (record.last_error or "")
        stored = (await session.execute(select(WebhookEvent))).scalar_one()
        assert stored.event_id == "evt_bad"
        assert stored.payload is not None

    @pytest.mark.asyncio
    async def test_failed_event_is_retried(self, session: AsyncSession, free_account: Account):
        broken = make_checkout_event(event_id="evt_retry", metadata={"plan": "unknown"})
        assert (await handle_event(session, broken)).status == WebhookEventStatus.FAILED.value

        fixed = make_checkout_event(
            event_id="evt_retry", metadata={"plan": "standard", "account_id": free_account.id}
        )
        assert (await handle_event(session, fixed)).status == WebhookEventStatus.PROCESSED.value

    @pytest.mark.asyncio
    async def test_malformed_event(self, session: AsyncSession):
        with pytest.raises(CheckoutError):
            await handle_event(session, {"type": "checkout.session.completed"})


class TestCreateCheckoutSession:
    @pytest.mark.asyncio
    async def test_creates_payment_session(self, free_account: Account):
        stripe_session = MagicMock(id="cs_created", url="https://checkout.stripe.com/c/pay/cs_created")
        with patch(
            "claimease.services.checkout.stripe.checkout.Session.create", return_value=stripe_session
        ) as mock_create:
            checkout = await create_checkout_session(free_account, "standard")

        assert checkout.session_id == "cs_created"
        assert checkout.checkout_url == stripe_session.url

        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["line_items"] == [{"price": "price_standard_test", "quantity": 1}]
        assert kwargs["metadata"]["account_id"] == free_account.id
        assert kwargs["metadata"]["plan"] == "standard"
        assert kwargs["metadata"]["previous_plan"] == "free"
        assert kwargs["customer_email"] == free_account.email

    @pytest.mark.asyncio
    async def test_rejects_current_plan(self, unlimited_account: Account):
        with pytest.raises(CheckoutError):
            await create_checkout_session(unlimited_account, "pro")

    @pytest.mark.asyncio
    async def test_rejects_unknown_plan(self, free_account: Account):
        with pytest.raises(CheckoutError):
            await create_checkout_session(free_account, "platinum")

    @pytest.mark.asyncio
    async def test_wraps_stripe_errors(self, free_account: Account):
        with patch(
            "claimease.services.checkout.stripe.checkout.Session.create",
            side_effect=stripe.InvalidRequestError("No such price", param="line_items"),
        ):
            with pytest.raises(CheckoutError):
                await create_checkout_session(free_account, "pro")


    @pytest.mark.asyncio
    async def test_guest_session_carries_only_email(self):
        stripe_session = MagicMock(id="cs_guest", url="https://checkout.stripe.com/c/pay/cs_guest")
        with patch(
            "claimease.services.checkout.stripe.checkout.Session.create", return_value=stripe_session
        ) as mock_create:
            checkout = await create_guest_checkout_session("visitor@example.com", "pro")

        assert checkout.session_id == "cs_guest"
        kwargs = mock_create.call_args.kwargs
        assert kwargs["metadata"] == {"email": "visitor@example.com", "plan": "pro"}
        assert kwargs["customer_email"] == "visitor@example.com"
        assert "client_reference_id" not in kwargs


class TestCheckoutStatus:
    @pytest.mark.asyncio
    async def test_reconciled_session_answers_from_ledger(self, session: AsyncSession, free_account: Account):
        await reconcile_payment(
            session, PaymentConfirmation(transaction_id="cs_paid", tier=PlanTier.UNLIMITED, account_id=free_account.id)
        )

        with patch("claimease.services.checkout.stripe.checkout.Session.retrieve") as mock_retrieve:
            status = await get_checkout_status(session, "cs_paid")

        assert status.status == "completed"
        assert status.tier == "unlimited"
        mock_retrieve.assert_not_called()

    @pytest.mark.asyncio
    async def test_foreign_session_is_not_found(self, session: AsyncSession):
        with patch(
            "claimease.services.checkout.stripe.checkout.Session.retrieve",
            return_value={"id": "cs_other", "payment_status": "paid", "metadata": {}},
        ):
            with pytest.raises(CheckoutSessionNotFoundError):
                await get_checkout_status(session, "cs_other")

    @pytest.mark.asyncio
    async def test_stripe_outage_is_a_checkout_error(self, session: AsyncSession):
        with patch(
            "claimease.services.checkout.stripe.checkout.Session.retrieve",
            side_effect=stripe.AuthenticationError("Invalid API key"),
        ):
            with pytest.raises(CheckoutError) as exc_info:
                await get_checkout_status(session, "cs_any")
        assert not isinstance(exc_info.value, CheckoutSessionNotFoundError)


def test_upgrade_plans():
    assert upgrade_plans(Account(email="x@example.com")) == ["standard", "pro"]
    assert upgrade_plans(Account(email="y@example.com", plan=PlanTier.UNLIMITED)) == ["standard"]
