"""Entitlement tracker tests."""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from claimease.models import Account, PlanTier, utcnow
from claimease.services.entitlements import (
    ClaimLimitReachedError,
    can_start_claim,
    claims_remaining,
    effective_tier,
    quota,
    record_claim_started,
    set_tier,
    start_claim,
    to_account_read,
)


def make_account(plan: PlanTier = PlanTier.FREE, claims_used: int = 0, **fields) -> Account:
    return Account(email="claimant@example.com", plan=plan, claims_used=claims_used, **fields)


class TestQuota:
    def test_quotas(self):
        assert quota(PlanTier.FREE) == 0
        assert quota(PlanTier.SINGLE_CLAIM) == 1
        assert quota(PlanTier.UNLIMITED) is None

    def test_accepts_string_values(self):
        assert quota("single_claim") == 1


class TestCanStartClaim:
    def test_free_account_cannot_start(self):
        assert can_start_claim(make_account()) is False

    def test_single_claim_allows_one(self):
        account = make_account(PlanTier.SINGLE_CLAIM)
        assert can_start_claim(account) is True

        record_claim_started(account)
        assert account.claims_used == 1
        assert can_start_claim(account) is False

    def test_unlimited_always_allowed(self):
        account = make_account(PlanTier.UNLIMITED, claims_used=1000)
        assert can_start_claim(account) is True
        assert claims_remaining(account) is None

    def test_has_no_side_effects(self):
        account = make_account(PlanTier.SINGLE_CLAIM)
        can_start_claim(account)
        can_start_claim(account)
        assert account.claims_used == 0

    def test_expired_plan_behaves_as_free(self):
        now = utcnow()
        account = make_account(PlanTier.UNLIMITED, plan_expires_at=now - timedelta(seconds=1))
        assert effective_tier(account, now) == PlanTier.FREE
        assert can_start_claim(account, now) is False
        assert claims_remaining(account, now) == 0

    def test_plan_active_until_expiry(self):
        now = utcnow()
        account = make_account(PlanTier.SINGLE_CLAIM, plan_expires_at=now)
        assert effective_tier(account, now) == PlanTier.SINGLE_CLAIM


class TestSetTier:
    def test_upgrade_keeps_usage(self):
        account = make_account(PlanTier.SINGLE_CLAIM, claims_used=1)
        set_tier(account, PlanTier.UNLIMITED)
        assert account.claims_used == 1
        assert can_start_claim(account) is True

    def test_downgrade_leaves_no_claims(self):
        account = make_account(PlanTier.UNLIMITED, claims_used=3)
        set_tier(account, PlanTier.SINGLE_CLAIM)
        assert account.claims_used == 3
        assert claims_remaining(account) == 0
        assert can_start_claim(account) is False

    def test_reapplying_tier_refreshes_expiry_only(self):
        now = utcnow()
        account = make_account(PlanTier.SINGLE_CLAIM, claims_used=1, plan_expires_at=now)
        later = now + timedelta(days=365)
        set_tier(account, PlanTier.SINGLE_CLAIM, later)
        assert account.plan_expires_at == later
        assert account.claims_used == 1
        assert can_start_claim(account) is False


def test_free_to_single_to_denied_scenario():
    account = make_account()
    assert can_start_claim(account) is False

    set_tier(account, PlanTier.SINGLE_CLAIM)
    assert can_start_claim(account) is True

    record_claim_started(account)
    assert can_start_claim(account) is False
    assert claims_remaining(account) == 0


def test_to_account_read_derives_remaining():
    account = make_account(PlanTier.SINGLE_CLAIM)
    account.created_at = utcnow()
    read = to_account_read(account)
    assert read.tier == PlanTier.SINGLE_CLAIM
    assert read.claims_remaining == 1


class TestStartClaim:
    @pytest.mark.asyncio
    async def test_counts_claim(self, session: AsyncSession, single_claim_account: Account):
        account = await start_claim(session, single_claim_account)
        await session.commit()
        assert account.claims_used == 1

    @pytest.mark.asyncio
    async def test_denies_when_exhausted(self, session: AsyncSession, single_claim_account: Account):
        await start_claim(session, single_claim_account)
        await session.commit()

        with pytest.raises(ClaimLimitReachedError):
            await start_claim(session, single_claim_account)
        await session.rollback()

        await session.refresh(single_claim_account)
        assert single_claim_account.claims_used == 1

    @pytest.mark.asyncio
    async def test_denies_free(self, session: AsyncSession, free_account: Account):
        with pytest.raises(ClaimLimitReachedError):
            await start_claim(session, free_account)

    @pytest.mark.asyncio
    async def test_unlimited_keeps_counting(self, session: AsyncSession, unlimited_account: Account):
        for _ in range(3):
            await start_claim(session, unlimited_account)
        await session.commit()
        assert unlimited_account.claims_used == 3

    @pytest.mark.asyncio
    async def test_denies_expired_plan(self, session: AsyncSession, unlimited_account: Account):
        unlimited_account.plan_expires_at = utcnow() - timedelta(days=1)
        await session.commit()

        with pytest.raises(ClaimLimitReachedError):
            await start_claim(session, unlimited_account)

    @pytest.mark.asyncio
    async def test_uses_stored_usage_not_stale_copy(
        self, session: AsyncSession, session_factory, single_claim_account: Account
    ):
        # Another request consumes the claim through a different session
        async with session_factory() as other:
            stored = await other.get(Account, single_claim_account.id)
            assert stored is not None
            await start_claim(other, stored)
            await other.commit()

        assert single_claim_account.claims_used == 0
        with pytest.raises(ClaimLimitReachedError):
            await start_claim(session, single_claim_account)
        assert single_claim_account.claims_used == 1
