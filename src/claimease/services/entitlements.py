"""Plan tiers, claim quotas and the atomic claim-start operation.

The pure helpers (``can_start_claim``, ``record_claim_started``, ``set_tier``)
work on an in-memory ``Account``. ``start_claim`` is what request handlers
use: it folds the quota check and the increment into one conditional UPDATE
so two concurrent requests can never both consume the last claim.
"""

import logging
from datetime import datetime

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from claimease.models import Account, AccountRead, PlanTier, utcnow

logger = logging.getLogger(__name__)

# None means unbounded
PLAN_QUOTAS: dict[PlanTier, int | None] = {
    PlanTier.FREE: 0,
    PlanTier.SINGLE_CLAIM: 1,
    PlanTier.UNLIMITED: None,
}


class ClaimLimitReachedError(Exception):
    """Raised when an account has no claims left on its plan."""

    def __init__(self, account: Account):
        self.account = account
        super().__init__(f"Account {account.id} has no claims remaining on plan {account.plan}")


def quota(tier: PlanTier | str) -> int | None:
    """Number of claims a tier allows, or None for unlimited."""
    return PLAN_QUOTAS[PlanTier(tier)]


def plan_is_expired(account: Account, now: datetime | None = None) -> bool:
    """Check whether a time-limited plan has lapsed."""
    if account.plan_expires_at is None:
        return False
    return (now or utcnow()) > account.plan_expires_at


def effective_tier(account: Account, now: datetime | None = None) -> PlanTier:
    """The tier currently in force; lapsed plans fall back to Free."""
    if plan_is_expired(account, now):
        return PlanTier.FREE
    return PlanTier(account.plan)


def can_start_claim(account: Account, now: datetime | None = None) -> bool:
    """Check whether the account may start another claim. Has no side effects."""
    limit = quota(effective_tier(account, now))
    if limit is None:
        return True
    return account.claims_used < limit


def claims_remaining(account: Account, now: datetime | None = None) -> int | None:
    """Claims left on the current plan, or None when unlimited."""
    limit = quota(effective_tier(account, now))
    if limit is None:
        return None
    return max(0, limit - account.claims_used)


def record_claim_started(account: Account) -> Account:
    """Count a started claim against the account.

    Callers must check ``can_start_claim`` first; this does not enforce the
    quota. Use ``start_claim`` when the account is persisted.
    """
    account.claims_used += 1
    return account


def set_tier(
    account: Account,
    tier: PlanTier,
    expires_at: datetime | None = None,
) -> Account:
    """Replace the plan tier and expiry. Claim usage is left untouched."""
    account.plan = tier
    account.plan_expires_at = expires_at
    return account


def _entitled_clause(now: datetime):
    """SQL condition equivalent to ``can_start_claim`` for a stored account."""
    active = or_(Account.plan_expires_at.is_(None), Account.plan_expires_at >= now)
    per_tier = []
    for tier, limit in PLAN_QUOTAS.items():
        if limit is None:
            per_tier.append(and_(Account.plan == tier, active))
        elif limit > 0:
            per_tier.append(and_(Account.plan == tier, active, Account.claims_used < limit))
    # Lapsed plans behave as Free
    free_limit = PLAN_QUOTAS[PlanTier.FREE]
    if free_limit:
        per_tier.append(Account.claims_used < free_limit)
    return or_(*per_tier)


async def start_claim(
    session: AsyncSession,
    account: Account,
    now: datetime | None = None,
) -> Account:
    """Atomically check the quota and count a new claim.

    Raises:
        ClaimLimitReachedError: If the account is not entitled to another claim
    """
    now = now or utcnow()
    stmt = (
        update(Account)
        .where(Account.id == account.id, _entitled_clause(now))
        .values(claims_used=Account.claims_used + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.refresh(account)

    if result.rowcount != 1:  # type: ignore[attr-defined]
        logger.info(f"Claim start denied for account {account.id} (plan={account.plan})")
        raise ClaimLimitReachedError(account)

    logger.info(f"Claim started for account {account.id}, claims_used={account.claims_used}")
    return account


def to_account_read(account: Account, now: datetime | None = None) -> AccountRead:
    """Build the public view of an account with derived quota fields."""
    return AccountRead(
        id=account.id,
        email=account.email,
        name=account.name,
        tier=effective_tier(account, now),
        claims_used=account.claims_used,
        claims_remaining=claims_remaining(account, now),
        plan_expires_at=account.plan_expires_at,
        created_at=account.created_at,
    )
