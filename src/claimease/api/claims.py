"""Claim drafts and the claim-start entitlement gate."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlmodel import select

from claimease.api.deps import CurrentUser, SessionDep
from claimease.api.utils import APIError, get_owned_claim
from claimease.models import Claim, ClaimRead, ClaimUpdate, PlanTier
from claimease.schemas import ErrorResponse, PaginatedResponse, PaginationParams
from claimease.services.checkout import upgrade_plans
from claimease.services.entitlements import (
    ClaimLimitReachedError,
    can_start_claim,
    claims_remaining,
    effective_tier,
    start_claim,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class EntitlementResponse(BaseModel):
    """Whether the account may start another claim, and how to unlock more."""

    allowed: bool
    tier: PlanTier
    claims_used: int
    claims_remaining: int | None = Field(description="None means unlimited")
    plan_expires_at: datetime | None
    upgrade_plans: list[str]


class ClaimCreate(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    answers: dict[str, str] = Field(default_factory=dict)


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_entitlement(user: CurrentUser):
    """Claim-start decision for the signed-in account. Read only."""
    return EntitlementResponse(
        allowed=can_start_claim(user),
        tier=effective_tier(user),
        claims_used=user.claims_used,
        claims_remaining=claims_remaining(user),
        plan_expires_at=user.plan_expires_at,
        upgrade_plans=upgrade_plans(user),
    )


@router.post(
    "",
    response_model=ClaimRead,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse}},
)
async def create_claim(body: ClaimCreate, user: CurrentUser, session: SessionDep):
    """Start a new claim, consuming one from the account's quota."""
    try:
        await start_claim(session, user)
    except ClaimLimitReachedError as e:
        await session.rollback()
        raise APIError(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your plan has no claims remaining. Upgrade to start a new claim.",
            code="upgrade_required",
        ) from e

    claim = Claim(account_id=user.id, answers=body.answers)
    if body.title:
        claim.title = body.title
    session.add(claim)
    await session.commit()
    await session.refresh(claim)

    logger.info(f"Claim {claim.id} created for account {user.id}")
    return ClaimRead.model_validate(claim)


@router.get("", response_model=PaginatedResponse[ClaimRead])
async def list_claims(
    user: CurrentUser,
    session: SessionDep,
    pagination: PaginationParams = Depends(),
):
    """List the account's claim drafts, newest first."""
    total = await session.scalar(
        select(func.count()).select_from(Claim).where(Claim.account_id == user.id)
    )
    stmt = (
        select(Claim)
        .where(Claim.account_id == user.id)
        .order_by(Claim.created_at.desc())  # type: ignore[attr-defined]
        .offset(pagination.offset)
        .limit(pagination.limit)
    )
    result = await session.execute(stmt)
    return PaginatedResponse[ClaimRead](
        items=[ClaimRead.model_validate(claim) for claim in result.scalars()],
        total=total or 0,
        offset=pagination.offset,
        limit=pagination.limit,
    )


@router.get("/{claim_id}", response_model=ClaimRead)
async def get_claim(claim_id: str, user: CurrentUser, session: SessionDep):
    """Get one claim draft."""
    claim = await get_owned_claim(claim_id, user, session)
    return ClaimRead.model_validate(claim)


@router.patch("/{claim_id}", response_model=ClaimRead)
async def update_claim(
    claim_id: str,
    body: ClaimUpdate,
    user: CurrentUser,
    session: SessionDep,
):
    """Save answers to a claim draft. Edits never consume quota."""
    claim = await get_owned_claim(claim_id, user, session)

    if body.title is not None:
        claim.title = body.title
    if body.status is not None:
        claim.status = body.status.value
    if body.answers:
        # Reassign so the JSON column is flagged dirty
        claim.answers = {**claim.answers, **body.answers}

    await session.commit()
    await session.refresh(claim)
    return ClaimRead.model_validate(claim)
