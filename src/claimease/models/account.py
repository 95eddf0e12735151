"""Account model and plan tiers."""

from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from claimease.models.base import TimestampMixin, UTCDateTime, generate_nanoid


class PlanTier(str, Enum):
    """Purchased entitlement level controlling the claim quota."""

    FREE = "free"
    SINGLE_CLAIM = "single_claim"
    UNLIMITED = "unlimited"


def enum_values(enum_cls: type[Enum]) -> list[str]:
    """Persist enum values rather than member names."""
    return [member.value for member in enum_cls]


class Account(TimestampMixin, SQLModel, table=True):
    """A claimant's account, plan and claim usage."""

    __tablename__ = "accounts"
    __table_args__ = (
        sa.CheckConstraint("claims_used >= 0", name="ck_accounts_claims_used_non_negative"),
    )

    id: str = Field(default_factory=generate_nanoid, primary_key=True, max_length=21)
    email: str = Field(unique=True, index=True, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    password_hash: str | None = Field(default=None, max_length=255)
    plan: PlanTier = Field(
        default=PlanTier.FREE,
        sa_type=sa.Enum(  # type: ignore[call-overload]
            PlanTier,
            native_enum=False,
            values_callable=enum_values,
            length=32,
        ),
    )
    claims_used: int = Field(default=0, ge=0)
    plan_expires_at: datetime | None = Field(
        default=None,
        sa_type=UTCDateTime(),  # type: ignore[call-overload]
        description="Absent for non-expiring plans",
    )
    stripe_customer_id: str | None = Field(default=None, max_length=255)


class AccountRead(SQLModel):
    """Schema for reading an account."""

    id: str
    email: str
    name: str | None
    tier: PlanTier
    claims_used: int
    claims_remaining: int | None = Field(description="None means unlimited")
    plan_expires_at: datetime | None
    created_at: datetime
