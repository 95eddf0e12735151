"""Payment ledger and webhook event log."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from claimease.models.base import UTCDateTime, generate_nanoid, utcnow


class PaymentStatus(str, Enum):
    """Outcome of a checkout."""

    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEventStatus(str, Enum):
    """Processing state of a received webhook event."""

    PROCESSING = "processing"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class Payment(SQLModel, table=True):
    """One row per external transaction; the unique id makes reconciliation idempotent."""

    __tablename__ = "payments"

    id: str = Field(default_factory=generate_nanoid, primary_key=True, max_length=21)
    transaction_id: str = Field(unique=True, index=True, max_length=255)
    account_id: str | None = Field(
        default=None, foreign_key="accounts.id", index=True, ondelete="SET NULL", max_length=21
    )
    email: str | None = Field(default=None, max_length=255)
    previous_plan: str | None = Field(default=None, max_length=32)
    plan: str = Field(max_length=32)
    amount_total: int | None = Field(default=None, description="Minor currency units")
    currency: str | None = Field(default=None, max_length=3)
    status: str = Field(default=PaymentStatus.COMPLETED.value, max_length=20)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=UTCDateTime(),  # type: ignore[call-overload]
    )


class WebhookEvent(SQLModel, table=True):
    """Received payment-provider event, kept for operator follow-up."""

    __tablename__ = "webhook_events"

    id: str = Field(default_factory=generate_nanoid, primary_key=True, max_length=21)
    event_id: str = Field(unique=True, index=True, max_length=255)
    event_type: str = Field(max_length=100)
    status: str = Field(default=WebhookEventStatus.PROCESSING.value, max_length=20, index=True)
    last_error: str | None = Field(default=None)
    payload: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    received_at: datetime = Field(
        default_factory=utcnow,
        sa_type=UTCDateTime(),  # type: ignore[call-overload]
    )
    processed_at: datetime | None = Field(
        default=None,
        sa_type=UTCDateTime(),  # type: ignore[call-overload]
    )
