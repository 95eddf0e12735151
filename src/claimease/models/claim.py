"""Claim draft model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from claimease.models.base import TimestampMixin, generate_nanoid


class ClaimStatus(str, Enum):
    """Progress of a claim draft."""

    DRAFT = "draft"
    COMPLETED = "completed"


class Claim(TimestampMixin, SQLModel, table=True):
    """A PIP claim being drafted by an account holder."""

    __tablename__ = "claims"

    id: str = Field(default_factory=generate_nanoid, primary_key=True, max_length=21)
    account_id: str = Field(
        foreign_key="accounts.id", index=True, ondelete="CASCADE", max_length=21
    )
    title: str = Field(default="PIP claim", max_length=255)
    status: str = Field(default=ClaimStatus.DRAFT.value, max_length=20)
    answers: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))


class ClaimRead(SQLModel):
    """Schema for reading a claim draft."""

    id: str
    title: str
    status: ClaimStatus
    answers: dict[str, str]
    created_at: datetime
    updated_at: datetime


class ClaimUpdate(SQLModel):
    """Partial update for a claim draft. Answers are merged, not replaced."""

    title: str | None = Field(default=None, max_length=255)
    status: ClaimStatus | None = None
    answers: dict[str, str] | None = None
