"""Magic link token model."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from claimease.models.base import UTCDateTime, utcnow


class MagicLinkToken(SQLModel, table=True):
    """Single-use sign-in token bound to an email address."""

    __tablename__ = "magic_link_tokens"

    token: str = Field(primary_key=True, max_length=128, description="Random hex token")
    email: str = Field(index=True, max_length=255)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=UTCDateTime(),  # type: ignore[call-overload]
    )
    expires_at: datetime = Field(
        index=True,
        sa_type=UTCDateTime(),  # type: ignore[call-overload]
    )
    used: bool = Field(default=False)
    used_at: datetime | None = Field(
        default=None,
        sa_type=UTCDateTime(),  # type: ignore[call-overload]
    )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at
