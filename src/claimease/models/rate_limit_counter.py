"""Fixed-window rate limit counter model."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from claimease.models.base import UTCDateTime


class RateLimitCounter(SQLModel, table=True):
    """Attempts recorded for one identity within the current window."""

    __tablename__ = "rate_limit_counters"

    key: str = Field(primary_key=True, max_length=320, description="<limit type>:<identity>")
    count: int = Field(default=0)
    window_reset_at: datetime = Field(
        index=True,
        sa_type=UTCDateTime(),  # type: ignore[call-overload]
    )
