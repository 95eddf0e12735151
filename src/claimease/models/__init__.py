"""SQLModel database models."""

from claimease.models.account import Account, AccountRead, PlanTier
from claimease.models.base import TimestampMixin, UTCDateTime, generate_nanoid, utcnow
from claimease.models.claim import Claim, ClaimRead, ClaimStatus, ClaimUpdate
from claimease.models.magic_link_token import MagicLinkToken
from claimease.models.payment import Payment, PaymentStatus, WebhookEvent, WebhookEventStatus
from claimease.models.rate_limit_counter import RateLimitCounter

__all__ = [
    "Account",
    "AccountRead",
    "Claim",
    "ClaimRead",
    "ClaimStatus",
    "ClaimUpdate",
    "MagicLinkToken",
    "Payment",
    "PaymentStatus",
    "PlanTier",
    "RateLimitCounter",
    "TimestampMixin",
    "UTCDateTime",
    "WebhookEvent",
    "WebhookEventStatus",
    "generate_nanoid",
    "utcnow",
]
