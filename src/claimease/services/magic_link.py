"""One-time sign-in links.

A token moves from issued to consumed exactly once. Expiry is a logical
state checked on verification. Expired rows are removed by the periodic
cleanup job, and the in-memory store also drops them as new tokens arrive.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta
from secrets import token_hex

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from claimease.config import settings
from claimease.models import MagicLinkToken, utcnow
from claimease.services.rate_limit import (
    MEMORY_SWEEP_INTERVAL,
    RateLimitedError,
    RateLimiter,
    RateLimitType,
)

logger = logging.getLogger(__name__)

# 32 random bytes, hex encoded
TOKEN_BYTES = 32


class MagicLinkError(Exception):
    """Base class for verification failures."""

    code = "invalid_token"
    message = "Invalid or expired magic link"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class TokenNotFoundError(MagicLinkError):
    """No token with that value exists."""


class EmailMismatchError(MagicLinkError):
    """The token exists but was issued for a different address."""


class TokenAlreadyUsedError(MagicLinkError):
    code = "token_used"
    message = "This magic link has already been used. Please request a new one."


class TokenExpiredError(MagicLinkError):
    code = "token_expired"
    message = "This magic link has expired. Please request a new one."


def mask_token(token: str) -> str:
    """Shorten a token for log output."""
    return f"{token[:8]}..."


class MagicLinkStore(ABC):
    """Persistence for magic link tokens."""

    @abstractmethod
    async def add(self, record: MagicLinkToken) -> None:
        """Persist a newly issued token."""

    @abstractmethod
    async def get(self, token: str) -> MagicLinkToken | None:
        """Look up a token by value."""

    @abstractmethod
    async def mark_used(self, token: str, now: datetime) -> bool:
        """Flip ``used`` from false to true.

        Returns True only for the single caller that performed the flip.
        """

    @abstractmethod
    async def delete_expired(self, before: datetime) -> int:
        """Delete tokens that expired before the given time."""


def _copy_token(record: MagicLinkToken) -> MagicLinkToken:
    return MagicLinkToken(
        token=record.token,
        email=record.email,
        created_at=record.created_at,
        expires_at=record.expires_at,
        used=record.used,
        used_at=record.used_at,
    )


class InMemoryMagicLinkStore(MagicLinkStore):
    """Token store for tests and single-instance development servers."""

    def __init__(self) -> None:
        self._tokens: dict[str, MagicLinkToken] = {}
        self._lock = asyncio.Lock()
        self._next_sweep: datetime | None = None

    def __len__(self) -> int:
        return len(self._tokens)

    async def add(self, record: MagicLinkToken) -> None:
        async with self._lock:
            # The purge job runs in the worker process and never sees this dict
            now = record.created_at
            if self._next_sweep is None or now >= self._next_sweep:
                self._sweep(now)
            self._tokens[record.token] = _copy_token(record)

    async def get(self, token: str) -> MagicLinkToken | None:
        async with self._lock:
            record = self._tokens.get(token)
            return _copy_token(record) if record else None

    async def mark_used(self, token: str, now: datetime) -> bool:
        async with self._lock:
            record = self._tokens.get(token)
            if record is None or record.used:
                return False
            record.used = True
            record.used_at = now
            return True

    async def delete_expired(self, before: datetime) -> int:
        async with self._lock:
            return self._sweep(before)

    def _sweep(self, before: datetime) -> int:
        expired = [key for key, record in self._tokens.items() if record.expires_at < before]
        for key in expired:
            del self._tokens[key]
        self._next_sweep = before + MEMORY_SWEEP_INTERVAL
        return len(expired)

    def clear(self) -> None:
        self._tokens.clear()
        self._next_sweep = None


class DatabaseMagicLinkStore(MagicLinkStore):
    """Token store backed by the ``magic_link_tokens`` table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, record: MagicLinkToken) -> None:
        self.session.add(record)
        await self.session.commit()

    async def get(self, token: str) -> MagicLinkToken | None:
        stmt = (
            select(MagicLinkToken)
            .where(MagicLinkToken.token == token)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_used(self, token: str, now: datetime) -> bool:
        # The row lock taken by this UPDATE serializes concurrent verifications;
        # the loser re-evaluates "used = false" and matches nothing.
        stmt = (
            update(MagicLinkToken)
            .where(MagicLinkToken.token == token, MagicLinkToken.used.is_(False))  # type: ignore[attr-defined]
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def delete_expired(self, before: datetime) -> int:
        stmt = delete(MagicLinkToken).where(MagicLinkToken.expires_at < before)  # type: ignore[arg-type]
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]


# Process-wide store for the memory backend
_memory_store = InMemoryMagicLinkStore()


def get_memory_store() -> InMemoryMagicLinkStore:
    """Get the global in-memory token store."""
    return _memory_store


def build_magic_link_store(session: AsyncSession) -> MagicLinkStore:
    """Select the token store for the configured store backend."""
    if settings.store_backend == "database":
        return DatabaseMagicLinkStore(session)
    return _memory_store


class MagicLinkService:
    """Issues and redeems magic link tokens."""

    def __init__(
        self,
        store: MagicLinkStore,
        rate_limiter: RateLimiter,
        clock: Callable[[], datetime] = utcnow,
        expiration_minutes: int | None = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.expiration = timedelta(
            minutes=expiration_minutes or settings.magic_link_expiration_minutes
        )

    async def issue(self, email: str) -> MagicLinkToken:
        """Create a token for an email address.

        Raises:
            RateLimitedError: If the address has requested too many links this window
        """
        now = self.clock()
        result = await self.rate_limiter.check(email, RateLimitType.MAGIC_LINK, now=now)
        if not result.success:
            logger.warning(f"Magic link rate limit hit for {email}")
            raise RateLimitedError(result)

        record = MagicLinkToken(
            token=token_hex(TOKEN_BYTES),
            email=email,
            created_at=now,
            expires_at=now + self.expiration,
        )
        await self.store.add(record)
        logger.info(f"Magic link issued for {email}: {mask_token(record.token)}")
        return record

    async def verify(self, token: str, email: str) -> MagicLinkToken:
        """Redeem a token for the given email. Succeeds at most once per token.

        Raises:
            TokenNotFoundError: Unknown token
            EmailMismatchError: Token was issued for another address
            TokenAlreadyUsedError: Token was already redeemed
            TokenExpiredError: Token is past its expiry
        """
        now = self.clock()
        record = await self.store.get(token)

        if record is None:
            logger.info(f"Magic link not found: {mask_token(token)}")
            raise TokenNotFoundError()

        if record.email != email:
            logger.info(f"Magic link email mismatch for {mask_token(token)}")
            raise EmailMismatchError()

        if record.used:
            logger.info(f"Magic link already used: {mask_token(token)}")
            raise TokenAlreadyUsedError()

        if record.is_expired(now):
            logger.info(f"Magic link expired: {mask_token(token)}")
            raise TokenExpiredError()

        if not await self.store.mark_used(token, now):
            logger.info(f"Magic link redeemed concurrently: {mask_token(token)}")
            raise TokenAlreadyUsedError()

        record.used = True
        record.used_at = now
        logger.info(f"Magic link verified for {email}")
        return record

    async def cleanup(self, now: datetime | None = None) -> int:
        """Delete expired tokens regardless of whether they were used."""
        return await self.store.delete_expired(now or self.clock())
