"""Fixed-window rate limiting with in-memory and database adapters."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from fastapi import Request
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from claimease.config import settings
from claimease.models import RateLimitCounter, utcnow


class RateLimitType(str, Enum):
    """Rate limit types for different endpoint categories."""

    MAGIC_LINK = "magic_link"
    AUTH = "auth"
    CHECKOUT = "checkout"
    SUGGEST = "suggest"


@dataclass
class RateLimitConfig:
    """Configuration for a rate limit type."""

    requests: int
    window_seconds: int


# Magic link issuance is keyed by email, the others by client IP or user
RATE_LIMIT_CONFIG: dict[RateLimitType, RateLimitConfig] = {
    RateLimitType.MAGIC_LINK: RateLimitConfig(
        requests=settings.magic_link_rate_limit,
        window_seconds=settings.magic_link_rate_window_seconds,
    ),
    RateLimitType.AUTH: RateLimitConfig(requests=10, window_seconds=60),
    RateLimitType.CHECKOUT: RateLimitConfig(requests=20, window_seconds=60),
    RateLimitType.SUGGEST: RateLimitConfig(requests=20, window_seconds=60),
}

# How often the in-memory limiter and token store drop finished entries
MEMORY_SWEEP_INTERVAL = timedelta(minutes=1)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    success: bool
    limit: int
    remaining: int
    reset: int  # Unix timestamp in seconds
    checked_at: int | None = None  # Unix timestamp the check was evaluated at

    @property
    def retry_after(self) -> int:
        checked_at = self.checked_at if self.checked_at is not None else int(utcnow().timestamp())
        return max(0, self.reset - checked_at)


class RateLimitedError(Exception):
    """Raised when an identity has exhausted its allowance for the window."""

    def __init__(self, result: RateLimitResult):
        self.result = result
        super().__init__(f"Rate limit exceeded, retry after {result.retry_after}s")

    @property
    def retry_after(self) -> int:
        return self.result.retry_after


class RateLimiter(ABC):
    """Fixed window: the first hit opens the window, which resets on wall-clock expiry."""

    @abstractmethod
    async def check(
        self,
        identifier: str,
        limit_type: RateLimitType,
        now: datetime | None = None,
    ) -> RateLimitResult:
        """Record a hit for an identifier and report whether it is allowed."""

    @abstractmethod
    async def cleanup_old_entries(self, now: datetime | None = None) -> int:
        """Remove counters whose window has ended. Returns the number removed."""

    @staticmethod
    def _key(identifier: str, limit_type: RateLimitType) -> str:
        return f"{limit_type.value}:{identifier}"


class InMemoryRateLimiter(RateLimiter):
    """In-process counters.

    Note: Counters are lost on restart and are per process, so multiple
    instances each enforce their own ceiling. Use the database limiter there.
    """

    def __init__(self) -> None:
        # key -> (count, window_reset_at)
        self._counters: dict[str, tuple[int, datetime]] = {}
        self._lock = asyncio.Lock()
        self._next_sweep: datetime | None = None

    def __len__(self) -> int:
        return len(self._counters)

    async def check(
        self,
        identifier: str,
        limit_type: RateLimitType,
        now: datetime | None = None,
    ) -> RateLimitResult:
        config = RATE_LIMIT_CONFIG[limit_type]
        key = self._key(identifier, limit_type)
        now = now or utcnow()

        async with self._lock:
            # The purge job runs in the worker process and never sees this dict
            if self._next_sweep is None or now >= self._next_sweep:
                self._sweep(now)

            count, reset_at = self._counters.get(key, (0, now))
            if now >= reset_at:
                count, reset_at = 0, now + timedelta(seconds=config.window_seconds)

            if count >= config.requests:
                return RateLimitResult(
                    success=False,
                    limit=config.requests,
                    remaining=0,
                    reset=int(reset_at.timestamp()),
                    checked_at=int(now.timestamp()),
                )

            count += 1
            self._counters[key] = (count, reset_at)
            return RateLimitResult(
                success=True,
                limit=config.requests,
                remaining=config.requests - count,
                reset=int(reset_at.timestamp()),
                checked_at=int(now.timestamp()),
            )

    def _sweep(self, now: datetime) -> int:
        expired = [key for key, (_, reset_at) in self._counters.items() if now >= reset_at]
        for key in expired:
            del self._counters[key]
        self._next_sweep = now + MEMORY_SWEEP_INTERVAL
        return len(expired)

    def reset(self) -> None:
        """Reset all rate limit entries. Useful for testing."""
        self._counters.clear()
        self._next_sweep = None

    async def cleanup_old_entries(self, now: datetime | None = None) -> int:
        async with self._lock:
            return self._sweep(now or utcnow())


class DatabaseRateLimiter(RateLimiter):
    """Counters in the ``rate_limit_counters`` table, shared by all instances.

    Each hit is a conditional UPDATE, so the ceiling holds under concurrent
    requests without application-level locking.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def check(
        self,
        identifier: str,
        limit_type: RateLimitType,
        now: datetime | None = None,
    ) -> RateLimitResult:
        config = RATE_LIMIT_CONFIG[limit_type]
        key = self._key(identifier, limit_type)
        now = now or utcnow()
        new_reset = now + timedelta(seconds=config.window_seconds)

        # Hit within an open window that still has room
        result = await self.session.execute(
            update(RateLimitCounter)
            .where(
                RateLimitCounter.key == key,
                RateLimitCounter.window_reset_at > now,
                RateLimitCounter.count < config.requests,
            )
            .values(count=RateLimitCounter.count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            # Window has rolled over: start a fresh one
            result = await self.session.execute(
                update(RateLimitCounter)
                .where(RateLimitCounter.key == key, RateLimitCounter.window_reset_at <= now)
                .values(count=1, window_reset_at=new_reset)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            existing = await self._get(key)
            if existing is not None:
                await self.session.commit()
                return RateLimitResult(
                    success=False,
                    limit=config.requests,
                    remaining=0,
                    reset=int(existing.window_reset_at.timestamp()),
                    checked_at=int(now.timestamp()),
                )
            self.session.add(RateLimitCounter(key=key, count=1, window_reset_at=new_reset))
            try:
                await self.session.commit()
            except IntegrityError:
                # Another request created the row first; count against it
                await self.session.rollback()
                return await self.check(identifier, limit_type, now)
        else:
            await self.session.commit()

        counter = await self._get(key)
        count = counter.count if counter else 1
        reset_at = counter.window_reset_at if counter else new_reset
        return RateLimitResult(
            success=True,
            limit=config.requests,
            remaining=max(0, config.requests - count),
            reset=int(reset_at.timestamp()),
            checked_at=int(now.timestamp()),
        )

    async def _get(self, key: str) -> RateLimitCounter | None:
        stmt = (
            select(RateLimitCounter)
            .where(RateLimitCounter.key == key)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def cleanup_old_entries(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        result = await self.session.execute(
            delete(RateLimitCounter).where(RateLimitCounter.window_reset_at <= now)
        )
        await self.session.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]


# Process-wide limiter for the memory backend
_rate_limiter = InMemoryRateLimiter()


def get_memory_rate_limiter() -> InMemoryRateLimiter:
    """Get the global in-memory rate limiter instance."""
    return _rate_limiter


def build_rate_limiter(session: AsyncSession) -> RateLimiter:
    """Select the limiter for the configured store backend."""
    if settings.store_backend == "database":
        return DatabaseRateLimiter(session)
    return _rate_limiter


def get_client_ip(request: Request) -> str | None:
    """Extract client IP from request headers.

    Checks common headers used by proxies and load balancers.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # x-forwarded-for can be a comma-separated list, take the first IP
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    cf_connecting_ip = request.headers.get("cf-connecting-ip")
    if cf_connecting_ip:
        return cf_connecting_ip.strip()

    if request.client:
        return request.client.host

    return None


def get_identifier(
    ip: str | None,
    user_id: str | None = None,
) -> str:
    """Get identifier for rate limiting.

    Prefers user ID for authenticated requests, falls back to IP address.
    """
    if user_id:
        return f"user:{user_id}"
    return f"ip:{ip or 'unknown'}"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Generate rate limit headers for response."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset),
    }

    if not result.success:
        headers["Retry-After"] = str(result.retry_after)

    return headers
