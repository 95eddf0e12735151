"""FastAPI dependencies for dependency injection."""

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from claimease.config import settings
from claimease.database import get_session
from claimease.models import Account
from claimease.services.auth import AuthError, verify_token
from claimease.services.magic_link import MagicLinkService, build_magic_link_store
from claimease.services.rate_limit import (
    RateLimiter,
    RateLimitType,
    build_rate_limiter,
    get_client_ip,
    get_identifier,
    rate_limit_headers,
)

logger = logging.getLogger(__name__)

SessionDep = Annotated[AsyncSession, Depends(get_session)]

security = HTTPBearer(auto_error=False)


def get_session_token(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str | None:
    """Session token from the cookie, falling back to a bearer header."""
    cookie = request.cookies.get(settings.session_cookie_name)
    if cookie:
        return cookie
    if credentials:
        return credentials.credentials
    return None


SessionToken = Annotated[str | None, Depends(get_session_token)]


async def get_current_account(session: SessionDep, token: SessionToken) -> Account:
    """Get the authenticated account or raise 401."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await verify_token(session, token)
    except AuthError as e:
        logger.debug(f"Token verification failed: {e!r}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


CurrentUser = Annotated[Account, Depends(get_current_account)]


def get_rate_limiter(session: SessionDep) -> RateLimiter:
    return build_rate_limiter(session)


RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]


def get_magic_link_service(session: SessionDep, rate_limiter: RateLimiterDep) -> MagicLinkService:
    return MagicLinkService(build_magic_link_store(session), rate_limiter)


MagicLinkServiceDep = Annotated[MagicLinkService, Depends(get_magic_link_service)]


class RateLimitGuard:
    """Per-request rate limit check, called by the handler itself.

    Dependencies run before the request body is validated, so the hit is
    recorded from inside the handler: a request rejected with 422 never
    reaches the counter store.

    Usage:
        @router.post("/endpoint")
        async def endpoint(body: Body, rate_limit: RateLimitGuardDep):
            await rate_limit.enforce(RateLimitType.AUTH)
            ...
    """

    def __init__(self, request: Request, response: Response, rate_limiter: RateLimiter) -> None:
        self.request = request
        self.response = response
        self.rate_limiter = rate_limiter

    async def enforce(self, limit_type: RateLimitType, user_id: str | None = None) -> None:
        """Count this request against the client IP, or the account when given.

        Raises:
            HTTPException: 429 with ``Retry-After`` once the window is exhausted
        """
        identifier = get_identifier(get_client_ip(self.request), user_id)

        result = await self.rate_limiter.check(identifier, limit_type)
        headers = rate_limit_headers(result)

        if not result.success:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Rate limit exceeded. Please try again in {result.retry_after} seconds.",
                headers=headers,
            )
        self.response.headers.update(headers)


def get_rate_limit_guard(
    request: Request,
    response: Response,
    rate_limiter: RateLimiterDep,
) -> RateLimitGuard:
    return RateLimitGuard(request, response, rate_limiter)


RateLimitGuardDep = Annotated[RateLimitGuard, Depends(get_rate_limit_guard)]
