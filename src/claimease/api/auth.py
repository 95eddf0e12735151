"""Authentication endpoints: magic links, passwords and session cookies."""

import logging

from fastapi import APIRouter, HTTPException, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.exc import IntegrityError

from claimease.api.deps import (
    CurrentUser,
    MagicLinkServiceDep,
    RateLimitGuardDep,
    SessionDep,
    SessionToken,
)
from claimease.api.utils import APIError
from claimease.config import settings
from claimease.models import Account, AccountRead, PlanTier
from claimease.schemas import ErrorResponse, SuccessResponse
from claimease.services.auth import (
    AuthError,
    clear_session_cookie,
    create_token,
    default_name,
    get_account_by_email,
    get_or_create_account,
    hash_password,
    refresh_token,
    set_session_cookie,
    validate_password,
    verify_password,
)
from claimease.services.email import build_magic_link_url, email_service
from claimease.services.entitlements import to_account_read
from claimease.services.magic_link import MagicLinkError
from claimease.services.rate_limit import RateLimitedError, RateLimitType, rate_limit_headers

logger = logging.getLogger(__name__)

router = APIRouter()


class MagicLinkRequest(BaseModel):
    email: EmailStr


class MagicLinkResponse(BaseModel):
    success: bool = True
    message: str
    expires_in_minutes: int
    # Echoed outside production so the flow can be exercised without email
    magic_link: str | None = None


class VerifyRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)
    email: EmailStr


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(max_length=128)
    name: str | None = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(max_length=128)


class PasswordChangeRequest(BaseModel):
    current_password: str | None = Field(default=None, max_length=128)
    new_password: str = Field(max_length=128)


class AuthResponse(BaseModel):
    """Issued session. The token is also set as an HTTP-only cookie."""

    success: bool = True
    access_token: str
    token_type: str = "bearer"
    user: AccountRead


def _start_session(response: Response, account: Account) -> AuthResponse:
    token = create_token(account)
    set_session_cookie(response, token)
    return AuthResponse(access_token=token, user=to_account_read(account))


@router.post(
    "/magic-link",
    response_model=MagicLinkResponse,
    responses={429: {"model": ErrorResponse}},
)
async def request_magic_link(body: MagicLinkRequest, service: MagicLinkServiceDep):
    """Email a one-time sign-in link."""
    try:
        record = await service.issue(body.email)
    except RateLimitedError as e:
        raise APIError(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many sign-in links requested. Please try again later.",
            code="rate_limited",
            headers=rate_limit_headers(e.result),
        ) from e

    magic_link = build_magic_link_url(record.token, record.email)
    sent = await email_service.send_magic_link(to=record.email, magic_link=magic_link)
    if not sent and settings.is_production:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to send magic link email",
        )

    return MagicLinkResponse(
        message="Check your email for a sign-in link",
        expires_in_minutes=settings.magic_link_expiration_minutes,
        magic_link=None if settings.is_production else magic_link,
    )


@router.post(
    "/magic-link/verify",
    response_model=AuthResponse,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def verify_magic_link(
    body: VerifyRequest,
    response: Response,
    session: SessionDep,
    service: MagicLinkServiceDep,
    rate_limit: RateLimitGuardDep,
):
    """Redeem a magic link and start a session."""
    await rate_limit.enforce(RateLimitType.AUTH)
    try:
        await service.verify(body.token, body.email)
    except MagicLinkError as e:
        raise APIError(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
            code=e.code,
        ) from e

    account, created = await get_or_create_account(session, body.email)
    await session.commit()
    if created:
        logger.info(f"Account {account.id} created via magic link")

    return _start_session(response, account)


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def register(
    body: RegisterRequest,
    response: Response,
    session: SessionDep,
    rate_limit: RateLimitGuardDep,
):
    """Create a Free account with a password."""
    await rate_limit.enforce(RateLimitType.AUTH)
    if reason := validate_password(body.password):
        raise APIError(status_code=status.HTTP_400_BAD_REQUEST, detail=reason, code="weak_password")

    email_exists = APIError(
        status_code=status.HTTP_409_CONFLICT,
        detail="An account with this email already exists",
        code="email_exists",
    )
    if await get_account_by_email(session, body.email):
        raise email_exists

    account = Account(
        email=body.email,
        name=body.name or default_name(body.email),
        password_hash=hash_password(body.password),
        plan=PlanTier.FREE,
    )
    session.add(account)
    try:
        await session.commit()
    except IntegrityError as e:
        # Registered concurrently between the lookup and the insert
        await session.rollback()
        raise email_exists from e
    logger.info(f"Account {account.id} registered")

    return _start_session(response, account)


@router.post(
    "/login",
    response_model=AuthResponse,
    responses={401: {"model": ErrorResponse}},
)
async def login(
    body: LoginRequest,
    response: Response,
    session: SessionDep,
    rate_limit: RateLimitGuardDep,
):
    """Password sign-in. Every failure gets the same answer."""
    await rate_limit.enforce(RateLimitType.AUTH)
    account = await get_account_by_email(session, body.email)
    if account is None or not verify_password(body.password, account.password_hash):
        raise APIError(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            code="invalid_credentials",
        )

    return _start_session(response, account)


@router.post(
    "/password",
    response_model=SuccessResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def change_password(
    body: PasswordChangeRequest,
    user: CurrentUser,
    session: SessionDep,
    rate_limit: RateLimitGuardDep,
):
    """Set or change the account password.

    Accounts that already have a password must confirm it. Magic-link-only
    accounts can set their first password from a signed-in session.
    """
    await rate_limit.enforce(RateLimitType.AUTH, user_id=user.id)

    if user.password_hash and not verify_password(body.current_password or "", user.password_hash):
        raise APIError(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Current password is incorrect",
            code="invalid_credentials",
        )
    if reason := validate_password(body.new_password):
        raise APIError(status_code=status.HTTP_400_BAD_REQUEST, detail=reason, code="weak_password")

    user.password_hash = hash_password(body.new_password)
    session.add(user)
    await session.commit()
    logger.info(f"Password changed for account {user.id}")
    return SuccessResponse(message="Password updated")


@router.get("/me", response_model=AccountRead)
async def get_current_account_info(user: CurrentUser):
    """Get the signed-in account with its remaining claims."""
    return to_account_read(user)


@router.post("/logout", response_model=SuccessResponse)
async def logout(response: Response):
    """Clear the session cookie.

    Sessions are stateless; a copied bearer token stays valid until it expires.
    """
    clear_session_cookie(response)
    return SuccessResponse(message="Logged out successfully")


@router.post("/refresh", response_model=AuthResponse)
async def refresh(
    response: Response,
    user: CurrentUser,
    token: SessionToken,
    rate_limit: RateLimitGuardDep,
):
    """Reissue the session with fresh claims and a new expiry."""
    await rate_limit.enforce(RateLimitType.AUTH)
    try:
        new_token = refresh_token(token or "", user)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e

    set_session_cookie(response, new_token)
    return AuthResponse(access_token=new_token, user=to_account_read(user))
