"""Session tokens, session cookies and password handling."""

import re
from datetime import UTC, datetime, timedelta
from secrets import token_hex

import bcrypt
from fastapi import Response
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from claimease.config import settings
from claimease.models import Account, PlanTier
from claimease.services.entitlements import effective_tier


class AuthError(Exception):
    """Authentication error."""

    pass


def create_token(account: Account, session_id: str | None = None) -> str:
    """Create a signed session token for an account."""
    now = datetime.now(UTC)
    expires = now + timedelta(days=settings.session_expiration_days)
    payload = {
        "sub": str(account.id),
        "email": account.email,
        "name": account.name,
        "tier": effective_tier(account).value,
        "sid": session_id or token_hex(16),
        "exp": expires,
        "iat": now,
    }
    return jwt.encode(payload, settings.session_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a session token."""
    try:
        payload = jwt.decode(
            token,
            settings.session_secret,
            algorithms=[settings.jwt_algorithm],
        )
        return payload
    except JWTError as e:
        raise AuthError(f"Invalid token: {e}") from e


async def verify_token(session: AsyncSession, token: str) -> Account:
    """Verify a session token and return the associated account."""
    payload = decode_token(token)

    account_id = payload.get("sub")
    if not account_id:
        raise AuthError("Invalid token: missing account ID")

    stmt = select(Account).where(Account.id == account_id)
    result = await session.execute(stmt)
    account = result.scalar_one_or_none()

    if not account:
        raise AuthError("Account not found")

    return account


def refresh_token(token: str, account: Account) -> str:
    """Issue a new token for the same session with fresh account claims."""
    payload = decode_token(token)
    return create_token(account, session_id=payload.get("sid"))


def set_session_cookie(response: Response, token: str) -> None:
    """Attach the session token as an HTTP-only cookie."""
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_expiration_days * 24 * 60 * 60,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        domain=settings.session_cookie_domain if settings.is_production else None,
    )


def clear_session_cookie(response: Response) -> None:
    """Expire the session cookie immediately."""
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        domain=settings.session_cookie_domain if settings.is_production else None,
    )


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(settings.bcrypt_rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    """Check a password against a stored bcrypt hash."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def validate_password(password: str) -> str | None:
    """Return a user-facing reason the password is too weak, or None if acceptable."""
    if len(password) < 8:
        return "Password must be at least 8 characters long"
    if not re.search(r"[A-Z]", password):
        return "Password must contain at least one uppercase letter"
    if not re.search(r"[a-z]", password):
        return "Password must contain at least one lowercase letter"
    if not re.search(r"[0-9]", password):
        return "Password must contain at least one number"
    if not re.search(r"[!@#$%^&*(),.?\":{}|<>]", password):
        return "Password must contain at least one special character"
    return None


def default_name(email: str) -> str:
    return email.split("@")[0]


async def get_account_by_email(session: AsyncSession, email: str) -> Account | None:
    stmt = select(Account).where(Account.email == email)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_or_create_account(
    session: AsyncSession,
    email: str,
    name: str | None = None,
) -> tuple[Account, bool]:
    """Find an account by email, creating a Free one if missing.

    Returns:
        (account, created)
    """
    account = await get_account_by_email(session, email)
    if account:
        return account, False

    account = Account(email=email, name=name or default_name(email), plan=PlanTier.FREE)
    session.add(account)
    try:
        await session.flush()
    except IntegrityError:
        # Created concurrently by another request
        await session.rollback()
        existing = await get_account_by_email(session, email)
        if existing is None:
            raise
        return existing, False
    return account, True
