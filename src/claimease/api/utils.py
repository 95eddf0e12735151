"""Shared API utilities."""

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from claimease.models import Account, Claim


class APIError(HTTPException):
    """HTTPException carrying a stable error ``code`` for the response body."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        code: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.code = code


async def get_owned_claim(claim_id: str, account: Account, session: AsyncSession) -> Claim:
    """Get a claim draft belonging to the account.

    Raises:
        HTTPException: 404 if the claim does not exist or belongs to someone else
    """
    stmt = select(Claim).where(Claim.id == claim_id, Claim.account_id == account.id)
    result = await session.execute(stmt)
    claim = result.scalar_one_or_none()

    if not claim:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Claim not found",
        )

    return claim
