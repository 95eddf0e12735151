"""Maintenance background tasks for cleanup operations."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from claimease.database import get_session_context
from claimease.models import utcnow
from claimease.services.magic_link import build_magic_link_store
from claimease.services.rate_limit import build_rate_limiter

logger = logging.getLogger(__name__)

MAINTENANCE_TIMEOUT_SECONDS = 5 * 60


async def purge_expired(session: AsyncSession, now: datetime | None = None) -> dict[str, int]:
    """Delete expired magic-link tokens (used or not) and finished rate-limit windows."""
    now = now or utcnow()
    tokens_deleted = await build_magic_link_store(session).delete_expired(now)
    counters_deleted = await build_rate_limiter(session).cleanup_old_entries(now)
    return {"tokens_deleted": tokens_deleted, "counters_deleted": counters_deleted}


async def purge_expired_records(_ctx: dict[str, Any]) -> dict[str, Any]:
    """SAQ job wrapper around ``purge_expired``."""
    async with get_session_context() as session:
        try:
            result = await purge_expired(session)
        except Exception as e:
            error = f"Purge of expired records failed: {e}"
            logger.exception(error)
            await session.rollback()
            return {"success": False, "error": error}

    logger.info(
        f"Purged {result['tokens_deleted']} magic links and "
        f"{result['counters_deleted']} rate-limit counters"
    )
    return {"success": True, **result}


purge_expired_records.timeout = MAINTENANCE_TIMEOUT_SECONDS  # type: ignore[attr-defined]
