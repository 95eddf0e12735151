"""Health check endpoints."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from claimease.api.deps import SessionDep
from claimease.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()


async def _database_ok(session) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e!r}")
        return False
    return True


@router.get("")
async def health_check():
    """Liveness: the process is serving requests."""
    return {"status": "ok"}


@router.get("/db")
async def health_check_db(session: SessionDep):
    """Health check with database connectivity."""
    if await _database_ok(session):
        return {"status": "ok", "database": "connected"}
    return JSONResponse(
        status_code=503,
        content={"status": "error", "database": "disconnected"},
    )


@router.get("/ready")
async def readiness_check(session: SessionDep):
    """Readiness: the database is reachable.

    Missing payment or AI keys degrade the status but do not fail the probe.
    """
    database_ok = await _database_ok(session)
    payments = settings.payments_enabled and bool(settings.stripe_webhook_secret)
    suggestions = bool(settings.openai_api_key)

    if not database_ok:
        overall = "error"
    elif payments and suggestions:
        overall = "ok"
    else:
        overall = "degraded"

    response = {
        "status": overall,
        "database": "connected" if database_ok else "disconnected",
        "store_backend": settings.store_backend,
        "payments_configured": payments,
        "suggestions_configured": suggestions,
    }
    if not database_ok:
        return JSONResponse(status_code=503, content=response)
    return response
