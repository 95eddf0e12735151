"""FastAPI application entrypoint."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from claimease.api.middleware import AccessLogMiddleware, RequestIDMiddleware
from claimease.api.router import api_router
from claimease.api.utils import APIError
from claimease.config import settings
from claimease.database import close_db
from claimease.schemas import ErrorResponse

logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking
if settings.sentry_dsn:
    import sentry_sdk

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=0.1 if settings.is_production else 1.0,
        send_default_pii=False,
    )
    logger.info("Sentry initialized")


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Schema is managed by Alembic migrations
    logger.info(f"ClaimEase API starting ({settings.environment}, store={settings.store_backend})")
    yield
    await close_db()


app = FastAPI(
    title="ClaimEase API",
    description="PIP claim drafting: accounts, entitlements, checkout and AI answer rewriting",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
    openapi_url="/api/openapi.json" if settings.debug_enabled else None,
)


@app.exception_handler(APIError)
async def api_error_handler(_request: Request, exc: APIError) -> JSONResponse:
    """Render coded errors as ``{detail, code}``."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.detail, code=exc.code).model_dump(),
        headers=exc.headers,
    )


app.add_middleware(AccessLogMiddleware)  # type: ignore[arg-type]

# Request ID middleware wraps access logging so log lines carry the id
app.add_middleware(RequestIDMiddleware)  # type: ignore[arg-type]

# Credentials are allowed so the session cookie reaches the API from the frontend
app.add_middleware(
    CORSMiddleware,  # type: ignore[arg-type]
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)

app.include_router(api_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn

    from claimease.logging import get_uvicorn_log_config

    uvicorn.run(
        "claimease.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_config=get_uvicorn_log_config(),
    )
