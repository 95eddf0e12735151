"""Main API router that aggregates all route modules."""

from fastapi import APIRouter

from claimease.api import auth, checkout, claims, health, suggestions

api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(claims.router, prefix="/claims", tags=["claims"])
api_router.include_router(checkout.router, prefix="/checkout", tags=["checkout"])
api_router.include_router(suggestions.router, prefix="/suggestions", tags=["suggestions"])
