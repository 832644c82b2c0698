"""Portal gate API router - aggregates all routes."""

from fastapi import APIRouter

from app.api import admin, auth, health, two_factor

api_router = APIRouter()

api_router.include_router(health.router)
api_router.include_router(auth.router)
api_router.include_router(two_factor.router)
api_router.include_router(admin.router)
