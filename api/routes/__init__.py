from __future__ import annotations

from fastapi import APIRouter

from api.routes import balances, donations, health, legs, notifications, solar_forge


def get_api_router() -> APIRouter:
    router = APIRouter()

    router.include_router(health.router, tags=["health"])
    router.include_router(legs.router, tags=["legs"])
    router.include_router(donations.router, tags=["donations"])
    router.include_router(balances.router, tags=["balances"])
    router.include_router(solar_forge.router, tags=["solar-forge"])
    router.include_router(notifications.router, tags=["notifications"])

    return router
