"""API routers for the readshare backend."""
from fastapi import APIRouter

from . import access, apikeys, deliveries, health, metric_events, notifications, realtime, users


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(users.router)
    api_router.include_router(apikeys.router)
    api_router.include_router(access.requests_router)
    api_router.include_router(access.permissions_router)
    api_router.include_router(metric_events.router)
    api_router.include_router(notifications.router)
    api_router.include_router(deliveries.router)
    api_router.include_router(realtime.router)
    return api_router
