"""API route aggregation.

All routers registered here get mounted in main.py under /api/v1.

Learn: There is no per-request auth dependency here. The session core
is the portal's single signed-in user, so the session routes are the
auth surface themselves, and the live-view WebSocket checks the core's
state before mounting anything.
"""

from fastapi import APIRouter

from labportal.api.health import router as health_router
from labportal.api.session import router as session_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(session_router, tags=["session"])
