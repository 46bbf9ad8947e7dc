"""Health check endpoint.

Learn: Reports whether the record store (Postgres) and the change
channel (Redis) are reachable, plus whether the session core has
finished restoring.
"""

from fastapi import APIRouter, Request
from sqlalchemy import text

from labportal import __version__
from labportal.db.engine import engine

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["postgres"] = "ok"
    except Exception as e:
        checks["postgres"] = f"error: {e}"

    try:
        from redis.asyncio import from_url
        from labportal.config import settings

        r = from_url(settings.redis_url)
        await r.ping()
        await r.aclose()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    monitor = getattr(request.app.state, "monitor", None)
    checks["session_core"] = "ok" if monitor is not None and not monitor.loading else "starting"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
