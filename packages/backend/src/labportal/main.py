"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan builds the session core and the change-feed
subscriber, wires them to the hosted backend, and hangs them on
app.state where the routes pick them up.

    GoTrueAuthBackend ─┐   (session persisted via RedisSessionStorage)
    SqlRecordStore ────┼─▶ SessionMonitor      (app.state.monitor)
    RouteNavigator ────┘
    SqlRecordStore ────┬─▶ ChangeFeedSubscriber (app.state.feeds)
    RedisChangeChannel ┘
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from labportal import __version__
from labportal.api import api_router
from labportal.config import settings
from labportal.core.backend import RouteNavigator
from labportal.core.changefeed import ChangeFeedSubscriber
from labportal.core.guard import ReentrancyGuard
from labportal.core.profile import ProfileResolver
from labportal.core.session import SessionMonitor
from labportal.db.engine import async_session_factory, engine
from labportal.remote.auth import GoTrueAuthBackend
from labportal.remote.channel import RedisChangeChannel
from labportal.remote.records import SqlRecordStore
from labportal.remote.storage import RedisSessionStorage

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown. Live views are closed before the session core stops so no
    refetch outlives the store.
    """
    logger.info(
        "labportal.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await redis.ping()
        logger.info("labportal.redis_connected", url=settings.redis_url)
    except Exception as e:
        # Views still mount and fetch; they just won't update live
        logger.warning("labportal.redis_unavailable", error=str(e))

    auth = GoTrueAuthBackend(
        base_url=settings.supabase_url,
        anon_key=settings.supabase_anon_key,
        jwt_secret=settings.jwt_secret,
        jwt_algorithm=settings.jwt_algorithm,
        timeout=settings.http_timeout_seconds,
        cache_seconds=settings.session_cache_seconds,
        refresh_margin_seconds=settings.token_refresh_margin_seconds,
        storage=RedisSessionStorage(redis, settings.session_storage_key),
    )
    store = SqlRecordStore(async_session_factory)
    monitor = SessionMonitor(
        auth=auth,
        resolver=ProfileResolver(store, retry_delays=settings.profile_retry_delays),
        navigator=RouteNavigator(settings.home_route),
        guard=ReentrancyGuard(settings.session_guard_release_seconds),
        sign_in_route=settings.sign_in_route,
        auth_flow_routes=settings.auth_flow_routes,
    )
    await monitor.start()
    auth.start_auto_refresh()
    logger.info("labportal.session_core_started", status=monitor.status.value)

    feeds = ChangeFeedSubscriber(
        store, RedisChangeChannel(redis), queue_size=settings.change_queue_size
    )

    app.state.monitor = monitor
    app.state.feeds = feeds

    yield

    # Shutdown
    logger.info("labportal.shutdown")

    await feeds.close_all()
    await monitor.stop()
    await auth.aclose()
    await redis.aclose()
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Lab Portal",
        description="Session and live-data core for the lab results portal",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount API routes
    app.include_router(api_router)

    # Mount WebSocket route (live views)
    from labportal.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: labportal.main:app)
app = create_app()
