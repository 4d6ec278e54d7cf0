"""FastAPI application entrypoint.

Configures CORS, includes routers, exposes a healthcheck endpoint and starts
the Redis relay that feeds worker notifications to WebSocket clients.
"""

import asyncio
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import notifications as notifications_router  # Dashboard WebSocket
from .routers import shopify_sync as shopify_sync_router  # Historical sync + webhook registration
from .routers import shopify_webhooks as shopify_webhooks_router  # Order, refund and compliance webhooks
from .services.notification_bus import notification_bus, run_redis_relay
from .telemetry import init_observability
from .workers.arq_enqueue import reset_arq_pool
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401

RELAY_RECONNECT_SECONDS = 5


async def _relay_forever(redis_url: str, channel: str) -> None:
    """Keep the Redis notification relay running across Redis restarts."""
    while True:
        try:
            await run_redis_relay(redis_url, notification_bus, channel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[NOTIFY] Relay disconnected: {e}; reconnecting in {RELAY_RECONNECT_SECONDS}s")
            await asyncio.sleep(RELAY_RECONNECT_SECONDS)


def create_app() -> FastAPI:
    app = FastAPI(
        title="shopsync API",
        description="""
        Shopify order ingestion and revenue aggregation.

        This API provides endpoints for:
        - Shopify order, refund and compliance webhooks (HMAC-verified)
        - Historical order backfill and webhook registration per brand
        - Real-time revenue notifications over WebSocket

        ## Authentication

        Sync endpoints use JWT-based authentication with an HTTP-only
        `access_token` cookie. Webhooks are authenticated by Shopify's HMAC.
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    if settings.BACKEND_URL:
        backend_url = settings.BACKEND_URL.rstrip("/")
        if backend_url not in allowed_origins:
            allowed_origins.append(backend_url)

    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(shopify_webhooks_router.router)
    app.include_router(shopify_sync_router.router)
    app.include_router(notifications_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    relay_task: Optional[asyncio.Task] = None

    @app.on_event("startup")
    async def startup_event():
        """Initialize Sentry and start the notification relay."""
        nonlocal relay_task

        status = init_observability()
        logger.info(f"[STARTUP] Observability: {status}")

        if settings.NOTIFICATION_RELAY_ENABLED:
            relay_task = asyncio.create_task(
                _relay_forever(settings.REDIS_URL, settings.NOTIFICATION_CHANNEL)
            )
            logger.info(f"[STARTUP] Notification relay started on {settings.NOTIFICATION_CHANNEL}")
        else:
            logger.info("[STARTUP] Notification relay disabled")

    @app.on_event("shutdown")
    async def shutdown_event():
        if relay_task is not None:
            relay_task.cancel()
            try:
                await relay_task
            except asyncio.CancelledError:
                pass
        await reset_arq_pool()

    return app


app = create_app()
