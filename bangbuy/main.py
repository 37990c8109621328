# bangbuy/main.py
"""
BangBuy messaging API.

Wires the realtime broadcaster, typing presence and email service into the
application lifespan and mounts the v1 routers under /api/v1.
"""

from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncGenerator, Dict

from fastapi import APIRouter, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from .core.config import is_running_tests, settings
from .core.constants import BRAND_NAME
from .core.exceptions import RepositoryException
from .database import get_db_pool_status
from .monitoring.prometheus_metrics import prometheus_metrics
from .routes.v1 import conversations as conversations_v1
from .routes.v1 import messages as messages_v1
from .routes.v1 import notifications as notifications_v1
from .services.email import EmailService
from .services.messaging.broadcaster import RealtimeBroadcaster
from .services.messaging.redis_relay import RedisRelay
from .services.typing_presence import TypingPresence

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

API_TITLE = f"{BRAND_NAME} Messaging API"
API_VERSION = "1.0.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the process-wide realtime collaborators and tear them down on shutdown."""
    logger.info(f"{API_TITLE} starting up (environment={settings.environment})")
    if is_running_tests():
        logger.info("Running under pytest (test mode active)")

    relay = None
    if settings.redis_url:
        try:
            relay = RedisRelay.from_url(
                settings.redis_url,
                socket_timeout=settings.redis_socket_timeout_seconds,
                queue_size=settings.relay_queue_size,
            )
        except (RedisError, ValueError) as e:
            logger.warning(f"[REDIS-RELAY] Disabled, could not connect: {e}")

    broadcaster = RealtimeBroadcaster(queue_size=settings.broadcaster_queue_size, relay=relay)
    typing_presence = TypingPresence(broadcaster=broadcaster)
    typing_presence.start()

    app.state.broadcaster = broadcaster
    app.state.typing_presence = typing_presence
    if getattr(app.state, "email_service", None) is None:
        app.state.email_service = EmailService()

    try:
        yield
    finally:
        logger.info(f"{API_TITLE} shutting down...")
        typing_presence.stop()
        broadcaster.close()
        app.state.broadcaster = None
        app.state.typing_presence = None


app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
)


@app.exception_handler(RepositoryException)
async def repository_exception_handler(request: Request, exc: RepositoryException) -> JSONResponse:
    """Storage failures are retryable by the caller."""
    logger.error(f"Repository error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"message": "Storage temporarily unavailable", "code": "STORAGE_ERROR"}},
    )


# Create API v1 router
api_v1 = APIRouter(prefix="/api/v1")

# Static conversation routes must be registered before the message routes that share the prefix
api_v1.include_router(conversations_v1.router, prefix="/conversations")
api_v1.include_router(messages_v1.router, prefix="/conversations")
api_v1.include_router(notifications_v1.router, prefix="/notifications")

app.include_router(api_v1)


@app.get("/health")
def health(request: Request) -> Dict[str, Any]:
    broadcaster = getattr(request.app.state, "broadcaster", None)
    relay = broadcaster.relay if broadcaster is not None else None
    return {
        "status": "healthy",
        "service": API_TITLE,
        "version": API_VERSION,
        "environment": settings.environment,
        "realtime": broadcaster.get_stats() if broadcaster is not None else None,
        "redis_relay": relay.get_stats() if relay is not None else None,
        "database": get_db_pool_status(),
        "email_notifications_enabled": settings.enable_message_email_notifications,
    }


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
    )
