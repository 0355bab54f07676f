"""
WhatsApp Session Service

FastAPI app in front of the WAHA provider.

Responsibilities:
- Receive WAHA webhooks on per-session token URLs
- Verify the HMAC signature and drop redeliveries
- Publish accepted events to the Redis Stream for the worker
- Session management (provision, connect, disconnect, terminate)
- Conversation read API
"""

import logging
from contextlib import asynccontextmanager

import redis
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from basecore.db import get_db
from basecore.logging import setup_logging
from basecore.redis import check_redis, get_redis_client
from basecore.settings import Settings, get_settings
from whatsapp_sessions.credentials.store import WebhookCredentialStore
from whatsapp_sessions.dedupe.store import RedisIdempotencyStore
from whatsapp_sessions.errors import WhatsAppSessionError
from whatsapp_sessions.providers.waha import WahaSessionClient
from whatsapp_sessions.service.gateway import IngestionGateway
from whatsapp_sessions.service.provisioner import SessionProvisioner
from whatsapp_sessions.streams.groups import ensure_whatsapp_streams
from whatsapp_sessions.streams.producer import WhatsAppStreamProducer

from whatsapp_webhook.deps import get_app_settings, get_provisioner, get_redis
from whatsapp_webhook.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Ensure Redis streams exist on startup; close the provider client on shutdown."""
    try:
        client = app.state.redis_client
        ensure_whatsapp_streams(client if client is not None else get_redis_client())
    except redis.RedisError as e:
        logger.error(f"Failed to initialize streams: {e}")
        raise
    logger.info("WhatsApp session service started")
    try:
        yield
    finally:
        await app.state.waha_client.close()


def create_app(
    settings: Settings | None = None,
    waha_client: WahaSessionClient | None = None,
    redis_client: redis.Redis | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration (defaults to environment settings)
        waha_client: Provider client (tests pass one with a mock transport)
        redis_client: Redis client (defaults to the shared client from REDIS_URL)
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="WhatsApp Sessions",
        description="Tenant-owned WhatsApp sessions on WAHA: provisioning, webhooks and conversations",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.waha_client = waha_client or WahaSessionClient(
        api_url=settings.WAHA_BASE_URL,
        api_key=settings.WAHA_API_KEY,
        timeout=settings.WAHA_TIMEOUT_SECONDS,
    )
    app.state.redis_client = redis_client

    @app.exception_handler(WhatsAppSessionError)
    async def session_error_handler(request: Request, exc: WhatsAppSessionError):
        if exc.http_status >= 500:
            logger.error(f"{exc.code}: {exc.message}", extra={"path": request.url.path})
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.get("/health")
    async def health(
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis),
        provisioner: SessionProvisioner = Depends(get_provisioner),
    ):
        """Health check endpoint. Provider reachability is reported but not required."""
        checks = {"database": "ok", "redis": "ok"}
        try:
            db.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            checks["database"] = "error"
        if not check_redis(redis_client):
            checks["redis"] = "error"

        healthy = all(value == "ok" for value in checks.values())
        checks["provider"] = "ok" if await provisioner.check_provider() else "unreachable"
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "service": settings.SERVICE_NAME,
                "checks": checks,
            },
        )

    @app.post("/webhook/{token}")
    async def receive_webhook(
        token: str,
        request: Request,
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis),
        app_settings: Settings = Depends(get_app_settings),
    ):
        """
        Receive a webhook from WAHA.

        Flow:
        1. Resolve the session from the URL token
        2. Validate the HMAC signature over the raw body
        3. Parse the event
        4. Drop redeliveries
        5. Publish to Redis Stream
        """
        # Get raw body for signature validation
        body = await request.body()
        signature = request.headers.get(app_settings.WEBHOOK_SIGNATURE_HEADER)

        gateway = IngestionGateway(
            credential_store=WebhookCredentialStore(
                db,
                public_base_url=app_settings.PUBLIC_BASE_URL,
                encryption_key=app_settings.WHATSAPP_ENCRYPTION_KEY,
            ),
            idempotency_store=RedisIdempotencyStore(redis_client),
            producer=WhatsAppStreamProducer(redis_client),
            idempotency_ttl_seconds=app_settings.IDEMPOTENCY_TTL_SECONDS,
        )
        result = await run_in_threadpool(gateway.accept, token, body, signature)
        return result.to_dict()

    app.include_router(router)
    return app


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8090)
