"""
Pytest configuration for integration tests.

Runs the webhook app, the worker pipeline and the read API against SQLite,
fakeredis and an in-memory WAHA, so no external services are needed.
"""

import os

import fakeredis
import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

# Set environment variables for tests
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("LOG_FORMAT", "text")

from basecore.db import build_engine, get_db  # noqa: E402
from basecore.settings import Settings  # noqa: E402
from whatsapp_sessions.persistence.models import WhatsAppBase  # noqa: E402
from whatsapp_sessions.providers.waha import WahaSessionClient  # noqa: E402
from whatsapp_sessions.service.dispatcher import IngestionProcessor  # noqa: E402
from whatsapp_sessions.streams.consumer import WhatsAppStreamConsumer  # noqa: E402
from whatsapp_sessions.streams.producer import WhatsAppStreamProducer  # noqa: E402

from waha_fakes import PUBLIC_BASE_URL, FakeWaha  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        WAHA_BASE_URL="http://waha.test",
        WAHA_API_KEY="platform-key",
        PUBLIC_BASE_URL=PUBLIC_BASE_URL,
        QR_TTL_SECONDS=20,
        INGEST_MAX_ATTEMPTS=2,
        INGEST_BACKOFF_SECONDS=0.0,
    )


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    WhatsAppBase.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def fake_waha():
    return FakeWaha()


@pytest.fixture
def client(settings, session_factory, redis_client, fake_waha):
    """Test client for the webhook app; startup creates the stream groups."""
    from whatsapp_webhook.main import create_app

    app = create_app(
        settings=settings,
        waha_client=WahaSessionClient(
            api_url=settings.WAHA_BASE_URL,
            api_key=settings.WAHA_API_KEY,
            transport=httpx.MockTransport(fake_waha.handler),
        ),
        redis_client=redis_client,
    )

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def run_worker(session_factory, redis_client, settings):
    """Drain the inbound stream the way the worker does; returns entries handled."""
    from whatsapp_worker.main import process_inbound_batch

    consumer = WhatsAppStreamConsumer(redis_client, "test-worker")
    processor = IngestionProcessor.from_settings(
        session_factory, WhatsAppStreamProducer(redis_client), settings
    )

    def run() -> int:
        return process_inbound_batch(consumer, processor, count=100, block_ms=None)

    run.consumer = consumer
    return run
