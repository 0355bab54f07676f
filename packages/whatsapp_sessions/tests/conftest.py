"""
Pytest fixtures for WhatsApp session tests.
"""

from datetime import datetime

import fakeredis
import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from basecore.db import build_engine
from whatsapp_sessions.credentials.store import WebhookCredentialStore
from whatsapp_sessions.persistence.models import WhatsAppBase
from whatsapp_sessions.providers.waha import WahaSessionClient
from whatsapp_sessions.service.provisioner import SessionProvisioner
from whatsapp_sessions.service.state_machine import SessionStateMachine

from waha_fakes import PUBLIC_BASE_URL, Clock, FakeWaha, no_sleep


@pytest.fixture
def sample_tenant_id():
    """Sample tenant ID."""
    return "tenant-1"


@pytest.fixture
def sample_phone():
    """Sample phone number."""
    return "+5511999998888"


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    WhatsAppBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def fake_waha():
    return FakeWaha()


@pytest.fixture
def waha_client(fake_waha):
    return WahaSessionClient(
        api_url="http://waha.test",
        api_key="platform-key",
        transport=httpx.MockTransport(fake_waha.handler),
    )


@pytest.fixture
def credential_store(db):
    return WebhookCredentialStore(db, public_base_url=PUBLIC_BASE_URL)


@pytest.fixture
def clock():
    return Clock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def provisioner(db, waha_client, credential_store, clock):
    return SessionProvisioner(
        db=db,
        client=waha_client,
        credential_store=credential_store,
        state_machine=SessionStateMachine(db, qr_ttl_seconds=20, clock=clock),
        max_attempts=3,
        backoff_seconds=0.5,
        max_backoff_seconds=8.0,
        sleep=no_sleep,
    )

