"""Request dependencies for the WhatsApp session service."""

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from basecore.db import get_db
from basecore.redis import get_redis_client
from basecore.settings import Settings
from whatsapp_sessions.providers.waha import WahaSessionClient
from whatsapp_sessions.service.outbound import OutboundSender
from whatsapp_sessions.service.provisioner import SessionProvisioner


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_redis(request: Request):
    """Redis client for idempotency and streams."""
    client = request.app.state.redis_client
    return client if client is not None else get_redis_client()


def get_waha_client(request: Request) -> WahaSessionClient:
    return request.app.state.waha_client


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> str:
    """Tenant the caller acts for, set by the upstream gateway."""
    return x_tenant_id


def get_provisioner(
    db: Session = Depends(get_db),
    client: WahaSessionClient = Depends(get_waha_client),
    settings: Settings = Depends(get_app_settings),
) -> SessionProvisioner:
    return SessionProvisioner.from_settings(db, client=client, settings=settings)


def get_outbound_sender(
    db: Session = Depends(get_db),
    client: WahaSessionClient = Depends(get_waha_client),
    settings: Settings = Depends(get_app_settings),
) -> OutboundSender:
    return OutboundSender.from_settings(db, client, settings=settings)
