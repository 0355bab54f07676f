"""
Session Management and Conversation Read Routes

All routes act for the tenant named in the X-Tenant-ID header.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from basecore.db import get_db
from whatsapp_sessions.service.outbound import OutboundSender
from whatsapp_sessions.service.provisioner import SessionProvisioner
from whatsapp_sessions.service.read_api import ConversationReader

from whatsapp_webhook.deps import get_outbound_sender, get_provisioner, get_tenant_id
from whatsapp_webhook.schemas import (
    ConversationResponse,
    MessagePageResponse,
    MessageResponse,
    ProvisionRequest,
    ProvisionResponse,
    QRResponse,
    ReadRequest,
    ReadResponse,
    SendTextRequest,
    SentMessageResponse,
    SessionResponse,
    SyncResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Sessions
# =============================================================================


@router.post("/sessions", response_model=ProvisionResponse, status_code=201)
async def provision_session(
    body: ProvisionRequest,
    tenant_id: str = Depends(get_tenant_id),
    provisioner: SessionProvisioner = Depends(get_provisioner),
):
    """Provision a session; the webhook URL in the response is shown only once."""
    result = await provisioner.generate_webhook(tenant_id, body.display_name)
    return ProvisionResponse(**result.to_dict())


@router.get("/sessions", response_model=list[SessionResponse])
async def list_sessions(
    tenant_id: str = Depends(get_tenant_id),
    provisioner: SessionProvisioner = Depends(get_provisioner),
):
    return provisioner.list_sessions(tenant_id)


@router.post("/sessions/sync", response_model=SyncResponse)
async def sync_sessions(
    tenant_id: str = Depends(get_tenant_id),
    provisioner: SessionProvisioner = Depends(get_provisioner),
):
    """Reconcile the tenant's session statuses with the provider."""
    counts = await provisioner.sync_sessions(tenant_id)
    return SyncResponse(**counts)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    provisioner: SessionProvisioner = Depends(get_provisioner),
):
    return provisioner.get_session(tenant_id, session_id)


@router.post("/sessions/{session_id}/connect", response_model=QRResponse)
async def connect_session(
    session_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    provisioner: SessionProvisioner = Depends(get_provisioner),
):
    """Start pairing and return a QR challenge."""
    challenge = await provisioner.connect(tenant_id, session_id)
    return QRResponse(**challenge.to_dict())


@router.post("/sessions/{session_id}/disconnect", response_model=SessionResponse)
async def disconnect_session(
    session_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    provisioner: SessionProvisioner = Depends(get_provisioner),
):
    return await provisioner.disconnect(tenant_id, session_id)


@router.post("/sessions/{session_id}/restart", response_model=SessionResponse)
async def restart_session(
    session_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    provisioner: SessionProvisioner = Depends(get_provisioner),
):
    return await provisioner.restart(tenant_id, session_id)


@router.post("/sessions/{session_id}/rotate-webhook", response_model=ProvisionResponse)
async def rotate_webhook(
    session_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    provisioner: SessionProvisioner = Depends(get_provisioner),
):
    """Replace the webhook credential; the phone has to pair again."""
    result = await provisioner.rotate_webhook(tenant_id, session_id)
    return ProvisionResponse(**result.to_dict())


@router.post("/sessions/{session_id}/messages", response_model=SentMessageResponse, status_code=201)
async def send_text(
    session_id: UUID,
    body: SendTextRequest,
    tenant_id: str = Depends(get_tenant_id),
    sender: OutboundSender = Depends(get_outbound_sender),
):
    """Send a text message from a connected session."""
    result = await sender.send_text(tenant_id, session_id, body.to, body.text)
    return SentMessageResponse(**result)


@router.delete("/sessions/{session_id}", status_code=204)
async def terminate_session(
    session_id: UUID,
    confirm: str | None = Query(None, description="Provider session name"),
    tenant_id: str = Depends(get_tenant_id),
    provisioner: SessionProvisioner = Depends(get_provisioner),
):
    """Delete a session, its credential and its conversations."""
    await provisioner.terminate(tenant_id, session_id, confirm)
    return Response(status_code=204)


# =============================================================================
# Conversations
# =============================================================================


@router.get("/conversations", response_model=list[ConversationResponse])
async def list_conversations(
    session_id: UUID | None = Query(None),
    include_archived: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return ConversationReader(db).list_conversations(
        tenant_id,
        session_id=session_id,
        include_archived=include_archived,
        limit=limit,
        offset=offset,
    )


@router.get("/conversations/{conversation_id}/messages", response_model=MessagePageResponse)
async def list_messages(
    conversation_id: UUID,
    since: int = Query(0, ge=0, description="Cursor from the previous page"),
    limit: int = Query(100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    page = ConversationReader(db).list_messages(tenant_id, conversation_id, since=since, limit=limit)
    return MessagePageResponse(
        messages=[MessageResponse.model_validate(m) for m in page.messages],
        cursor=page.cursor,
    )


@router.post("/conversations/{conversation_id}/read", response_model=ReadResponse)
async def mark_read(
    conversation_id: UUID,
    body: ReadRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    expected = body.expected_unread if body else None
    ack = ConversationReader(db).mark_read(tenant_id, conversation_id, expected_unread=expected)
    return ReadResponse(
        conversation_id=ack.conversation_id,
        unread_count=ack.unread_count,
        version=ack.version,
    )
