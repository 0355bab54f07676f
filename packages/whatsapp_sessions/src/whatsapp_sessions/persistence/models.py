"""
WhatsApp Session Database Models

Tables owned by the WhatsApp session integration.

Tables:
- whatsapp_sessions: Provider sessions (one WhatsApp connection each), owned by a tenant
- whatsapp_webhook_credentials: Webhook token digests and HMAC secrets per session
- whatsapp_conversations: Per-contact threads scoped to (tenant, session)
- whatsapp_messages: Inbound and outbound messages
- whatsapp_contacts: Tenant address book, auto-created as stubs from inbound messages
- whatsapp_pending_acks: Delivery acks that arrived before their message
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base

WhatsAppBase = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every column in these tables."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SessionStatus(str, Enum):
    """Lifecycle state of a provider session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class StatusSource(str, Enum):
    """Where the current session status came from."""

    LOCAL = "local"  # optimistic, set by connect()/disconnect()
    PROVIDER = "provider"  # authoritative webhook event


class MessageType(str, Enum):
    """Canonical message types."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"


class MessageStatus(str, Enum):
    """Delivery status of a message."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class WhatsAppModelMixin:
    """Common fields for all WhatsApp session models."""

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(String(100), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class WhatsAppSession(WhatsAppBase, WhatsAppModelMixin):
    """
    A tenant's WhatsApp connection on the WAHA provider.

    provider_session_name is globally unique and tenant-prefixed.
    Status is tracked per row; authoritative updates come from webhook events,
    ordered by status_event_at.
    """

    __tablename__ = "whatsapp_sessions"

    provider_session_name = Column(String(150), nullable=False)
    display_name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=SessionStatus.DISCONNECTED.value)
    status_source = Column(String(20), nullable=False, default=StatusSource.LOCAL.value)
    status_event_at = Column(DateTime, nullable=True)  # Last applied authoritative event
    qr_expires_at = Column(DateTime, nullable=True)
    phone_number = Column(String(20), nullable=True)  # E.164, bound on scan success
    push_name = Column(String(255), nullable=True)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider_session_name", name="uq_whatsapp_sessions_provider_name"),
        Index("idx_whatsapp_sessions_tenant_status", "tenant_id", "status"),
    )


class WhatsAppWebhookCredential(WhatsAppBase, WhatsAppModelMixin):
    """
    Webhook credential for one session.

    Only the SHA-256 digest of the token is stored. Revoked rows stay as
    tombstones so a token digest can never be issued twice.
    """

    __tablename__ = "whatsapp_webhook_credentials"

    session_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False)
    hmac_secret = Column(Text, nullable=False)  # Fernet-encrypted when a key is configured
    revoked_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("token_hash", name="uq_whatsapp_webhook_credentials_token_hash"),
        Index("idx_whatsapp_webhook_credentials_session_active", "session_id", "revoked_at"),
    )


class WhatsAppConversation(WhatsAppBase, WhatsAppModelMixin):
    """
    Per-contact thread scoped to one tenant and session.

    version is bumped on every change to the conversation or its messages
    and is the cursor used by the read API.
    """

    __tablename__ = "whatsapp_conversations"

    session_id = Column(Uuid(as_uuid=True), nullable=False)
    contact_phone = Column(String(20), nullable=False)  # E.164
    last_message_at = Column(DateTime, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    is_archived = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "session_id", "contact_phone", name="uq_whatsapp_conversations_key"
        ),
        Index("idx_whatsapp_conversations_tenant_last_message", "tenant_id", "last_message_at"),
        Index("idx_whatsapp_conversations_session", "session_id"),
    )


class WhatsAppMessage(WhatsAppBase, WhatsAppModelMixin):
    """
    A message in a conversation.

    Immutable except for status. Provider message ids are unique per session.
    """

    __tablename__ = "whatsapp_messages"

    session_id = Column(Uuid(as_uuid=True), nullable=False)
    conversation_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    provider_message_id = Column(String(255), nullable=False)
    from_phone = Column(String(20), nullable=False)
    to_phone = Column(String(20), nullable=True)
    content = Column(Text, nullable=True)
    message_type = Column(String(20), nullable=False, default=MessageType.TEXT.value)
    is_inbound = Column(Boolean, nullable=False)
    status = Column(String(20), nullable=False, default=MessageStatus.PENDING.value)
    status_updated_at = Column(DateTime, nullable=True)
    timestamp = Column(DateTime, nullable=False)  # Provider timestamp, display order
    media_url = Column(Text, nullable=True)
    media_mime_type = Column(String(100), nullable=True)
    revision = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "session_id", "provider_message_id", name="uq_whatsapp_messages_session_provider_id"
        ),
        Index("idx_whatsapp_messages_conversation_revision", "conversation_id", "revision"),
        Index("idx_whatsapp_messages_conversation_timestamp", "conversation_id", "timestamp"),
    )


class WhatsAppContact(WhatsAppBase, WhatsAppModelMixin):
    """
    Tenant contact.

    name and tags are human-entered and never written by auto-creation.
    profile_name mirrors the sender's WhatsApp push name.
    """

    __tablename__ = "whatsapp_contacts"

    phone = Column(String(20), nullable=False)  # E.164
    name = Column(String(255), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    profile_name = Column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "phone", name="uq_whatsapp_contacts_tenant_phone"),
    )


class WhatsAppPendingAck(WhatsAppBase):
    """
    Highest delivery status reported for a message not stored yet.

    Consumed when the message is inserted.
    """

    __tablename__ = "whatsapp_pending_acks"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    session_id = Column(Uuid(as_uuid=True), nullable=False)
    provider_message_id = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)
    received_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "session_id", "provider_message_id", name="uq_whatsapp_pending_acks_session_message"
        ),
    )
