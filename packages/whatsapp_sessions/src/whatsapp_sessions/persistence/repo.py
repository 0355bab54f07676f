"""
WhatsApp Session Repository

Repository pattern for the session integration tables.
Counter and status mutations are single SQL statements so concurrent
writers serialize on the row instead of on a Python lock.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import case, delete, or_, update
from sqlalchemy.orm import Session

from whatsapp_sessions.persistence.models import (
    MessageStatus,
    MessageType,
    SessionStatus,
    WhatsAppContact,
    WhatsAppConversation,
    WhatsAppMessage,
    WhatsAppPendingAck,
    WhatsAppSession,
    WhatsAppWebhookCredential,
    utcnow,
)


class WhatsAppRepository:
    """Repository for WhatsApp session database operations."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Sessions
    # =========================================================================

    def get_session(self, session_id: UUID) -> WhatsAppSession | None:
        """Get session by ID."""
        return self.db.query(WhatsAppSession).filter(WhatsAppSession.id == session_id).first()

    def get_session_for_tenant(self, tenant_id: str, session_id: UUID) -> WhatsAppSession | None:
        """Get session by ID, only if owned by the tenant."""
        return (
            self.db.query(WhatsAppSession)
            .filter(
                WhatsAppSession.id == session_id,
                WhatsAppSession.tenant_id == tenant_id,
            )
            .first()
        )

    def get_session_by_name(self, provider_session_name: str) -> WhatsAppSession | None:
        """Get session by provider session name."""
        return (
            self.db.query(WhatsAppSession)
            .filter(WhatsAppSession.provider_session_name == provider_session_name)
            .first()
        )

    def list_sessions(self, tenant_id: str) -> list[WhatsAppSession]:
        """List sessions for a tenant, newest first."""
        return (
            self.db.query(WhatsAppSession)
            .filter(WhatsAppSession.tenant_id == tenant_id)
            .order_by(WhatsAppSession.created_at.desc())
            .all()
        )

    def list_all_sessions(self) -> list[WhatsAppSession]:
        return self.db.query(WhatsAppSession).order_by(WhatsAppSession.created_at.asc()).all()

    def create_session(
        self,
        tenant_id: str,
        provider_session_name: str,
        display_name: str | None = None,
    ) -> WhatsAppSession:
        """Create a new session record in the disconnected state."""
        session = WhatsAppSession(
            tenant_id=tenant_id,
            provider_session_name=provider_session_name,
            display_name=display_name,
            status=SessionStatus.DISCONNECTED.value,
        )
        self.db.add(session)
        return session

    def delete_session(self, session: WhatsAppSession) -> None:
        """Delete a session row."""
        self.db.delete(session)

    # =========================================================================
    # Webhook Credentials
    # =========================================================================

    def get_active_credential_by_token_hash(
        self, token_hash: str
    ) -> WhatsAppWebhookCredential | None:
        """Get a non-revoked credential by token digest (unique index lookup)."""
        return (
            self.db.query(WhatsAppWebhookCredential)
            .filter(
                WhatsAppWebhookCredential.token_hash == token_hash,
                WhatsAppWebhookCredential.revoked_at.is_(None),
            )
            .first()
        )

    def get_active_credential(self, session_id: UUID) -> WhatsAppWebhookCredential | None:
        """Get the non-revoked credential of a session."""
        return (
            self.db.query(WhatsAppWebhookCredential)
            .filter(
                WhatsAppWebhookCredential.session_id == session_id,
                WhatsAppWebhookCredential.revoked_at.is_(None),
            )
            .first()
        )

    def has_revoked_credentials(self, session_id: UUID, tenant_id: str | None = None) -> bool:
        """True if the session ever had a credential that is now revoked."""
        query = self.db.query(WhatsAppWebhookCredential.id).filter(
            WhatsAppWebhookCredential.session_id == session_id,
            WhatsAppWebhookCredential.revoked_at.is_not(None),
        )
        if tenant_id is not None:
            query = query.filter(WhatsAppWebhookCredential.tenant_id == tenant_id)
        return query.first() is not None

    def create_credential(
        self,
        tenant_id: str,
        session_id: UUID,
        token_hash: str,
        hmac_secret: str,
    ) -> WhatsAppWebhookCredential:
        """Create a webhook credential."""
        credential = WhatsAppWebhookCredential(
            tenant_id=tenant_id,
            session_id=session_id,
            token_hash=token_hash,
            hmac_secret=hmac_secret,
        )
        self.db.add(credential)
        return credential

    def revoke_credentials(self, session_id: UUID) -> int:
        """Revoke every active credential of a session and wipe its secret."""
        result = self.db.execute(
            update(WhatsAppWebhookCredential)
            .where(
                WhatsAppWebhookCredential.session_id == session_id,
                WhatsAppWebhookCredential.revoked_at.is_(None),
            )
            .values(revoked_at=utcnow(), hmac_secret="", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # =========================================================================
    # Contacts
    # =========================================================================

    def get_contact(self, tenant_id: str, phone: str) -> WhatsAppContact | None:
        """Get contact by tenant and phone."""
        return (
            self.db.query(WhatsAppContact)
            .filter(
                WhatsAppContact.tenant_id == tenant_id,
                WhatsAppContact.phone == phone,
            )
            .first()
        )

    def create_contact_stub(
        self,
        tenant_id: str,
        phone: str,
        profile_name: str | None = None,
    ) -> WhatsAppContact:
        """Create a name-less contact stub."""
        contact = WhatsAppContact(
            tenant_id=tenant_id,
            phone=phone,
            name=None,
            tags=[],
            profile_name=profile_name,
        )
        self.db.add(contact)
        return contact

    # =========================================================================
    # Conversations
    # =========================================================================

    def get_conversation(
        self,
        tenant_id: str,
        session_id: UUID,
        contact_phone: str,
    ) -> WhatsAppConversation | None:
        """Get conversation by its natural key."""
        return (
            self.db.query(WhatsAppConversation)
            .filter(
                WhatsAppConversation.tenant_id == tenant_id,
                WhatsAppConversation.session_id == session_id,
                WhatsAppConversation.contact_phone == contact_phone,
            )
            .first()
        )

    def get_conversation_by_id(
        self,
        tenant_id: str,
        conversation_id: UUID,
    ) -> WhatsAppConversation | None:
        """Get conversation by ID, only if owned by the tenant."""
        return (
            self.db.query(WhatsAppConversation)
            .filter(
                WhatsAppConversation.id == conversation_id,
                WhatsAppConversation.tenant_id == tenant_id,
            )
            .first()
        )

    def create_conversation(
        self,
        tenant_id: str,
        session_id: UUID,
        contact_phone: str,
    ) -> WhatsAppConversation:
        """Create a new conversation."""
        conversation = WhatsAppConversation(
            tenant_id=tenant_id,
            session_id=session_id,
            contact_phone=contact_phone,
            unread_count=0,
            version=0,
            is_archived=False,
        )
        self.db.add(conversation)
        return conversation

    def record_message_on_conversation(
        self,
        conversation_id: UUID,
        timestamp: datetime,
        is_inbound: bool,
    ) -> int:
        """
        Apply a new message to the conversation counters in one statement.

        last_message_at only moves forward; unread_count grows by one for inbound.

        Returns:
            The new conversation version
        """
        col = WhatsAppConversation
        values: dict[str, Any] = {
            "version": col.version + 1,
            "last_message_at": case(
                (or_(col.last_message_at.is_(None), col.last_message_at <= timestamp), timestamp),
                else_=col.last_message_at,
            ),
            "updated_at": utcnow(),
        }
        if is_inbound:
            values["unread_count"] = col.unread_count + 1

        result = self.db.execute(
            update(col)
            .where(col.id == conversation_id)
            .values(**values)
            .returning(col.version)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one()

    def bump_conversation_version(self, conversation_id: UUID) -> int:
        """Increment the conversation version and return it."""
        col = WhatsAppConversation
        result = self.db.execute(
            update(col)
            .where(col.id == conversation_id)
            .values(version=col.version + 1, updated_at=utcnow())
            .returning(col.version)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one()

    def reset_unread_if(self, conversation_id: UUID, expected_unread: int) -> int | None:
        """
        Compare-and-set unread_count to zero.

        Returns:
            The new version, or None if unread_count no longer equals expected_unread
        """
        col = WhatsAppConversation
        result = self.db.execute(
            update(col)
            .where(col.id == conversation_id, col.unread_count == expected_unread)
            .values(unread_count=0, version=col.version + 1, updated_at=utcnow())
            .returning(col.version)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    def list_conversations(
        self,
        tenant_id: str,
        session_id: UUID | None = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WhatsAppConversation]:
        """List conversations for a tenant, most recent activity first."""
        query = self.db.query(WhatsAppConversation).filter(
            WhatsAppConversation.tenant_id == tenant_id
        )

        if session_id:
            query = query.filter(WhatsAppConversation.session_id == session_id)
        if not include_archived:
            query = query.filter(WhatsAppConversation.is_archived == False)  # noqa: E712

        return (
            query.order_by(
                WhatsAppConversation.last_message_at.desc(),
                WhatsAppConversation.created_at.desc(),
            )
            .offset(offset)
            .limit(limit)
            .all()
        )

    def delete_conversations_for_session(self, session_id: UUID) -> int:
        """Delete all conversations of a session."""
        result = self.db.execute(
            delete(WhatsAppConversation)
            .where(WhatsAppConversation.session_id == session_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # =========================================================================
    # Messages
    # =========================================================================

    def get_message_by_provider_id(
        self,
        session_id: UUID,
        provider_message_id: str,
    ) -> WhatsAppMessage | None:
        """Get message by provider message ID (for idempotency)."""
        return (
            self.db.query(WhatsAppMessage)
            .filter(
                WhatsAppMessage.session_id == session_id,
                WhatsAppMessage.provider_message_id == provider_message_id,
            )
            .first()
        )

    def create_message(
        self,
        tenant_id: str,
        session_id: UUID,
        conversation_id: UUID,
        provider_message_id: str,
        from_phone: str,
        to_phone: str,
        content: str | None,
        message_type: MessageType,
        is_inbound: bool,
        status: MessageStatus,
        timestamp: datetime,
        revision: int,
        media_url: str | None = None,
        media_mime_type: str | None = None,
    ) -> WhatsAppMessage:
        """Create a new message record."""
        message = WhatsAppMessage(
            tenant_id=tenant_id,
            session_id=session_id,
            conversation_id=conversation_id,
            provider_message_id=provider_message_id,
            from_phone=from_phone,
            to_phone=to_phone,
            content=content,
            message_type=message_type.value,
            is_inbound=is_inbound,
            status=status.value,
            timestamp=timestamp,
            revision=revision,
            media_url=media_url,
            media_mime_type=media_mime_type,
        )
        self.db.add(message)
        return message

    def list_messages_since(
        self,
        conversation_id: UUID,
        since: int = 0,
        limit: int = 100,
    ) -> list[WhatsAppMessage]:
        """Messages created or changed after a revision, in revision order."""
        return (
            self.db.query(WhatsAppMessage)
            .filter(
                WhatsAppMessage.conversation_id == conversation_id,
                WhatsAppMessage.revision > since,
            )
            .order_by(WhatsAppMessage.revision.asc())
            .limit(limit)
            .all()
        )

    def delete_messages_for_session(self, session_id: UUID) -> int:
        """Delete all messages of a session."""
        result = self.db.execute(
            delete(WhatsAppMessage)
            .where(WhatsAppMessage.session_id == session_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def advance_message_status(
        self,
        message_id: UUID,
        status: MessageStatus,
        from_statuses: list[MessageStatus],
        revision: int,
    ) -> bool:
        """
        Set a message status only if its current status is one of from_statuses.

        Returns:
            True if the row was updated
        """
        col = WhatsAppMessage
        now = utcnow()
        result = self.db.execute(
            update(col)
            .where(col.id == message_id, col.status.in_([s.value for s in from_statuses]))
            .values(status=status.value, status_updated_at=now, revision=revision, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    # =========================================================================
    # Pending acks
    # =========================================================================

    def get_pending_ack(
        self,
        session_id: UUID,
        provider_message_id: str,
    ) -> WhatsAppPendingAck | None:
        return (
            self.db.query(WhatsAppPendingAck)
            .filter(
                WhatsAppPendingAck.session_id == session_id,
                WhatsAppPendingAck.provider_message_id == provider_message_id,
            )
            .first()
        )

    def save_pending_ack(
        self,
        session_id: UUID,
        provider_message_id: str,
        status: MessageStatus,
    ) -> WhatsAppPendingAck:
        """Create or overwrite the parked status for a message."""
        pending = self.get_pending_ack(session_id, provider_message_id)
        if pending is None:
            pending = WhatsAppPendingAck(
                session_id=session_id,
                provider_message_id=provider_message_id,
                status=status.value,
            )
            self.db.add(pending)
        else:
            pending.status = status.value
            pending.received_at = utcnow()
        return pending

    def pop_pending_ack(self, session_id: UUID, provider_message_id: str) -> MessageStatus | None:
        """Remove the parked status for a message and return it."""
        pending = self.get_pending_ack(session_id, provider_message_id)
        if pending is None:
            return None
        self.db.delete(pending)
        return MessageStatus(pending.status)

    def delete_pending_acks_for_session(self, session_id: UUID) -> int:
        result = self.db.execute(
            delete(WhatsAppPendingAck)
            .where(WhatsAppPendingAck.session_id == session_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
