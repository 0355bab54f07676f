"""
Conversation Read API

Tenant-scoped reads over conversations and messages, plus read acknowledgement.

Message listing is incremental: every change to a conversation bumps its
version and stamps the touched message with it, so a client passing the last
cursor it saw gets exactly the messages created or updated since.
"""

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from whatsapp_sessions.errors import ConflictError, NotFoundError, PersistenceError
from whatsapp_sessions.persistence.models import WhatsAppConversation, WhatsAppMessage
from whatsapp_sessions.persistence.repo import WhatsAppRepository

logger = logging.getLogger(__name__)


@dataclass
class MessagePage:
    """Messages changed since a cursor, in display order."""

    messages: list[WhatsAppMessage] = field(default_factory=list)
    cursor: int = 0


@dataclass
class ReadAck:
    conversation_id: UUID
    unread_count: int
    version: int


class ConversationReader:
    """Read API over one tenant's conversations."""

    MARK_READ_ATTEMPTS = 3

    def __init__(self, db: Session):
        self.db = db
        self.repo = WhatsAppRepository(db)

    def list_conversations(
        self,
        tenant_id: str,
        session_id: UUID | None = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WhatsAppConversation]:
        """Conversations ordered by last activity, newest first."""
        return self.repo.list_conversations(
            tenant_id,
            session_id=session_id,
            include_archived=include_archived,
            limit=limit,
            offset=offset,
        )

    def get_conversation(self, tenant_id: str, conversation_id: UUID) -> WhatsAppConversation:
        conversation = self.repo.get_conversation_by_id(tenant_id, conversation_id)
        if not conversation:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def list_messages(
        self,
        tenant_id: str,
        conversation_id: UUID,
        since: int = 0,
        limit: int = 100,
    ) -> MessagePage:
        """
        Messages created or updated after cursor `since`.

        Returns:
            MessagePage sorted by provider timestamp; pass page.cursor as the
            next `since`. With no changes the cursor is returned unchanged.
        """
        self.get_conversation(tenant_id, conversation_id)

        changed = self.repo.list_messages_since(conversation_id, since=since, limit=limit)
        cursor = max((m.revision for m in changed), default=since)
        ordered = sorted(changed, key=lambda m: (m.timestamp, m.revision))
        return MessagePage(messages=ordered, cursor=cursor)

    def mark_read(
        self,
        tenant_id: str,
        conversation_id: UUID,
        expected_unread: int | None = None,
    ) -> ReadAck:
        """
        Reset the unread count to zero.

        With expected_unread, the reset only happens if the count still
        equals it, so a message that arrived after the client rendered the
        conversation is not lost. Without it, the current count is read and
        swapped the same way.

        Raises:
            NotFoundError: Unknown conversation
            ConflictError: The count changed under the caller
        """
        attempts = 1 if expected_unread is not None else self.MARK_READ_ATTEMPTS

        try:
            for _ in range(attempts):
                conversation = self.get_conversation(tenant_id, conversation_id)
                self.db.refresh(conversation)
                expected = (
                    expected_unread if expected_unread is not None else conversation.unread_count
                )

                version = self.repo.reset_unread_if(conversation_id, expected)
                if version is not None:
                    self.db.commit()
                    return ReadAck(conversation_id=conversation_id, unread_count=0, version=version)
                self.db.rollback()

            conversation = self.get_conversation(tenant_id, conversation_id)
            self.db.refresh(conversation)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to mark conversation read: {e}") from e

        logger.info(
            "Read ack lost to a concurrent message",
            extra={"conversation_id": str(conversation_id), "tenant_id": tenant_id},
        )
        raise ConflictError(
            "Unread count changed",
            code="unread_count_changed",
            details={"unread_count": conversation.unread_count},
        )
