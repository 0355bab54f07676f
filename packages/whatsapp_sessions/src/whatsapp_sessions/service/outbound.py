"""
Outbound Message Sender

Sends text messages from a connected session:
1. Loads the tenant's session and checks it is connected
2. Normalizes the recipient phone
3. Sends the text via WAHA
4. Stores the message as sent on the recipient's conversation

The provider's message.any echo of the same message is a duplicate of the
stored row and changes nothing; its acks advance the stored status.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from basecore.settings import Settings, get_settings
from whatsapp_sessions.errors import ConflictError, NotFoundError, ProviderError, ValidationError
from whatsapp_sessions.persistence.models import MessageStatus, MessageType, SessionStatus, utcnow
from whatsapp_sessions.persistence.repo import WhatsAppRepository
from whatsapp_sessions.providers.waha.client import WahaSessionClient, sent_message_id
from whatsapp_sessions.routing.phone import DEFAULT_REGION, chat_id_for, normalize_phone
from whatsapp_sessions.service.normalizer import ConversationUpsert, NormalizedMessage

logger = logging.getLogger(__name__)

# WhatsApp rejects longer text bodies
MAX_TEXT_LENGTH = 4096


class OutboundSender:
    """Sends messages through WAHA and records them locally."""

    def __init__(
        self,
        db: Session,
        client: WahaSessionClient,
        default_region: str = DEFAULT_REGION,
    ):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.client = client
        self.upsert = ConversationUpsert(db)
        self.default_region = default_region

    @classmethod
    def from_settings(
        cls,
        db: Session,
        client: WahaSessionClient,
        settings: Settings | None = None,
    ) -> "OutboundSender":
        settings = settings or get_settings()
        return cls(db, client, default_region=settings.DEFAULT_PHONE_REGION)

    async def send_text(
        self,
        tenant_id: str,
        session_id: UUID,
        to: str,
        text: str,
    ) -> dict[str, Any]:
        """
        Send a text message to a phone number.

        Sends are not retried: a timed-out send may still have been delivered.

        Returns:
            Stored message summary (message_id, conversation_id,
            provider_message_id, status)

        Raises:
            NotFoundError: Unknown session
            ConflictError: Session is not connected
            ValidationError: Empty or oversized text, unusable phone
            ProviderError: WAHA rejected the send or returned no message id
        """
        session = self.repo.get_session_for_tenant(tenant_id, session_id)
        if not session:
            raise NotFoundError(f"Session {session_id} not found")
        if session.status != SessionStatus.CONNECTED.value:
            raise ConflictError(
                "Session is not connected",
                code="session_not_connected",
                details={"status": session.status},
            )

        if not text or not text.strip():
            raise ValidationError("Message text is required", code="invalid_message")
        if len(text) > MAX_TEXT_LENGTH:
            raise ValidationError(
                f"Message text exceeds {MAX_TEXT_LENGTH} characters", code="invalid_message"
            )
        phone = normalize_phone(to, self.default_region)

        sent = await self.client.send_text(session.provider_session_name, chat_id_for(phone), text)
        provider_message_id = sent_message_id(sent)
        if not provider_message_id:
            raise ProviderError("Provider did not return a message id", code="send_unconfirmed")

        result = self.upsert.apply(
            NormalizedMessage(
                tenant_id=tenant_id,
                session_id=session.id,
                provider_message_id=provider_message_id,
                contact_phone=phone,
                from_phone=session.phone_number or "",
                to_phone=phone,
                content=text,
                message_type=MessageType.TEXT,
                status=MessageStatus.SENT,
                is_inbound=False,
                timestamp=utcnow(),
            )
        )

        logger.info(
            "Sent text message",
            extra={
                "tenant_id": tenant_id,
                "session_id": str(session_id),
                "conversation_id": str(result.conversation_id),
                "provider_message_id": provider_message_id,
            },
        )
        return {
            "message_id": str(result.message_id),
            "conversation_id": str(result.conversation_id),
            "provider_message_id": provider_message_id,
            "status": MessageStatus.SENT.value,
        }
