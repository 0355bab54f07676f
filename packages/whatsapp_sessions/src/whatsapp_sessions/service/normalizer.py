"""
Message Normalizer and Conversation Upsert

Turns WAHA message payloads into canonical messages and applies them to
storage:
1. Skips messages already stored (same session and provider message ID)
2. Creates a contact stub for unknown inbound senders
3. Gets or creates the (tenant, session, contact) conversation
4. Bumps conversation counters in one statement
5. Persists the message

All five steps commit together. A lost insert race on the conversation or
contact unique key rolls the unit back and reruns it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import pydantic
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from whatsapp_sessions.contracts.events import MessagePayload
from whatsapp_sessions.errors import PersistenceError, ValidationError
from whatsapp_sessions.persistence.models import MessageStatus, MessageType, utcnow
from whatsapp_sessions.persistence.repo import WhatsAppRepository
from whatsapp_sessions.routing.phone import DEFAULT_REGION, normalize_phone

logger = logging.getLogger(__name__)

# WAHA message types
MESSAGE_TYPE_MAP = {
    "chat": MessageType.TEXT,
    "text": MessageType.TEXT,
    "image": MessageType.IMAGE,
    "sticker": MessageType.IMAGE,
    "audio": MessageType.AUDIO,
    "ptt": MessageType.AUDIO,
    "voice": MessageType.AUDIO,
    "document": MessageType.DOCUMENT,
    "video": MessageType.IMAGE,
}

# WAHA ack levels
ACK_STATUS_MAP = {
    -1: MessageStatus.FAILED,
    0: MessageStatus.PENDING,
    1: MessageStatus.SENT,
    2: MessageStatus.DELIVERED,
    3: MessageStatus.READ,
    4: MessageStatus.READ,  # played
}

STATUS_ORDER = [
    MessageStatus.PENDING,
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
    MessageStatus.READ,
]


def allowed_previous_statuses(status: MessageStatus) -> list[MessageStatus]:
    """
    Statuses a message may move to `status` from.

    Delivery status only moves forward; failed is reachable before delivery.
    """
    if status == MessageStatus.FAILED:
        return [MessageStatus.PENDING, MessageStatus.SENT]
    return STATUS_ORDER[: STATUS_ORDER.index(status)]


@dataclass
class NormalizedMessage:
    """Canonical message, ready to be stored."""

    tenant_id: str
    session_id: UUID
    provider_message_id: str
    contact_phone: str
    from_phone: str
    to_phone: str | None
    content: str | None
    message_type: MessageType
    status: MessageStatus
    is_inbound: bool
    timestamp: datetime
    media_url: str | None = None
    media_mime_type: str | None = None
    push_name: str | None = None


@dataclass
class UpsertResult:
    """Outcome of applying one message."""

    message_id: UUID
    conversation_id: UUID
    duplicate: bool = False
    created_conversation: bool = False
    created_contact: bool = False
    version: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "duplicate" if self.duplicate else "processed",
            "message_id": str(self.message_id),
            "conversation_id": str(self.conversation_id),
            "created_conversation": self.created_conversation,
            "created_contact": self.created_contact,
            "version": self.version,
        }


class MessageNormalizer:
    """Maps provider message payloads to NormalizedMessage."""

    def __init__(self, default_region: str = DEFAULT_REGION):
        self.default_region = default_region

    def normalize(
        self,
        tenant_id: str,
        session_id: UUID,
        raw: MessagePayload | dict[str, Any],
        fallback_time: datetime | None = None,
        own_phone: str | None = None,
    ) -> NormalizedMessage:
        """
        Normalize one message payload.

        Args:
            tenant_id: Owning tenant
            session_id: Session the message arrived on
            raw: WAHA message payload
            fallback_time: Used when the payload carries no timestamp
            own_phone: The session's phone, used when the payload omits one side

        Raises:
            ValidationError: Payload shape or phone numbers are unusable
        """
        payload = raw if isinstance(raw, MessagePayload) else _parse_payload(raw)

        is_inbound = not payload.from_me
        counterpart = payload.from_ if is_inbound else payload.to
        if not counterpart:
            raise ValidationError(
                f"Message {payload.id} has no contact address",
                code="invalid_payload",
            )
        contact_phone = normalize_phone(counterpart, self.default_region)

        from_phone = normalize_phone(payload.from_, self.default_region)
        if payload.to:
            to_phone = normalize_phone(payload.to, self.default_region)
        else:
            to_phone = own_phone

        if payload.ack is not None and not is_inbound:
            status = ACK_STATUS_MAP.get(payload.ack, MessageStatus.SENT)
        elif is_inbound:
            status = MessageStatus.DELIVERED  # Inbound = already delivered
        else:
            status = MessageStatus.SENT

        if payload.timestamp:
            timestamp = datetime.fromtimestamp(float(payload.timestamp), tz=timezone.utc)
            timestamp = timestamp.replace(tzinfo=None)
        else:
            timestamp = fallback_time or utcnow()

        media = payload.media
        return NormalizedMessage(
            tenant_id=tenant_id,
            session_id=session_id,
            provider_message_id=payload.id,
            contact_phone=contact_phone,
            from_phone=from_phone,
            to_phone=to_phone,
            content=payload.body or payload.caption or payload.raw_data.get("caption"),
            message_type=self._message_type(payload),
            status=status,
            is_inbound=is_inbound,
            timestamp=timestamp,
            media_url=media.url if media else None,
            media_mime_type=(media.mimetype if media else None) or payload.raw_data.get("mimetype"),
            push_name=payload.notify_name
            or payload.raw_data.get("notifyName")
            or payload.raw_data.get("pushName"),
        )

    def _message_type(self, payload: MessagePayload) -> MessageType:
        raw_type = (payload.type or payload.raw_data.get("type") or "").lower()
        if raw_type in MESSAGE_TYPE_MAP:
            return MESSAGE_TYPE_MAP[raw_type]

        if payload.has_media or payload.media:
            mimetype = (payload.media.mimetype if payload.media else None) or ""
            if mimetype.startswith(("image/", "video/")):
                return MessageType.IMAGE
            if mimetype.startswith("audio/"):
                return MessageType.AUDIO
            return MessageType.DOCUMENT

        return MessageType.TEXT


class ConversationUpsert:
    """
    Applies normalized messages and delivery acks to conversations.

    Each call is one transaction and commits on success.
    """

    MAX_ATTEMPTS = 3

    def __init__(self, db: Session):
        self.db = db
        self.repo = WhatsAppRepository(db)

    def apply(self, message: NormalizedMessage) -> UpsertResult:
        """
        Store a message and update its conversation.

        Replays of an already-stored message are no-ops.

        Raises:
            PersistenceError: Storage failed, or the insert race kept being lost
        """
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                result = self._apply_once(message)
                self.db.commit()
                return result
            except IntegrityError as e:
                self.db.rollback()
                if attempt == self.MAX_ATTEMPTS:
                    raise PersistenceError(
                        f"Could not store message {message.provider_message_id}",
                        code="upsert_conflict",
                    ) from e
                logger.info(
                    f"Lost insert race for message {message.provider_message_id}, retrying",
                    extra={"attempt": attempt, "session_id": str(message.session_id)},
                )
            except SQLAlchemyError as e:
                self.db.rollback()
                raise PersistenceError(
                    f"Failed to store message {message.provider_message_id}: {e}"
                ) from e

        raise PersistenceError(f"Could not store message {message.provider_message_id}")

    def _apply_once(self, message: NormalizedMessage) -> UpsertResult:
        existing = self.repo.get_message_by_provider_id(
            message.session_id, message.provider_message_id
        )
        if existing:
            logger.debug(f"Message {message.provider_message_id} already stored, skipping")
            return UpsertResult(
                message_id=existing.id,
                conversation_id=existing.conversation_id,
                duplicate=True,
            )

        created_contact = False
        if message.is_inbound:
            contact = self.repo.get_contact(message.tenant_id, message.contact_phone)
            if contact is None:
                self.repo.create_contact_stub(
                    message.tenant_id, message.contact_phone, profile_name=message.push_name
                )
                self.db.flush()
                created_contact = True
            elif message.push_name and contact.profile_name != message.push_name:
                contact.profile_name = message.push_name

        conversation = self.repo.get_conversation(
            message.tenant_id, message.session_id, message.contact_phone
        )
        created_conversation = False
        if conversation is None:
            conversation = self.repo.create_conversation(
                message.tenant_id, message.session_id, message.contact_phone
            )
            self.db.flush()
            created_conversation = True

        version = self.repo.record_message_on_conversation(
            conversation.id, message.timestamp, message.is_inbound
        )
        self.db.expire(conversation)

        status = message.status
        parked = self.repo.pop_pending_ack(message.session_id, message.provider_message_id)
        if parked is not None and status in allowed_previous_statuses(parked):
            status = parked

        row = self.repo.create_message(
            tenant_id=message.tenant_id,
            session_id=message.session_id,
            conversation_id=conversation.id,
            provider_message_id=message.provider_message_id,
            from_phone=message.from_phone,
            to_phone=message.to_phone,
            content=message.content,
            message_type=message.message_type,
            is_inbound=message.is_inbound,
            status=status,
            timestamp=message.timestamp,
            revision=version,
            media_url=message.media_url,
            media_mime_type=message.media_mime_type,
        )
        self.db.flush()

        logger.info(
            f"Stored {'inbound' if message.is_inbound else 'outbound'} message",
            extra={
                "tenant_id": message.tenant_id,
                "session_id": str(message.session_id),
                "conversation_id": str(conversation.id),
                "provider_message_id": message.provider_message_id,
            },
        )

        return UpsertResult(
            message_id=row.id,
            conversation_id=conversation.id,
            created_conversation=created_conversation,
            created_contact=created_contact,
            version=version,
        )

    def apply_ack(self, session_id: UUID, provider_message_id: str, ack: int) -> dict[str, Any]:
        """
        Advance a message's delivery status from a provider ack.

        Backward moves are skipped. Acks for messages not stored yet are
        parked and applied when the message arrives.

        Raises:
            ValidationError: Unknown ack level
            PersistenceError: Storage failed
        """
        status = ACK_STATUS_MAP.get(ack)
        if status is None:
            raise ValidationError(f"Unknown ack level: {ack}", code="invalid_payload")

        try:
            message = self.repo.get_message_by_provider_id(session_id, provider_message_id)
            if not message:
                return self._park_ack(session_id, provider_message_id, status)

            # Row lock on the conversation orders concurrent acks
            version = self.repo.bump_conversation_version(message.conversation_id)
            applied = self.repo.advance_message_status(
                message.id,
                status,
                allowed_previous_statuses(status),
                revision=version,
            )
            if not applied:
                self.db.rollback()
                return {"status": "skipped", "reason": "stale_ack", "message_id": str(message.id)}

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to apply ack for {provider_message_id}: {e}") from e

        logger.debug(f"Message {provider_message_id} status -> {status.value}")
        return {
            "status": "processed",
            "message_id": str(message.id),
            "delivery_status": status.value,
            "version": version,
        }

    def _park_ack(
        self,
        session_id: UUID,
        provider_message_id: str,
        status: MessageStatus,
    ) -> dict[str, Any]:
        pending = self.repo.get_pending_ack(session_id, provider_message_id)
        if pending is None or MessageStatus(pending.status) in allowed_previous_statuses(status):
            self.repo.save_pending_ack(session_id, provider_message_id, status)
            self.db.commit()
        logger.info(
            f"Ack for message {provider_message_id} before the message, parked",
            extra={"session_id": str(session_id), "delivery_status": status.value},
        )
        return {"status": "deferred", "reason": "message_not_stored"}


def _parse_payload(data: dict[str, Any]) -> MessagePayload:
    try:
        return MessagePayload.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid message payload", code="invalid_payload") from e
