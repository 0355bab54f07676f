"""
Event Dispatcher

Applies queued webhook events:
- message / message.any -> normalizer + conversation upsert
- message.ack           -> delivery status update
- session.status / state.change -> session state machine

IngestionProcessor wraps dispatch with bounded retries for storage failures;
events that still fail, or can never succeed, go to the dead letter stream.
"""

import logging
import time
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from basecore.settings import Settings, get_settings
from whatsapp_sessions.contracts.envelope import WhatsAppEnvelope
from whatsapp_sessions.contracts.event_types import MESSAGE_EVENTS, WebhookEventType
from whatsapp_sessions.contracts.events import parse_webhook_event
from whatsapp_sessions.errors import NotFoundError, PersistenceError, ValidationError
from whatsapp_sessions.persistence.repo import WhatsAppRepository
from whatsapp_sessions.routing.phone import DEFAULT_REGION
from whatsapp_sessions.service.normalizer import ConversationUpsert, MessageNormalizer
from whatsapp_sessions.service.state_machine import SessionStateMachine
from whatsapp_sessions.streams.producer import WhatsAppStreamProducer

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Routes one envelope to the component that applies it."""

    def __init__(
        self,
        db: Session,
        default_region: str = DEFAULT_REGION,
        qr_ttl_seconds: int = 20,
    ):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.normalizer = MessageNormalizer(default_region)
        self.upsert = ConversationUpsert(db)
        self.state_machine = SessionStateMachine(
            db, qr_ttl_seconds=qr_ttl_seconds, default_region=default_region
        )

    def dispatch(self, envelope: WhatsAppEnvelope) -> dict[str, Any]:
        """
        Apply one envelope.

        Raises:
            ValidationError: Payload cannot be applied
            NotFoundError: Session no longer exists
            PersistenceError: Storage failure, worth retrying
        """
        event = parse_webhook_event(envelope.payload)

        session = self.repo.get_session(envelope.session_id)
        if not session or session.tenant_id != envelope.tenant_id:
            raise NotFoundError(f"Session {envelope.session_id} not found")

        if event.event in MESSAGE_EVENTS:
            message = self.normalizer.normalize(
                envelope.tenant_id,
                envelope.session_id,
                event.payload,
                fallback_time=event.event_time(),
                own_phone=session.phone_number,
            )
            return self.upsert.apply(message).to_dict()

        if event.event == WebhookEventType.MESSAGE_ACK.value:
            return self.upsert.apply_ack(envelope.session_id, event.payload.id, event.payload.ack)

        try:
            applied = self.state_machine.apply_event(session, event)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to apply {event.event}: {e}") from e

        return {
            "status": "processed" if applied else "skipped",
            "session_status": session.status,
        }


class IngestionProcessor:
    """
    Processes envelopes with retries and dead-lettering.

    Each attempt uses a fresh database session.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        producer: WhatsAppStreamProducer,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
        default_region: str = DEFAULT_REGION,
        qr_ttl_seconds: int = 20,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.session_factory = session_factory
        self.producer = producer
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.default_region = default_region
        self.qr_ttl_seconds = qr_ttl_seconds
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        session_factory: sessionmaker,
        producer: WhatsAppStreamProducer,
        settings: Settings | None = None,
    ) -> "IngestionProcessor":
        settings = settings or get_settings()
        return cls(
            session_factory,
            producer,
            max_attempts=settings.INGEST_MAX_ATTEMPTS,
            backoff_seconds=settings.INGEST_BACKOFF_SECONDS,
            max_backoff_seconds=settings.INGEST_MAX_BACKOFF_SECONDS,
            default_region=settings.DEFAULT_PHONE_REGION,
            qr_ttl_seconds=settings.QR_TTL_SECONDS,
        )

    def process(self, envelope: WhatsAppEnvelope) -> dict[str, Any]:
        """
        Apply an envelope, retrying storage failures with exponential backoff.

        Returns:
            Processing result dict; status is "dead_lettered" when the event
            was moved to the DLQ
        """
        delay = self.backoff_seconds
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            db = self.session_factory()
            try:
                return EventDispatcher(
                    db,
                    default_region=self.default_region,
                    qr_ttl_seconds=self.qr_ttl_seconds,
                ).dispatch(envelope)
            except (ValidationError, NotFoundError) as e:
                db.rollback()
                return self._dead_letter(envelope, e, attempt)
            except (PersistenceError, SQLAlchemyError) as e:
                db.rollback()
                last_error = e
                if attempt == self.max_attempts:
                    break
                wait = min(delay, self.max_backoff_seconds)
                logger.warning(
                    f"Storage failure applying {envelope.event_type}, retrying in {wait}s: {e}",
                    extra={"event_id": str(envelope.event_id), "attempt": attempt},
                )
                self.sleep(wait)
                delay *= 2
            finally:
                db.close()

        return self._dead_letter(envelope, last_error, self.max_attempts)

    def _dead_letter(
        self,
        envelope: WhatsAppEnvelope,
        error: Exception | None,
        attempts: int,
    ) -> dict[str, Any]:
        reason = str(error) if error else "unknown error"
        self.producer.publish_to_dlq(envelope, reason, attempts)
        logger.error(
            f"Dead-lettered {envelope.event_type} event: {reason}",
            extra={
                "event_id": str(envelope.event_id),
                "tenant_id": envelope.tenant_id,
                "session_id": str(envelope.session_id),
                "attempts": attempts,
                "error_code": getattr(error, "code", None),
            },
        )
        return {"status": "dead_lettered", "error": reason, "attempts": attempts}
