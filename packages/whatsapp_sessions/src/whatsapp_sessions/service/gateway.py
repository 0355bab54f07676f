"""
Webhook Ingestion Gateway

Accepts WAHA webhook deliveries for one token-addressed session:
1. Resolve the URL token to (tenant, session, secret)
2. Verify the HMAC signature over the raw body
3. Parse the body into one of the accepted event kinds
4. Drop redeliveries already seen within the idempotency window
5. Queue the event on the inbound stream

Nothing is persisted here; the worker applies queued events.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

import redis

from whatsapp_sessions.contracts.envelope import WhatsAppEnvelope
from whatsapp_sessions.contracts.events import parse_webhook_event
from whatsapp_sessions.credentials.store import WebhookCredentialStore
from whatsapp_sessions.dedupe.store import IdempotencyStore
from whatsapp_sessions.errors import (
    AuthenticationError,
    IngestionUnavailable,
    ValidationError,
)
from whatsapp_sessions.providers.waha.webhook import validate_signature
from whatsapp_sessions.streams.producer import WhatsAppStreamProducer

logger = logging.getLogger(__name__)


@dataclass
class AcceptResult:
    """Outcome of an accepted delivery."""

    event: str
    event_id: str | None = None
    duplicate: bool = False
    stream_msg_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": "duplicate" if self.duplicate else "accepted",
            "event": self.event,
        }
        if self.event_id:
            body["event_id"] = self.event_id
        return body


class IngestionGateway:
    """
    Validates and queues webhook deliveries.

    Rejections raise the error taxonomy: NotFoundError for unknown tokens,
    AuthenticationError for bad signatures, ValidationError for bodies that
    are not an accepted event, IngestionUnavailable when the queue is down.
    """

    def __init__(
        self,
        credential_store: WebhookCredentialStore,
        idempotency_store: IdempotencyStore,
        producer: WhatsAppStreamProducer,
        idempotency_ttl_seconds: int = 86400,
    ):
        self.credentials = credential_store
        self.idempotency = idempotency_store
        self.producer = producer
        self.idempotency_ttl_seconds = idempotency_ttl_seconds

    def accept(self, token: str, body: bytes, signature: str | None) -> AcceptResult:
        """
        Accept one webhook delivery.

        Args:
            token: Token from the webhook URL path
            body: Raw request body, exactly as signed
            signature: Value of the signature header

        Returns:
            AcceptResult, with duplicate=True for redeliveries
        """
        credential = self.credentials.resolve(token)
        log_extra = {
            "tenant_id": credential.tenant_id,
            "session_id": str(credential.session_id),
        }

        if not validate_signature(body, signature, credential.hmac_secret):
            logger.warning("Invalid webhook signature", extra=log_extra)
            raise AuthenticationError("Invalid webhook signature")

        try:
            data = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError("Webhook body is not valid JSON", code="malformed_payload") from e

        event = parse_webhook_event(data)

        if event.session != credential.provider_session_name:
            logger.warning(
                f"Webhook for session {event.session} arrived on another session's URL",
                extra=log_extra,
            )
            raise ValidationError(
                "Event session does not match the webhook URL",
                code="session_mismatch",
            )

        event_key = event.dedupe_key()
        dedupe_key = f"{credential.session_id}:{event_key}" if event_key else None
        if dedupe_key is not None:
            try:
                is_new = self.idempotency.claim(dedupe_key, self.idempotency_ttl_seconds)
            except redis.RedisError as e:
                logger.error(f"Idempotency store unavailable: {e}", extra=log_extra)
                raise IngestionUnavailable("Event queue unavailable") from e
        else:
            # No delivery identity; status reports are applied last writer wins
            is_new = True

        if not is_new:
            logger.debug(f"Duplicate {event.event} delivery, dropping", extra=log_extra)
            return AcceptResult(event=event.event, duplicate=True)

        envelope = WhatsAppEnvelope.create(
            event_type=event.event,
            tenant_id=credential.tenant_id,
            session_id=credential.session_id,
            payload=data,
            dedupe_key=dedupe_key or "",
            metadata={"provider_session_name": credential.provider_session_name},
        )

        try:
            msg_id = self.producer.publish_inbound(envelope)
        except redis.RedisError as e:
            # Let the provider's redelivery get through
            if dedupe_key is not None:
                try:
                    self.idempotency.release(dedupe_key)
                except redis.RedisError:
                    logger.warning(f"Could not release dedupe key {dedupe_key}", extra=log_extra)
            logger.error(f"Failed to queue webhook event: {e}", extra=log_extra)
            raise IngestionUnavailable("Event queue unavailable") from e

        logger.info(
            f"Queued {event.event} event",
            extra={**log_extra, "event_id": str(envelope.event_id), "stream_msg_id": msg_id},
        )
        return AcceptResult(
            event=event.event,
            event_id=str(envelope.event_id),
            stream_msg_id=msg_id,
        )
