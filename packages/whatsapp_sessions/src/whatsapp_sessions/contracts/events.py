"""
WAHA Webhook Event Models

Tagged-variant mapping of the five accepted event kinds. The `event` field is
the discriminator; any other value is rejected instead of passed through.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from whatsapp_sessions.contracts.event_types import SUBSCRIBED_EVENTS
from whatsapp_sessions.errors import ValidationError


class WahaModel(BaseModel):
    """Base for provider models: accepts WAHA's camelCase and keeps unknown fields."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class WahaMe(WahaModel):
    """The account connected to a session."""

    id: str | None = Field(None, description="WhatsApp id of the connected number")
    push_name: str | None = Field(None, alias="pushName", description="Profile name")


class MessageMedia(WahaModel):
    url: str | None = None
    mimetype: str | None = None
    filename: str | None = None


class MessagePayload(WahaModel):
    """Payload of message and message.any events."""

    id: str = Field(..., min_length=1, description="Provider message ID")
    timestamp: float | None = Field(None, description="Message time, epoch seconds")
    from_: str = Field(..., alias="from", description="Sender JID or phone")
    to: str | None = Field(None, description="Recipient JID or phone")
    from_me: bool = Field(False, alias="fromMe", description="Sent from the connected phone")
    body: str | None = Field(None, description="Text body")
    caption: str | None = Field(None, description="Media caption")
    type: str | None = Field(None, description="Provider message type")
    has_media: bool = Field(False, alias="hasMedia")
    media: MessageMedia | None = None
    ack: int | None = Field(None, description="Provider ack level")
    notify_name: str | None = Field(None, alias="notifyName")
    raw_data: dict[str, Any] = Field(default_factory=dict, alias="_data")


class AckPayload(WahaModel):
    """Payload of message.ack events."""

    id: str = Field(..., min_length=1, description="Provider message ID")
    from_: str | None = Field(None, alias="from")
    to: str | None = None
    ack: int = Field(..., description="-1 error, 0 pending, 1 server, 2 device, 3 read, 4 played")
    ack_name: str | None = Field(None, alias="ackName")


class SessionStatusPayload(WahaModel):
    """Payload of session.status events."""

    status: str = Field(..., min_length=1)
    me: WahaMe | None = None


class StateChangePayload(WahaModel):
    """Payload of state.change events."""

    state: str = Field(..., min_length=1)


class WebhookEventBase(WahaModel):
    """Fields shared by every WAHA webhook body."""

    id: str | None = Field(None, description="Provider event ID")
    timestamp: int | None = Field(None, description="Event time, epoch milliseconds")
    session: str = Field(..., min_length=1, description="Provider session name")
    me: WahaMe | None = None

    def event_time(self) -> datetime:
        """Event time as naive UTC; falls back to the payload time, then now."""
        if self.timestamp:
            return _from_epoch(self.timestamp / 1000)
        payload_ts = getattr(self.payload, "timestamp", None)  # type: ignore[attr-defined]
        if payload_ts:
            return _from_epoch(float(payload_ts))
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def message_ref(self) -> str | None:
        """Identifier of the object the event is about, used for dedupe fallback."""
        return None

    def dedupe_key(self) -> str | None:
        """
        Idempotency key for this delivery.

        The provider event id when present; otherwise a digest of
        {sessionId, messageId, timestamp}. None when the delivery carries
        nothing that tells a redelivery apart from a new event.
        """
        if self.id:
            return self.id
        timestamp = self.timestamp or getattr(self.payload, "timestamp", None)  # type: ignore[attr-defined]
        if timestamp is None and not self.keyed_by_object():
            return None
        material = json.dumps(
            {
                "sessionId": self.session,
                "messageId": self.message_ref(),
                "timestamp": timestamp,
            },
            sort_keys=True,
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def keyed_by_object(self) -> bool:
        """Whether message_ref() alone identifies one delivery."""
        return False


class MessageEvent(WebhookEventBase):
    event: Literal["message"]
    payload: MessagePayload

    def message_ref(self) -> str | None:
        return self.payload.id

    def keyed_by_object(self) -> bool:
        return True


class MessageAnyEvent(WebhookEventBase):
    event: Literal["message.any"]
    payload: MessagePayload

    def message_ref(self) -> str | None:
        return self.payload.id

    def keyed_by_object(self) -> bool:
        return True


class MessageAckEvent(WebhookEventBase):
    event: Literal["message.ack"]
    payload: AckPayload

    def message_ref(self) -> str | None:
        return f"{self.payload.id}:ack:{self.payload.ack}"

    def keyed_by_object(self) -> bool:
        return True


class SessionStatusEvent(WebhookEventBase):
    event: Literal["session.status"]
    payload: SessionStatusPayload

    def message_ref(self) -> str | None:
        return f"session.status:{self.payload.status}"


class StateChangeEvent(WebhookEventBase):
    event: Literal["state.change"]
    payload: StateChangePayload

    def message_ref(self) -> str | None:
        return f"state.change:{self.payload.state}"


WebhookEvent = Annotated[
    Union[MessageEvent, MessageAnyEvent, MessageAckEvent, SessionStatusEvent, StateChangeEvent],
    Field(discriminator="event"),
]

_event_adapter = TypeAdapter(WebhookEvent)


def parse_webhook_event(data: Any) -> WebhookEvent:
    """
    Validate a decoded webhook body into its event variant.

    Args:
        data: Decoded JSON body

    Returns:
        One of the five event models

    Raises:
        ValidationError: Not an object, unknown event kind or invalid shape
    """
    if not isinstance(data, dict):
        raise ValidationError("Webhook body must be a JSON object", code="malformed_payload")

    event = data.get("event")
    if event not in SUBSCRIBED_EVENTS:
        raise ValidationError(
            f"Unrecognized event type: {event!r}",
            code="unknown_event",
            details={"event": str(event)[:64]},
        )

    try:
        return _event_adapter.validate_python(data)
    except pydantic.ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid {event} payload",
            code="invalid_payload",
            details={"errors": errors},
        ) from e


def _from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
