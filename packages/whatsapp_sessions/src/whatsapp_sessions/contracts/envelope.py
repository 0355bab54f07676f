"""
WhatsApp Event Envelope

Wrapper the gateway puts around an accepted webhook event before queueing it.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class WhatsAppEnvelope:
    """
    Queued webhook event.

    This envelope is used:
    - By the gateway to publish accepted events to the inbound stream
    - By the worker to consume, dispatch and retry them
    - By the worker to dead-letter events that exhausted their retries

    Attributes:
        event_id: Unique identifier for this envelope
        event_type: WAHA event kind (WebhookEventType value) or DLQ_ENTRY
        tenant_id: Tenant owning the session
        session_id: Session the webhook token resolved to
        occurred_at: When the gateway accepted the event (UTC)
        payload: The validated webhook body
        dedupe_key: Idempotency key the gateway claimed for this event
        version: Envelope contract version
        metadata: Additional metadata (attempts, stream message id, ...)
    """

    event_id: UUID
    event_type: str
    tenant_id: str
    session_id: UUID
    occurred_at: datetime
    payload: dict[str, Any]
    dedupe_key: str = ""
    version: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: str,
        tenant_id: str,
        session_id: UUID,
        payload: dict[str, Any],
        dedupe_key: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> "WhatsAppEnvelope":
        """Create a new envelope with auto-generated event_id and timestamp."""
        return cls(
            event_id=uuid4(),
            event_type=event_type,
            tenant_id=tenant_id,
            session_id=session_id,
            occurred_at=_utcnow(),
            payload=payload,
            dedupe_key=dedupe_key,
            metadata=metadata or {},
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WhatsAppEnvelope":
        """Create an envelope from a dictionary (e.g., a DLQ entry's original event)."""
        return cls(
            event_id=UUID(str(data["event_id"])),
            event_type=data["event_type"],
            tenant_id=str(data["tenant_id"]),
            session_id=UUID(str(data["session_id"])),
            occurred_at=(
                datetime.fromisoformat(data["occurred_at"])
                if isinstance(data["occurred_at"], str)
                else data["occurred_at"]
            ),
            version=int(data.get("version", 1)),
            payload=data.get("payload", {}),
            dedupe_key=data.get("dedupe_key") or "",
            metadata=data.get("metadata", {}),
        )

    @classmethod
    def from_stream_message(cls, msg_id: str, data: dict[str, str]) -> "WhatsAppEnvelope":
        """Parse a Redis Stream message into an envelope."""
        payload = json.loads(data.get("payload", "{}"))
        metadata = json.loads(data.get("metadata", "{}"))
        metadata["stream_msg_id"] = msg_id

        return cls(
            event_id=UUID(data["event_id"]),
            event_type=data["event_type"],
            tenant_id=data["tenant_id"],
            session_id=UUID(data["session_id"]),
            occurred_at=(
                datetime.fromisoformat(data["occurred_at"])
                if data.get("occurred_at")
                else _utcnow()
            ),
            version=int(data.get("version", "1")),
            payload=payload,
            dedupe_key=data.get("dedupe_key", ""),
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "tenant_id": self.tenant_id,
            "session_id": str(self.session_id),
            "occurred_at": self.occurred_at.isoformat(),
            "version": self.version,
            "payload": self.payload,
            "dedupe_key": self.dedupe_key,
            "metadata": {k: v for k, v in self.metadata.items() if k != "stream_msg_id"},
        }

    def to_stream_data(self) -> dict[str, str]:
        """Convert to dictionary suitable for Redis Stream (all string values)."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "tenant_id": self.tenant_id,
            "session_id": str(self.session_id),
            "occurred_at": self.occurred_at.isoformat(),
            "version": str(self.version),
            "payload": json.dumps(self.payload),
            "dedupe_key": self.dedupe_key,
            "metadata": json.dumps(
                {k: v for k, v in self.metadata.items() if k != "stream_msg_id"}
            ),
        }
