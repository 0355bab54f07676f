"""
Session State Machine

Lifecycle tracking for provider sessions:

    disconnected --connect()--> connecting        (local, optimistic)
    connecting   --scan success--> connected      (binds phone number)
    connecting   --QR TTL elapsed--> disconnected (checked lazily on read)
    connected    --provider disconnect/error--> disconnected | error
    error        --connect()--> connecting

Webhook-delivered session.status / state.change events are authoritative and
applied last-writer-wins by event timestamp. connect() only sets an optimistic
connecting state that the next authoritative event replaces.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from whatsapp_sessions.contracts.events import SessionStatusEvent, StateChangeEvent
from whatsapp_sessions.errors import ConflictError, ValidationError
from whatsapp_sessions.persistence.models import (
    SessionStatus,
    StatusSource,
    WhatsAppSession,
    utcnow,
)
from whatsapp_sessions.routing.phone import DEFAULT_REGION, normalize_phone

logger = logging.getLogger(__name__)

# WAHA session.status values
PROVIDER_STATUS_MAP = {
    "STOPPED": SessionStatus.DISCONNECTED,
    "STARTING": SessionStatus.CONNECTING,
    "SCAN_QR_CODE": SessionStatus.CONNECTING,
    "WORKING": SessionStatus.CONNECTED,
    "FAILED": SessionStatus.ERROR,
}

# WAHA state.change values
PROVIDER_STATE_MAP = {
    "CONNECTED": SessionStatus.CONNECTED,
    "OPENING": SessionStatus.CONNECTING,
    "PAIRING": SessionStatus.CONNECTING,
    "CONFLICT": SessionStatus.DISCONNECTED,
    "UNPAIRED": SessionStatus.DISCONNECTED,
    "UNPAIRED_IDLE": SessionStatus.DISCONNECTED,
    "UNLAUNCHED": SessionStatus.DISCONNECTED,
    "DISCONNECTED": SessionStatus.DISCONNECTED,
    "TIMEOUT": SessionStatus.ERROR,
    "DEPRECATED_VERSION": SessionStatus.ERROR,
    "PROXYBLOCK": SessionStatus.ERROR,
    "SMB_TOS_BLOCK": SessionStatus.ERROR,
    "TOS_BLOCK": SessionStatus.ERROR,
}


def map_provider_status(value: str) -> SessionStatus:
    """Map a WAHA session status to a session state."""
    try:
        return PROVIDER_STATUS_MAP[value.upper()]
    except KeyError:
        raise ValidationError(f"Unknown provider session status: {value}", code="unknown_status")


def map_provider_state(value: str) -> SessionStatus:
    """Map a WAHA connection state to a session state."""
    try:
        return PROVIDER_STATE_MAP[value.upper()]
    except KeyError:
        raise ValidationError(f"Unknown provider connection state: {value}", code="unknown_status")


class SessionStateMachine:
    """
    Applies lifecycle transitions to session rows.

    Methods flush changes; the caller commits.
    """

    def __init__(
        self,
        db: Session,
        qr_ttl_seconds: int = 20,
        default_region: str = DEFAULT_REGION,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.qr_ttl_seconds = qr_ttl_seconds
        self.default_region = default_region
        self.clock = clock

    def effective_status(self, session: WhatsAppSession, now: datetime | None = None) -> SessionStatus:
        """
        Status as of now, with QR expiry applied.

        A connecting session whose QR expired reads as disconnected.
        """
        status = SessionStatus(session.status)
        now = now or self.clock()
        if (
            status == SessionStatus.CONNECTING
            and session.qr_expires_at is not None
            and now >= session.qr_expires_at
        ):
            return SessionStatus.DISCONNECTED
        return status

    def refresh(self, session: WhatsAppSession) -> WhatsAppSession:
        """Persist the QR expiry transition if it is due."""
        if self.effective_status(session) != SessionStatus(session.status):
            logger.info(
                "QR challenge expired, session back to disconnected",
                extra={"tenant_id": session.tenant_id, "session_id": str(session.id)},
            )
            session.status = SessionStatus.DISCONNECTED.value
            session.status_source = StatusSource.LOCAL.value
            session.qr_expires_at = None
            self.db.flush()
        return session

    def begin_connect(self, session: WhatsAppSession) -> datetime:
        """
        Optimistic transition to connecting after a QR was issued.

        Returns:
            When the issued QR expires

        Raises:
            ConflictError: The session is already connected
        """
        self.refresh(session)
        if session.status == SessionStatus.CONNECTED.value:
            raise ConflictError("Session is already connected", code="already_connected")

        expires_at = self.clock() + timedelta(seconds=self.qr_ttl_seconds)
        session.status = SessionStatus.CONNECTING.value
        session.status_source = StatusSource.LOCAL.value
        session.qr_expires_at = expires_at
        session.last_error = None
        self.db.flush()
        return expires_at

    def mark_disconnected(self, session: WhatsAppSession) -> None:
        """Local transition after the platform stopped the session."""
        session.status = SessionStatus.DISCONNECTED.value
        session.status_source = StatusSource.LOCAL.value
        session.qr_expires_at = None
        self.db.flush()

    def apply_event(self, session: WhatsAppSession, event: SessionStatusEvent | StateChangeEvent) -> bool:
        """
        Apply an authoritative webhook event.

        Returns:
            True if the event changed the session, False if it was stale
        """
        if isinstance(event, SessionStatusEvent):
            status = map_provider_status(event.payload.status)
            me = event.payload.me or event.me
        else:
            status = map_provider_state(event.payload.state)
            me = event.me

        return self.apply_provider_status(
            session,
            status,
            event_at=event.event_time(),
            me_id=me.id if me else None,
            push_name=me.push_name if me else None,
            detail=getattr(event.payload, "status", None) or getattr(event.payload, "state", None),
        )

    def apply_provider_status(
        self,
        session: WhatsAppSession,
        status: SessionStatus,
        event_at: datetime,
        me_id: str | None = None,
        push_name: str | None = None,
        detail: str | None = None,
    ) -> bool:
        """
        Apply a provider-reported status, last writer wins by event time.

        Args:
            session: Session row
            status: Mapped state
            event_at: Provider event time (naive UTC)
            me_id: Connected account JID, bound as phone number on connect
            push_name: Connected account profile name
            detail: Raw provider value, kept as last_error for error states
        """
        if session.status_event_at is not None and event_at < session.status_event_at:
            logger.info(
                "Ignoring stale session status event",
                extra={
                    "session_id": str(session.id),
                    "event_at": event_at.isoformat(),
                    "current_event_at": session.status_event_at.isoformat(),
                },
            )
            return False

        old_status = session.status
        session.status = status.value
        session.status_source = StatusSource.PROVIDER.value
        session.status_event_at = event_at

        if status == SessionStatus.CONNECTED:
            session.qr_expires_at = None
            session.last_error = None
            if me_id:
                session.phone_number = normalize_phone(me_id, self.default_region)
            if push_name:
                session.push_name = push_name
        elif status == SessionStatus.CONNECTING:
            if session.qr_expires_at is None:
                session.qr_expires_at = self.clock() + timedelta(seconds=self.qr_ttl_seconds)
        else:
            session.qr_expires_at = None
            if status == SessionStatus.ERROR:
                session.last_error = detail

        self.db.flush()

        logger.info(
            f"Session status {old_status} -> {status.value}",
            extra={
                "tenant_id": session.tenant_id,
                "session_id": str(session.id),
                "provider_value": detail,
            },
        )
        return True
