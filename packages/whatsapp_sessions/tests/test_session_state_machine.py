"""
Tests for the session state machine.
"""

from datetime import datetime, timedelta

import pytest

from whatsapp_sessions.contracts.events import parse_webhook_event
from whatsapp_sessions.errors import ConflictError, ValidationError
from whatsapp_sessions.persistence.models import SessionStatus, StatusSource
from whatsapp_sessions.persistence.repo import WhatsAppRepository
from whatsapp_sessions.service.state_machine import (
    SessionStateMachine,
    map_provider_state,
    map_provider_status,
)


@pytest.fixture
def session_row(db, sample_tenant_id):
    session = WhatsAppRepository(db).create_session(sample_tenant_id, "tenant-1_own_1", "Support")
    db.commit()
    return session


@pytest.fixture
def machine(db, clock):
    return SessionStateMachine(db, qr_ttl_seconds=20, clock=clock)


def status_event(status: str, at: datetime, me_id: str | None = None):
    data = {
        "event": "session.status",
        "session": "tenant-1_own_1",
        "timestamp": int((at - datetime(1970, 1, 1)).total_seconds() * 1000),
        "payload": {"status": status},
    }
    if me_id:
        data["me"] = {"id": me_id, "pushName": "Store"}
    return parse_webhook_event(data)


class TestStatusMapping:
    """Tests for provider status mapping."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("STOPPED", SessionStatus.DISCONNECTED),
            ("STARTING", SessionStatus.CONNECTING),
            ("SCAN_QR_CODE", SessionStatus.CONNECTING),
            ("WORKING", SessionStatus.CONNECTED),
            ("FAILED", SessionStatus.ERROR),
        ],
    )
    def test_session_status(self, value, expected):
        assert map_provider_status(value) == expected

    def test_state_change(self):
        assert map_provider_state("CONNECTED") == SessionStatus.CONNECTED
        assert map_provider_state("UNPAIRED") == SessionStatus.DISCONNECTED
        assert map_provider_state("TOS_BLOCK") == SessionStatus.ERROR

    def test_unknown_value(self):
        with pytest.raises(ValidationError):
            map_provider_status("SLEEPING")


class TestSessionStateMachine:
    """Tests for lifecycle transitions."""

    def test_new_session_is_disconnected(self, session_row):
        assert session_row.status == SessionStatus.DISCONNECTED.value

    def test_connect_is_optimistic(self, machine, session_row, clock):
        expires_at = machine.begin_connect(session_row)

        assert session_row.status == SessionStatus.CONNECTING.value
        assert session_row.status_source == StatusSource.LOCAL.value
        assert expires_at == clock.now + timedelta(seconds=20)

    def test_qr_expiry_reverts_to_disconnected(self, db, machine, session_row, clock):
        """Test a connecting session is never stuck once its QR expired."""
        machine.begin_connect(session_row)

        clock.now += timedelta(seconds=19)
        assert machine.effective_status(session_row) == SessionStatus.CONNECTING

        clock.now += timedelta(seconds=1)
        assert machine.effective_status(session_row) == SessionStatus.DISCONNECTED

        machine.refresh(session_row)
        db.commit()
        assert session_row.status == SessionStatus.DISCONNECTED.value
        assert session_row.qr_expires_at is None

    def test_scan_success_binds_phone(self, machine, session_row, clock):
        machine.begin_connect(session_row)

        applied = machine.apply_event(
            session_row, status_event("WORKING", clock.now, me_id="5511888887777@c.us")
        )

        assert applied is True
        assert session_row.status == SessionStatus.CONNECTED.value
        assert session_row.status_source == StatusSource.PROVIDER.value
        assert session_row.phone_number == "+5511888887777"
        assert session_row.push_name == "Store"
        assert session_row.qr_expires_at is None

    def test_connected_survives_qr_ttl(self, machine, session_row, clock):
        machine.begin_connect(session_row)
        machine.apply_event(session_row, status_event("WORKING", clock.now))

        clock.now += timedelta(minutes=5)
        assert machine.effective_status(session_row) == SessionStatus.CONNECTED

    def test_connect_when_connected_conflicts(self, machine, session_row, clock):
        machine.apply_event(session_row, status_event("WORKING", clock.now))

        with pytest.raises(ConflictError):
            machine.begin_connect(session_row)

    def test_error_can_reconnect(self, machine, session_row, clock):
        machine.apply_event(session_row, status_event("FAILED", clock.now))
        assert session_row.status == SessionStatus.ERROR.value
        assert session_row.last_error == "FAILED"

        machine.begin_connect(session_row)
        assert session_row.status == SessionStatus.CONNECTING.value

    def test_last_writer_wins_by_event_time(self, machine, session_row, clock):
        """Test an older event delivered late does not overwrite a newer one."""
        newer = clock.now
        older = clock.now - timedelta(seconds=30)

        assert machine.apply_event(session_row, status_event("WORKING", newer)) is True
        assert machine.apply_event(session_row, status_event("STOPPED", older)) is False

        assert session_row.status == SessionStatus.CONNECTED.value

    def test_authoritative_event_replaces_optimistic_state(self, machine, session_row, clock):
        machine.begin_connect(session_row)
        machine.apply_event(session_row, status_event("STOPPED", clock.now))

        assert session_row.status == SessionStatus.DISCONNECTED.value
        assert session_row.status_source == StatusSource.PROVIDER.value

    def test_state_change_event(self, machine, session_row, clock):
        event = parse_webhook_event(
            {
                "event": "state.change",
                "session": "tenant-1_own_1",
                "timestamp": 1704110400000,
                "payload": {"state": "UNPAIRED"},
            }
        )
        machine.apply_event(session_row, status_event("WORKING", datetime(2024, 1, 1, 11, 0)))
        machine.apply_event(session_row, event)

        assert session_row.status == SessionStatus.DISCONNECTED.value
