"""
Tests for message normalization and conversation upsert.
"""

from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from basecore.db import build_engine
from whatsapp_sessions.errors import ValidationError
from whatsapp_sessions.persistence.models import (
    MessageStatus,
    MessageType,
    WhatsAppBase,
    WhatsAppContact,
    WhatsAppConversation,
    WhatsAppMessage,
    WhatsAppPendingAck,
)
from whatsapp_sessions.persistence.repo import WhatsAppRepository
from whatsapp_sessions.service.normalizer import ConversationUpsert, MessageNormalizer

from waha_fakes import make_message_event

SESSION_NAME = "tenant-1_own_1"


def message_payload(**kwargs) -> dict:
    return make_message_event(SESSION_NAME, **kwargs)["payload"]


@pytest.fixture
def session_row(db, sample_tenant_id):
    session = WhatsAppRepository(db).create_session(sample_tenant_id, SESSION_NAME)
    db.commit()
    return session


@pytest.fixture
def normalizer():
    return MessageNormalizer()


@pytest.fixture
def store(db, normalizer, session_row, sample_tenant_id):
    """Normalize and apply a message payload in one call."""
    upsert = ConversationUpsert(db)

    def apply(**kwargs):
        message = normalizer.normalize(sample_tenant_id, session_row.id, message_payload(**kwargs))
        return upsert.apply(message)

    return apply


class TestMessageNormalizer:
    """Tests for payload normalization."""

    def test_inbound_text(self, normalizer, sample_tenant_id, sample_phone):
        from uuid import uuid4

        message = normalizer.normalize(sample_tenant_id, uuid4(), message_payload())

        assert message.is_inbound is True
        assert message.contact_phone == sample_phone
        assert message.from_phone == sample_phone
        assert message.to_phone == "+5511888887777"
        assert message.content == "Hello"
        assert message.message_type == MessageType.TEXT
        assert message.status == MessageStatus.DELIVERED
        assert message.timestamp == datetime(2024, 1, 1, 12, 0, 0)

    def test_outbound_from_phone(self, normalizer, sample_tenant_id, sample_phone):
        """Test messages sent from the phone itself map to the recipient's conversation."""
        from uuid import uuid4

        message = normalizer.normalize(
            sample_tenant_id, uuid4(), message_payload(from_me=True, message_id="true_x_1")
        )

        assert message.is_inbound is False
        assert message.contact_phone == sample_phone
        assert message.from_phone == "+5511888887777"
        assert message.status == MessageStatus.SENT

    def test_outbound_ack_sets_status(self, normalizer, sample_tenant_id):
        from uuid import uuid4

        message = normalizer.normalize(
            sample_tenant_id, uuid4(), message_payload(from_me=True, ack=3)
        )

        assert message.status == MessageStatus.READ

    @pytest.mark.parametrize(
        "extra,expected",
        [
            ({"type": "chat"}, MessageType.TEXT),
            ({"type": "image"}, MessageType.IMAGE),
            ({"type": "video"}, MessageType.IMAGE),
            ({"type": "ptt"}, MessageType.AUDIO),
            ({"type": "document"}, MessageType.DOCUMENT),
            (
                {"type": "location", "hasMedia": True, "media": {"mimetype": "application/pdf"}},
                MessageType.DOCUMENT,
            ),
            (
                {"hasMedia": True, "media": {"url": "http://m/x", "mimetype": "video/mp4"}},
                MessageType.IMAGE,
            ),
            ({"hasMedia": True, "media": {"mimetype": "audio/ogg"}}, MessageType.AUDIO),
            ({"type": "location"}, MessageType.TEXT),
        ],
    )
    def test_message_types(self, normalizer, sample_tenant_id, extra, expected):
        from uuid import uuid4

        message = normalizer.normalize(sample_tenant_id, uuid4(), message_payload(**extra))

        assert message.message_type == expected

    def test_media_fields(self, normalizer, sample_tenant_id):
        from uuid import uuid4

        message = normalizer.normalize(
            sample_tenant_id,
            uuid4(),
            message_payload(
                body=None,
                caption="Invoice",
                hasMedia=True,
                media={"url": "http://waha/files/1.pdf", "mimetype": "application/pdf"},
            ),
        )

        assert message.content == "Invoice"
        assert message.media_url == "http://waha/files/1.pdf"
        assert message.media_mime_type == "application/pdf"

    def test_missing_timestamp_uses_fallback(self, normalizer, sample_tenant_id):
        from uuid import uuid4

        payload = message_payload()
        del payload["timestamp"]
        fallback = datetime(2024, 2, 1, 8, 30)

        message = normalizer.normalize(sample_tenant_id, uuid4(), payload, fallback_time=fallback)

        assert message.timestamp == fallback

    def test_group_sender_rejected(self, normalizer, sample_tenant_id):
        from uuid import uuid4

        with pytest.raises(ValidationError):
            normalizer.normalize(
                sample_tenant_id, uuid4(), message_payload(sender="120363040000000000@g.us")
            )

    def test_invalid_payload(self, normalizer, sample_tenant_id):
        from uuid import uuid4

        with pytest.raises(ValidationError):
            normalizer.normalize(sample_tenant_id, uuid4(), {"body": "no id"})


class TestConversationUpsert:
    """Tests for applying messages to conversations."""

    def test_first_inbound_creates_conversation_and_contact(self, store, db, sample_phone):
        result = store()

        assert result.created_conversation is True
        assert result.created_contact is True

        conversation = db.get(WhatsAppConversation, result.conversation_id)
        assert conversation.contact_phone == sample_phone
        assert conversation.unread_count == 1
        assert conversation.last_message_at == datetime(2024, 1, 1, 12, 0, 0)

        contact = db.query(WhatsAppContact).one()
        assert contact.phone == sample_phone
        assert contact.name is None
        assert contact.tags == []

    def test_replay_is_noop(self, store, db):
        """Test message and message.any deliveries of one message store it once."""
        first = store(event="message")
        second = store(event="message.any")

        assert second.duplicate is True
        assert second.message_id == first.message_id
        assert db.query(WhatsAppMessage).count() == 1
        assert db.get(WhatsAppConversation, first.conversation_id).unread_count == 1

    def test_messages_share_conversation(self, store, db):
        first = store(message_id="m1")
        second = store(message_id="m2", timestamp=1704110460)

        assert second.conversation_id == first.conversation_id
        assert second.created_conversation is False
        assert second.version > first.version
        assert db.get(WhatsAppConversation, first.conversation_id).unread_count == 2

    def test_outbound_does_not_count_unread(self, store, db):
        result = store(message_id="true_1", from_me=True)

        conversation = db.get(WhatsAppConversation, result.conversation_id)
        assert conversation.unread_count == 0
        assert db.query(WhatsAppContact).count() == 0

    def test_last_message_at_only_moves_forward(self, store, db):
        store(message_id="m1", timestamp=1704110460)
        result = store(message_id="m2", timestamp=1704110400)

        conversation = db.get(WhatsAppConversation, result.conversation_id)
        assert conversation.last_message_at == datetime(2024, 1, 1, 12, 1, 0)

    def test_push_name_updates_profile_name(self, store, db):
        store(message_id="m1", notifyName="Ana")
        store(message_id="m2", notifyName="Ana Maria")

        contact = db.query(WhatsAppContact).one()
        assert contact.profile_name == "Ana Maria"
        assert contact.name is None

    def test_stale_orm_state_does_not_lose_updates(self, tmp_path, sample_tenant_id):
        """Test interleaved writers each add to unread_count instead of overwriting it."""
        engine = build_engine(f"sqlite:///{tmp_path / 'upsert.db'}")
        WhatsAppBase.metadata.create_all(engine)
        factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        normalizer = MessageNormalizer()

        setup = factory()
        session = WhatsAppRepository(setup).create_session(sample_tenant_id, SESSION_NAME)
        setup.commit()
        session_id = session.id
        for i in range(3):
            ConversationUpsert(setup).apply(
                normalizer.normalize(sample_tenant_id, session_id, message_payload(message_id=f"m{i}"))
            )
        setup.close()

        writer_a = factory()
        writer_b = factory()
        stale = writer_a.query(WhatsAppConversation).one()
        assert stale.unread_count == 3

        ConversationUpsert(writer_b).apply(
            normalizer.normalize(sample_tenant_id, session_id, message_payload(message_id="m3"))
        )
        ConversationUpsert(writer_a).apply(
            normalizer.normalize(sample_tenant_id, session_id, message_payload(message_id="m4"))
        )
        writer_a.close()
        writer_b.close()

        check = factory()
        conversation = check.query(WhatsAppConversation).one()
        assert conversation.unread_count == 5
        assert check.query(WhatsAppMessage).count() == 5
        revisions = [m.revision for m in check.query(WhatsAppMessage).all()]
        assert len(set(revisions)) == 5
        check.close()
        engine.dispose()

    def test_lost_conversation_insert_race_is_retried(self, tmp_path, sample_tenant_id, sample_phone):
        """Test two first messages racing to create the conversation both land in one row."""
        engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
        WhatsAppBase.metadata.create_all(engine)
        factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        normalizer = MessageNormalizer()

        setup = factory()
        repo = WhatsAppRepository(setup)
        session_id = repo.create_session(sample_tenant_id, SESSION_NAME).id
        repo.create_contact_stub(sample_tenant_id, sample_phone)
        setup.commit()
        setup.close()

        writer_a = factory()
        writer_b = factory()
        upsert_a = ConversationUpsert(writer_a)
        upsert_b = ConversationUpsert(writer_b)
        lookup = upsert_a.repo.get_conversation
        calls = []

        def racing_lookup(*args):
            calls.append(args)
            if len(calls) == 1:
                # The other writer creates the conversation after this one looked
                found = lookup(*args)
                upsert_b.apply(
                    normalizer.normalize(sample_tenant_id, session_id, message_payload(message_id="m2"))
                )
                return found
            return lookup(*args)

        upsert_a.repo.get_conversation = racing_lookup

        result_a = upsert_a.apply(
            normalizer.normalize(sample_tenant_id, session_id, message_payload(message_id="m1"))
        )
        writer_a.close()
        writer_b.close()

        assert len(calls) == 2
        assert result_a.created_conversation is False

        check = factory()
        conversation = check.query(WhatsAppConversation).one()
        assert conversation.unread_count == 2
        stored = {m.provider_message_id for m in check.query(WhatsAppMessage).all()}
        assert stored == {"m1", "m2"}
        check.close()
        engine.dispose()


class TestApplyAck:
    """Tests for delivery status updates."""

    @pytest.fixture
    def outbound(self, store, db):
        result = store(message_id="true_1", from_me=True)
        return db.get(WhatsAppMessage, result.message_id)

    def ack(self, db, session_row, ack: int, message_id: str = "true_1") -> dict:
        return ConversationUpsert(db).apply_ack(session_row.id, message_id, ack)

    def test_ack_advances_status(self, db, session_row, outbound):
        before = outbound.revision

        result = self.ack(db, session_row, 2)

        assert result["status"] == "processed"
        db.refresh(outbound)
        assert outbound.status == MessageStatus.DELIVERED.value
        assert outbound.status_updated_at is not None
        assert outbound.revision > before

    def test_status_never_moves_backward(self, db, session_row, outbound):
        self.ack(db, session_row, 3)

        result = self.ack(db, session_row, 2)

        assert result == {"status": "skipped", "reason": "stale_ack", "message_id": str(outbound.id)}
        db.refresh(outbound)
        assert outbound.status == MessageStatus.READ.value

    def test_played_counts_as_read(self, db, session_row, outbound):
        self.ack(db, session_row, 4)

        db.refresh(outbound)
        assert outbound.status == MessageStatus.READ.value

    def test_failed_only_before_delivery(self, db, session_row, outbound):
        assert self.ack(db, session_row, -1)["status"] == "processed"
        db.refresh(outbound)
        assert outbound.status == MessageStatus.FAILED.value

    def test_failed_after_delivery_is_stale(self, db, session_row, outbound):
        self.ack(db, session_row, 2)

        assert self.ack(db, session_row, -1)["reason"] == "stale_ack"

    def test_ack_before_message_is_applied_on_insert(self, db, session_row, store):
        """Test a read receipt processed before its message still marks it read."""
        result = self.ack(db, session_row, 3)

        assert result == {"status": "deferred", "reason": "message_not_stored"}
        assert db.query(WhatsAppMessage).count() == 0

        stored = store(message_id="true_1", from_me=True, ack=1)

        message = db.get(WhatsAppMessage, stored.message_id)
        assert message.status == MessageStatus.READ.value
        assert db.query(WhatsAppPendingAck).count() == 0

    def test_parked_ack_keeps_highest_status(self, db, session_row, store):
        self.ack(db, session_row, 3)
        self.ack(db, session_row, 2)
        self.ack(db, session_row, -1)

        stored = store(message_id="true_1", from_me=True, ack=1)

        assert db.get(WhatsAppMessage, stored.message_id).status == MessageStatus.READ.value

    def test_parked_ack_never_moves_status_backward(self, db, session_row, store):
        self.ack(db, session_row, 1)

        stored = store(message_id="true_1", from_me=True, ack=2)

        assert db.get(WhatsAppMessage, stored.message_id).status == MessageStatus.DELIVERED.value
        assert db.query(WhatsAppPendingAck).count() == 0

    def test_unknown_ack_level(self, db, session_row, outbound):
        with pytest.raises(ValidationError):
            self.ack(db, session_row, 9)

    def test_ack_bumps_conversation_version(self, db, session_row, outbound):
        conversation = db.get(WhatsAppConversation, outbound.conversation_id)
        before = conversation.version

        result = self.ack(db, session_row, 2)

        db.refresh(conversation)
        assert conversation.version == result["version"] == before + 1
