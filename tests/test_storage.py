"""
Tests for the storage layer: status transitions, conversation history, cascades.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from polaris_crm.models import Message, SegmentMember
from polaris_crm.storage import (
    add_member_to_segment,
    apply_status_update,
    check_db_health,
    create_member,
    create_message,
    create_segment,
    delete_member,
    get_conversation_history,
    get_message,
    is_status_transition_allowed,
    mark_message_failed,
    mark_message_sent,
)


@pytest.fixture
def member(db_session):
    return create_member(db_session, "Awa", "Ndiaye", "221771234567")


class TestStatusTransitions:
    """Test the monotonic status rule."""

    @pytest.mark.parametrize(
        "current,new,allowed",
        [
            ("pending", "sent", True),
            ("sent", "delivered", True),
            ("delivered", "read", True),
            ("pending", "read", True),
            ("sent", "failed", True),
            ("pending", "failed", True),
            ("delivered", "failed", False),
            ("read", "delivered", False),
            ("delivered", "delivered", False),
            ("read", "sent", False),
            ("failed", "delivered", False),
            ("failed", "read", False),
            ("failed", "failed", False),
        ],
    )
    def test_transition_table(self, current, new, allowed):
        assert is_status_transition_allowed(current, new) is allowed

    def test_apply_updates_matching_row(self, db_session, member):
        message = create_message(
            db_session, member.id, "outbound_conversation", "Hi", status="sent",
            external_message_id="wamid.1",
        )

        result = apply_status_update(db_session, "wamid.1", "delivered", "2025-01-15T10:00:00Z")

        assert result == "updated"
        db_session.refresh(message)
        assert message.status == "delivered"
        assert message.meta["status_updated"] == "2025-01-15T10:00:00Z"

    def test_failed_then_delivered_stays_failed(self, db_session, member):
        """Applying failed then delivered leaves the message failed."""
        message = create_message(
            db_session, member.id, "outbound_conversation", "Hi", status="sent",
            external_message_id="wamid.2",
        )

        assert apply_status_update(db_session, "wamid.2", "failed") == "updated"
        assert apply_status_update(db_session, "wamid.2", "delivered") == "ignored"

        db_session.refresh(message)
        assert message.status == "failed"

    def test_unknown_external_id(self, db_session):
        assert apply_status_update(db_session, "wamid.missing", "read") == "not_found"


class TestDeliveryMarks:
    """Test settling a pending outbound row after the transport answers."""

    def test_mark_sent_sets_external_id(self, db_session, member):
        message = create_message(
            db_session, member.id, "outbound_conversation", "Hi", metadata={"method": "ai"}
        )

        mark_message_sent(db_session, message, "wamid.sent.1")

        stored = get_message(db_session, message.id)
        assert stored.status == "sent"
        assert stored.external_message_id == "wamid.sent.1"
        assert stored.meta == {"method": "ai"}

    def test_mark_failed_keeps_metadata(self, db_session, member):
        message = create_message(
            db_session, member.id, "outbound_conversation", "Hi", metadata={"method": "ai"}
        )

        mark_message_failed(db_session, message, "HTTP 400: Recipient not allowed")

        stored = get_message(db_session, message.id)
        assert stored.status == "failed"
        assert stored.external_message_id is None
        assert stored.meta == {"method": "ai", "error": "HTTP 400: Recipient not allowed"}

    def test_get_message_unknown_id(self, db_session):
        assert get_message(db_session, 999) is None


class TestConversationHistory:
    """Test the history window handed to reply generation."""

    def test_oldest_first_limited_and_excluding_current(self, db_session, member):
        for i in range(4):
            create_message(db_session, member.id, "inbound_conversation", f"in {i}", status="read")
            create_message(db_session, member.id, "outbound_conversation", f"out {i}", status="sent")
        current = create_message(db_session, member.id, "inbound_conversation", "now", status="read")

        history = get_conversation_history(db_session, member.id, limit=5, exclude_id=current.id)

        assert [m.content for m in history] == ["out 1", "in 2", "out 2", "in 3", "out 3"]

    def test_only_conversation_kinds(self, db_session, member):
        create_message(db_session, member.id, "notification", "Urgent message: x")
        create_message(db_session, member.id, "outbound_push", "Newsletter")
        create_message(db_session, member.id, "inbound_conversation", "Hello", status="read")

        history = get_conversation_history(db_session, member.id, limit=5)

        assert [m.kind for m in history] == ["inbound_conversation"]

    def test_zero_limit(self, db_session, member):
        create_message(db_session, member.id, "inbound_conversation", "Hello", status="read")

        assert get_conversation_history(db_session, member.id, limit=0) == []


class TestConstraints:
    """Test database-enforced integrity."""

    def test_duplicate_phone_rejected(self, db_session, member):
        with pytest.raises(IntegrityError):
            create_member(db_session, "Other", "Person", "221771234567")
        db_session.rollback()

    def test_invalid_kind_rejected(self, db_session, member):
        with pytest.raises(IntegrityError):
            create_message(db_session, member.id, "carrier_pigeon", "Hi")
        db_session.rollback()

    def test_member_delete_cascades(self, db_session, member):
        """Deleting a member removes their memberships and messages."""
        segment = create_segment(db_session, "Volunteers")
        add_member_to_segment(db_session, segment.id, member.id)
        create_message(db_session, member.id, "inbound_conversation", "Hello", status="read")

        delete_member(db_session, member)

        assert db_session.query(Message).count() == 0
        assert db_session.query(SegmentMember).count() == 0

    def test_health_check_with_schema(self, db_session):
        assert check_db_health() is True
