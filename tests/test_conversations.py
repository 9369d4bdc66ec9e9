"""
Tests for fixmo/services/conversations.py: messaging eligibility and the conversation store.
"""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import T0, add_appointment
from fixmo.exceptions import AuthorizationError, NotFoundError, ValidationError
from fixmo.models import Conversation, Message, OutboxEvent
from fixmo.services.actors import Actor, CUSTOMER
from fixmo.services.conversations import (
    MAX_MESSAGE_LENGTH,
    check_appointment_status,
    conversation_statistics,
    extend_conversation_warranty,
    find_or_create_conversation,
    get_messaging_status,
    list_conversations,
    send_message,
    sync_conversation,
)
from fixmo.utils.timezone import as_utc

DAY = timedelta(days=1)


async def _add_conversation(db, seed, status="active", warranty_expires=None, **fields):
    conversation = Conversation(
        customer_id=seed.customer.id,
        provider_id=seed.provider.id,
        status=status,
        warranty_expires=warranty_expires,
        **fields,
    )
    db.add(conversation)
    await db.commit()
    return conversation


async def _events(db, event_type):
    result = await db.execute(select(OutboxEvent).where(OutboxEvent.event_type == event_type))
    return result.scalars().all()


# ---------------------------------------------------------------------------
# Store adapter
# ---------------------------------------------------------------------------


class TestExtendConversationWarranty:
    def test_only_moves_forward(self):
        conversation = Conversation(warranty_expires=T0 + 5 * DAY)

        assert extend_conversation_warranty(conversation, T0 + 3 * DAY) is False
        assert conversation.warranty_expires == T0 + 5 * DAY

        assert extend_conversation_warranty(conversation, T0 + 9 * DAY) is True
        assert conversation.warranty_expires == T0 + 9 * DAY

    def test_none_is_ignored(self):
        conversation = Conversation(warranty_expires=T0)
        assert extend_conversation_warranty(conversation, None) is False
        assert conversation.warranty_expires == T0

    def test_sets_first_expiry(self):
        conversation = Conversation(warranty_expires=None)
        assert extend_conversation_warranty(conversation, T0) is True


class TestFindOrCreateConversation:
    async def test_creates_once_per_pair(self, db, seed):
        first, change = await find_or_create_conversation(db, seed.customer.id, seed.provider.id, T0)
        second, again = await find_or_create_conversation(db, seed.customer.id, seed.provider.id, T0)

        assert change == "opened"
        assert again is None
        assert first.id == second.id
        assert len(await _events(db, "conversation_opened")) == 1

    async def test_reopens_closed_conversation(self, db, seed):
        existing = await _add_conversation(db, seed, status="closed", closed_at=T0)

        conversation, change = await find_or_create_conversation(
            db, seed.customer.id, seed.provider.id, T0 + 7 * DAY,
        )

        assert conversation.id == existing.id
        assert change == "reopened"
        assert conversation.status == "active"
        assert conversation.closed_at is None
        assert as_utc(conversation.warranty_expires) == T0 + 7 * DAY

    async def test_archived_is_left_alone(self, db, seed):
        await _add_conversation(db, seed, status="archived")
        conversation, change = await find_or_create_conversation(db, seed.customer.id, seed.provider.id)
        assert conversation.status == "archived"
        assert change is None


# ---------------------------------------------------------------------------
# Aggregate check
# ---------------------------------------------------------------------------


class TestCheckAppointmentStatus:
    async def test_no_appointments(self, db, seed):
        check = await check_appointment_status(db, seed.customer.id, seed.provider.id, T0)
        assert check.has_appointment is False
        assert check.can_message is False

    async def test_cancelled_appointments_are_ignored(self, db, seed):
        await add_appointment(db, seed, status="cancelled")
        check = await check_appointment_status(db, seed.customer.id, seed.provider.id, T0)
        assert check.has_appointment is False

    async def test_any_live_appointment_allows_messaging(self, db, seed):
        """A completed job does not block messaging about a second booking."""
        await add_appointment(db, seed, status="completed", warranty_expires_at=T0 - DAY)
        scheduled = await add_appointment(db, seed, status="scheduled", scheduled_date=T0 + 3 * DAY)

        check = await check_appointment_status(db, seed.customer.id, seed.provider.id, T0)

        assert check.can_message is True
        assert check.active_appointment_ids == [scheduled.id]

    async def test_only_terminal_appointments_block(self, db, seed):
        await add_appointment(db, seed, status="completed")
        await add_appointment(db, seed, status="no-show")
        check = await check_appointment_status(db, seed.customer.id, seed.provider.id, T0)
        assert check.has_appointment is True
        assert check.can_message is False

    async def test_lapsed_in_warranty_is_completed(self, db, seed):
        appt = await add_appointment(db, seed, status="in-warranty", finished_at=T0)

        check = await check_appointment_status(db, seed.customer.id, seed.provider.id, T0 + 8 * DAY)

        assert check.can_message is False
        assert check.auto_completed_ids == [appt.id]
        assert appt.status == "completed"
        assert as_utc(appt.warranty_expires_at) == T0 + 7 * DAY
        assert len(await _events(db, "appointment_completed")) == 1

    async def test_derivable_expiry_is_stored(self, db, seed):
        appt = await add_appointment(db, seed, status="in-warranty", finished_at=T0)

        check = await check_appointment_status(db, seed.customer.id, seed.provider.id, T0 + DAY)

        assert check.can_message is True
        assert as_utc(appt.warranty_expires_at) == T0 + 7 * DAY
        assert check.warranty_expires_at == T0 + 7 * DAY

    async def test_paused_backjob_stays_open(self, db, seed):
        await add_appointment(
            db, seed, status="backjob", finished_at=T0, warranty_expires_at=T0 + 7 * DAY,
            warranty_paused_at=T0 + DAY, warranty_remaining_days=6,
        )
        check = await check_appointment_status(db, seed.customer.id, seed.provider.id, T0 + 30 * DAY)
        assert check.can_message is True
        assert check.auto_completed_ids == []


class TestSyncConversation:
    async def test_closes_when_nothing_licenses_messaging(self, db, seed):
        await add_appointment(db, seed, status="completed")
        conversation = await _add_conversation(db, seed)

        synced = await sync_conversation(db, seed.customer.id, seed.provider.id, now=T0)

        assert synced.change == "closed"
        assert conversation.status == "closed"
        assert as_utc(conversation.closed_at) == T0

    async def test_does_not_create_unless_asked(self, db, seed):
        await add_appointment(db, seed)
        synced = await sync_conversation(db, seed.customer.id, seed.provider.id, now=T0)
        assert synced.conversation is None
        assert synced.can_message is True


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------


class TestSendMessage:
    async def test_posts_message(self, db, seed):
        await add_appointment(db, seed, scheduled_date=T0 + DAY)
        conversation = await _add_conversation(db, seed)

        message = await send_message(db, conversation.id, seed.as_customer, "  On my way?  ", now=T0)

        assert message.content == "On my way?"
        assert message.sender_type == "customer"
        assert as_utc(conversation.last_message_at) == T0
        events = await _events(db, "message_sent")
        assert events[0].payload["preview"] == "On my way?"

    async def test_refused_and_closed_without_live_appointment(self, db, seed):
        await add_appointment(db, seed, status="completed")
        conversation = await _add_conversation(db, seed)

        with pytest.raises(AuthorizationError):
            await send_message(db, conversation.id, seed.as_provider, "Hello", now=T0)

        assert conversation.status == "closed"
        result = await db.execute(select(Message))
        assert result.scalars().all() == []

    async def test_lapsed_warranty_refused(self, db, seed):
        await add_appointment(db, seed, status="in-warranty", finished_at=T0, warranty_expires_at=T0 + 7 * DAY)
        conversation = await _add_conversation(db, seed, warranty_expires=T0 + 7 * DAY)
        with pytest.raises(AuthorizationError):
            await send_message(db, conversation.id, seed.as_customer, "Hello", now=T0 + 8 * DAY)

    @pytest.mark.parametrize("content", ["", "   ", "x" * (MAX_MESSAGE_LENGTH + 1)])
    async def test_invalid_content(self, db, seed, content):
        conversation = await _add_conversation(db, seed)
        with pytest.raises(ValidationError):
            await send_message(db, conversation.id, seed.as_customer, content, now=T0)

    async def test_outsider_rejected(self, db, seed):
        await add_appointment(db, seed)
        conversation = await _add_conversation(db, seed)
        with pytest.raises(AuthorizationError):
            await send_message(db, conversation.id, Actor(uuid.uuid4(), CUSTOMER), "Hi", now=T0)

    async def test_missing_conversation(self, db, seed):
        with pytest.raises(NotFoundError):
            await send_message(db, uuid.uuid4(), seed.as_customer, "Hi", now=T0)


class TestListAndStatus:
    async def test_lists_open_conversations_for_participant(self, db, seed):
        await _add_conversation(db, seed)
        items, total = await list_conversations(db, seed.as_provider)
        assert total == 1
        assert items[0].provider_id == seed.provider.id

    async def test_closed_conversations_hidden(self, db, seed):
        await _add_conversation(db, seed, status="closed")
        items, total = await list_conversations(db, seed.as_customer)
        assert total == 0

    async def test_admin_has_no_inbox(self, db, seed):
        with pytest.raises(ValidationError):
            await list_conversations(db, seed.as_admin)

    async def test_messaging_status_for_participants_only(self, db, seed):
        await add_appointment(db, seed)
        check = await get_messaging_status(db, seed.as_customer, seed.customer.id, seed.provider.id)
        assert check.can_message is True

        with pytest.raises(AuthorizationError):
            await get_messaging_status(
                db, Actor(uuid.uuid4(), CUSTOMER), seed.customer.id, seed.provider.id,
            )

    async def test_statistics(self, db, seed):
        await _add_conversation(db, seed, warranty_expires=T0 - DAY)
        stats = await conversation_statistics(db, now=T0)
        assert stats["conversations_by_status"] == {"active": 1}
        assert stats["active_with_warranty"] == 1
        assert stats["pending_expiry"] == 1
