"""
Tests for fixmo/services/appointments.py: booking and the status state machine.
"""
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from conftest import T0, add_appointment
from fixmo.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from fixmo.models import Appointment, BackjobApplication, Conversation, OutboxEvent, ServiceListing
from fixmo.services.actors import Actor, CUSTOMER
from fixmo.services.appointments import (
    cancel_appointment,
    complete_appointment_by_customer,
    create_appointment,
    reschedule_appointment,
    update_appointment_status,
)
from fixmo.utils.timezone import as_utc


async def _events(db, event_type):
    result = await db.execute(select(OutboxEvent).where(OutboxEvent.event_type == event_type))
    return result.scalars().all()


async def _conversation(db, seed):
    result = await db.execute(
        select(Conversation).where(
            Conversation.customer_id == seed.customer.id,
            Conversation.provider_id == seed.provider.id,
        )
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------


class TestCreateAppointment:
    async def test_books_and_snapshots_warranty(self, db, seed):
        appt = await create_appointment(
            db, seed.as_customer, seed.customer.id, seed.provider.id, seed.service.id, T0,
        )
        assert appt.status == "scheduled"
        assert appt.warranty_days == 7
        assert len(await _events(db, "appointment_created")) == 1

    async def test_later_service_change_does_not_touch_booking(self, db, seed):
        appt = await create_appointment(
            db, seed.as_customer, seed.customer.id, seed.provider.id, seed.service.id, T0,
        )
        service = await db.get(ServiceListing, seed.service.id)
        service.warranty = 30
        await db.commit()
        assert appt.warranty_days == 7

    async def test_opens_conversation_with_provisional_expiry(self, db, seed):
        await create_appointment(
            db, seed.as_customer, seed.customer.id, seed.provider.id, seed.service.id, T0,
        )
        conversation = await _conversation(db, seed)
        assert conversation is not None
        assert conversation.status == "active"
        assert as_utc(conversation.warranty_expires) == T0 + timedelta(days=7)

    async def test_provider_slot_conflict(self, db, seed):
        existing = await add_appointment(db, seed, scheduled_date=T0)
        with pytest.raises(ConflictError) as exc:
            await create_appointment(
                db, seed.as_customer, seed.customer.id, seed.provider.id, seed.service.id, T0,
            )
        assert exc.value.detail["appointment_id"] == str(existing.id)

    async def test_cancelled_slot_can_be_rebooked(self, db, seed):
        await add_appointment(db, seed, status="cancelled", scheduled_date=T0)
        appt = await create_appointment(
            db, seed.as_customer, seed.customer.id, seed.provider.id, seed.service.id, T0,
        )
        assert appt.status == "scheduled"

    async def test_booking_for_someone_else_rejected(self, db, seed):
        stranger = Actor(uuid.uuid4(), CUSTOMER)
        with pytest.raises(AuthorizationError):
            await create_appointment(
                db, stranger, seed.customer.id, seed.provider.id, seed.service.id, T0,
            )

    async def test_unknown_service(self, db, seed):
        with pytest.raises(NotFoundError):
            await create_appointment(
                db, seed.as_customer, seed.customer.id, seed.provider.id, uuid.uuid4(), T0,
            )


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


class TestFinishedTransition:
    async def test_finish_starts_warranty_and_lands_in_warranty(self, db, seed):
        """Booking with 7 warranty days finished at T0 expires at T0 + 7d."""
        appt = await add_appointment(db, seed, status="in-progress")

        result = await update_appointment_status(db, appt.id, "finished", seed.as_provider, now=T0)

        assert result.status == "in-warranty"
        assert as_utc(result.finished_at) == T0
        assert as_utc(result.warranty_expires_at) == T0 + timedelta(days=7)

    async def test_finish_without_warranty_stays_finished(self, db, seed):
        appt = await add_appointment(db, seed, status="in-progress", warranty_days=None)
        result = await update_appointment_status(db, appt.id, "finished", seed.as_provider, now=T0)
        assert result.status == "finished"
        assert result.warranty_expires_at is None

    async def test_finish_after_backjob_resumes_pause(self, db, seed):
        appt = await add_appointment(
            db, seed, status="in-progress",
            warranty_expires_at=T0 - timedelta(days=3),
            warranty_paused_at=T0 - timedelta(days=6),
            warranty_remaining_days=4,
        )
        result = await update_appointment_status(db, appt.id, "finished", seed.as_provider, now=T0)

        assert result.status == "in-warranty"
        assert as_utc(result.warranty_expires_at) == T0 + timedelta(days=4)
        assert result.warranty_paused_at is None
        assert result.warranty_remaining_days is None

    async def test_finish_extends_conversation(self, db, seed):
        appt = await add_appointment(db, seed, status="in-progress")
        await update_appointment_status(db, appt.id, "finished", seed.as_provider, now=T0)
        conversation = await _conversation(db, seed)
        assert as_utc(conversation.warranty_expires) == T0 + timedelta(days=7)


class TestInWarrantyTransition:
    async def test_base_is_existing_finished_at(self, db, seed):
        finished = T0 - timedelta(days=2)
        appt = await add_appointment(db, seed, status="finished", finished_at=finished)
        result = await update_appointment_status(db, appt.id, "in-warranty", seed.as_provider, now=T0)
        assert as_utc(result.warranty_expires_at) == finished + timedelta(days=7)

    async def test_sets_finished_at_when_missing(self, db, seed):
        appt = await add_appointment(db, seed, status="in-progress")
        result = await update_appointment_status(db, appt.id, "in-warranty", seed.as_provider, now=T0)
        assert as_utc(result.finished_at) == T0
        assert as_utc(result.warranty_expires_at) == T0 + timedelta(days=7)


class TestCompletedTransition:
    async def test_completion_force_expires_paused_warranty(self, db, seed):
        appt = await add_appointment(
            db, seed, status="in-warranty",
            finished_at=T0 - timedelta(days=1),
            warranty_expires_at=T0 + timedelta(days=6),
            warranty_paused_at=T0 - timedelta(hours=2),
            warranty_remaining_days=6,
        )
        result = await update_appointment_status(db, appt.id, "completed", seed.as_provider, now=T0)

        assert result.status == "completed"
        assert as_utc(result.completed_at) == T0
        assert as_utc(result.warranty_expires_at) <= T0
        assert result.warranty_paused_at is None
        assert result.warranty_remaining_days is None

    async def test_completion_resolves_approved_backjob(self, db, seed):
        appt = await add_appointment(db, seed, status="in-warranty", warranty_expires_at=T0 + timedelta(days=3))
        backjob = BackjobApplication(
            appointment_id=appt.id, customer_id=seed.customer.id, provider_id=seed.provider.id,
            status="approved", reason="leak",
        )
        db.add(backjob)
        await db.commit()

        await update_appointment_status(db, appt.id, "completed", seed.as_admin, now=T0)

        assert backjob.status == "completed"
        assert as_utc(backjob.resolved_at) == T0
        assert len(await _events(db, "appointment_completed")) == 1


class TestStatusValidation:
    @pytest.mark.parametrize("status", ["Finished", "on-the-way", "done", ""])
    async def test_unknown_status_rejected(self, db, seed, status):
        appt = await add_appointment(db, seed)
        with pytest.raises(ValidationError):
            await update_appointment_status(db, appt.id, status, seed.as_provider, now=T0)
        assert appt.status == "scheduled"

    async def test_exact_on_the_way_string(self, db, seed):
        appt = await add_appointment(db, seed, status="confirmed")
        result = await update_appointment_status(db, appt.id, "On the Way", seed.as_provider, now=T0)
        assert result.status == "On the Way"

    async def test_missing_appointment(self, db, seed):
        with pytest.raises(NotFoundError):
            await update_appointment_status(db, uuid.uuid4(), "confirmed", seed.as_provider, now=T0)

    async def test_non_participant_rejected_before_mutation(self, db, seed):
        appt = await add_appointment(db, seed)
        stranger = Actor(uuid.uuid4(), CUSTOMER)
        with pytest.raises(AuthorizationError):
            await update_appointment_status(db, appt.id, "confirmed", stranger, now=T0)
        assert appt.status == "scheduled"

    async def test_terminal_appointment_rejected(self, db, seed):
        appt = await add_appointment(db, seed, status="completed")
        with pytest.raises(ValidationError):
            await update_appointment_status(db, appt.id, "confirmed", seed.as_provider, now=T0)

    async def test_backjob_not_settable_directly(self, db, seed):
        appt = await add_appointment(db, seed, status="in-warranty")
        with pytest.raises(ValidationError):
            await update_appointment_status(db, appt.id, "backjob", seed.as_provider, now=T0)

    async def test_hook_failure_keeps_transition(self, db, seed):
        """A failing conversation hook is logged; the committed transition stands."""
        appt = await add_appointment(db, seed, status="in-progress")
        with patch(
            "fixmo.services.conversations.handle_appointment_warranty",
            new_callable=AsyncMock,
            side_effect=RuntimeError("boom"),
        ):
            result = await update_appointment_status(db, appt.id, "finished", seed.as_provider, now=T0)

        assert result.status == "in-warranty"
        stored = await db.get(Appointment, appt.id)
        assert stored.status == "in-warranty"


# ---------------------------------------------------------------------------
# Cancel / complete / reschedule
# ---------------------------------------------------------------------------


class TestCancelAppointment:
    async def test_requires_reason(self, db, seed):
        appt = await add_appointment(db, seed)
        with pytest.raises(ValidationError):
            await cancel_appointment(db, appt.id, "   ", seed.as_customer)
        assert appt.status == "scheduled"

    async def test_records_actor_and_keeps_warranty(self, db, seed):
        expiry = T0 + timedelta(days=5)
        appt = await add_appointment(db, seed, status="confirmed", warranty_expires_at=expiry)

        result = await cancel_appointment(db, appt.id, "Changed plans", seed.as_customer, now=T0)

        assert result.status == "cancelled"
        assert result.cancellation_reason == "Changed plans"
        assert result.cancelled_by == "customer"
        assert as_utc(result.warranty_expires_at) == expiry
        assert len(await _events(db, "appointment_cancelled")) == 1

    async def test_cancel_via_status_endpoint(self, db, seed):
        appt = await add_appointment(db, seed)
        result = await update_appointment_status(
            db, appt.id, "cancelled", seed.as_provider, reason="Sick", now=T0,
        )
        assert result.cancelled_by == "provider"

    async def test_cancel_closes_conversation_when_nothing_left(self, db, seed):
        appt = await create_appointment(
            db, seed.as_customer, seed.customer.id, seed.provider.id, seed.service.id, T0,
        )
        await cancel_appointment(db, appt.id, "Changed plans", seed.as_customer, now=T0)
        conversation = await _conversation(db, seed)
        assert conversation.status == "closed"


class TestCustomerComplete:
    async def test_completes_in_warranty(self, db, seed):
        appt = await add_appointment(db, seed, status="in-warranty", warranty_expires_at=T0 + timedelta(days=4))
        result = await complete_appointment_by_customer(db, appt.id, seed.as_customer, now=T0)
        assert result.status == "completed"
        assert as_utc(result.warranty_expires_at) == T0

    async def test_only_owner_customer(self, db, seed):
        appt = await add_appointment(db, seed, status="in-warranty")
        with pytest.raises(AuthorizationError):
            await complete_appointment_by_customer(db, appt.id, seed.as_provider, now=T0)

    async def test_not_eligible_before_finish(self, db, seed):
        appt = await add_appointment(db, seed, status="in-progress")
        with pytest.raises(ValidationError):
            await complete_appointment_by_customer(db, appt.id, seed.as_customer, now=T0)


class TestReschedule:
    async def test_moves_booking(self, db, seed):
        appt = await add_appointment(db, seed, status="confirmed", scheduled_date=T0 + timedelta(days=1))
        new_date = T0 + timedelta(days=3)
        result = await reschedule_appointment(db, appt.id, new_date, seed.as_customer, now=T0)
        assert as_utc(result.scheduled_date) == new_date
        assert result.status == "scheduled"

    async def test_past_date_rejected(self, db, seed):
        appt = await add_appointment(db, seed, scheduled_date=T0 + timedelta(days=1))
        with pytest.raises(ValidationError):
            await reschedule_appointment(db, appt.id, T0 - timedelta(hours=1), seed.as_customer, now=T0)

    async def test_conflict_reports_other_booking(self, db, seed):
        taken = T0 + timedelta(days=2)
        other = await add_appointment(db, seed, scheduled_date=taken)
        appt = await add_appointment(db, seed, scheduled_date=T0 + timedelta(days=1))
        with pytest.raises(ConflictError) as exc:
            await reschedule_appointment(db, appt.id, taken, seed.as_customer, now=T0)
        assert exc.value.detail["appointment_id"] == str(other.id)

    async def test_started_work_cannot_be_rescheduled(self, db, seed):
        appt = await add_appointment(db, seed, status="finished")
        with pytest.raises(ValidationError):
            await reschedule_appointment(db, appt.id, T0 + timedelta(days=1), seed.as_customer, now=T0)
