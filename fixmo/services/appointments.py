"""
Appointment state machine.

    scheduled -> confirmed -> On the Way -> in-progress -> finished -> in-warranty -> completed
    cancelled from any non-terminal state; backjob from in-warranty (via a warranty claim)

Every operation validates and authorises before it mutates, commits the
transition together with its outbox events, then runs the conversation hook.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from fixmo.models.appointment import (
    Appointment,
    APPOINTMENT_STATUSES,
    BOOKED_STATUSES,
    TERMINAL_APPOINTMENT_STATUSES,
    SCHEDULED,
    FINISHED,
    IN_WARRANTY,
    BACKJOB,
    COMPLETED,
    CANCELLED,
)
from fixmo.models.service_listing import ServiceListing
from fixmo.models.user import Customer, ServiceProvider
from fixmo.services.actors import Actor, require_participant
from fixmo.services.completion import complete_appointment
from fixmo.services.conversations import run_conversation_hook
from fixmo.services.outbox import (
    emit_event,
    appointment_payload,
    APPOINTMENT_CREATED,
    APPOINTMENT_STATUS_CHANGED,
    APPOINTMENT_RESCHEDULED,
    APPOINTMENT_CANCELLED,
    APPOINTMENT_COMPLETED,
)
from fixmo.services.warranty import open_warranty_window
from fixmo.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

# Transitions after which message access may have changed
CONVERSATION_HOOK_STATUSES = (FINISHED, IN_WARRANTY, COMPLETED)


async def get_appointment(db: AsyncSession, appointment_id: uuid.UUID) -> Appointment:
    appointment = await db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment not found")
    return appointment


async def find_schedule_conflict(
    db: AsyncSession,
    provider_id: uuid.UUID,
    scheduled_date: datetime,
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[Appointment]:
    """Another live booking for this provider at exactly this time, if any."""
    query = select(Appointment).where(
        and_(
            Appointment.provider_id == provider_id,
            Appointment.scheduled_date == as_utc(scheduled_date),
            Appointment.status.in_(BOOKED_STATUSES),
        )
    )
    if exclude_id is not None:
        query = query.where(Appointment.id != exclude_id)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


def _conflict(conflicting: Appointment, message: str) -> ConflictError:
    return ConflictError(message, detail={
        "appointment_id": str(conflicting.id),
        "scheduled_date": as_utc(conflicting.scheduled_date).isoformat(),
        "status": conflicting.status,
    })


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------

async def create_appointment(
    db: AsyncSession,
    actor: Actor,
    customer_id: uuid.UUID,
    provider_id: uuid.UUID,
    service_id: uuid.UUID,
    scheduled_date: datetime,
    availability_id: Optional[uuid.UUID] = None,
    final_price: Optional[float] = None,
    repair_description: Optional[str] = None,
) -> Appointment:
    """Book an appointment. The service's warranty days are snapshotted onto it."""
    if not actor.is_admin and actor.user_id not in (customer_id, provider_id):
        raise AuthorizationError("You can only book appointments for yourself")

    if await db.get(Customer, customer_id) is None:
        raise NotFoundError("Customer not found")
    if await db.get(ServiceProvider, provider_id) is None:
        raise NotFoundError("Service provider not found")
    service = await db.get(ServiceListing, service_id)
    if service is None:
        raise NotFoundError("Service listing not found")
    if service.provider_id != provider_id:
        raise ValidationError("Service listing does not belong to this provider")

    scheduled_date = as_utc(scheduled_date)
    conflicting = await find_schedule_conflict(db, provider_id, scheduled_date)
    if conflicting is not None:
        raise _conflict(conflicting, "Provider already has an appointment at this time")

    appointment = Appointment(
        customer_id=customer_id,
        provider_id=provider_id,
        service_id=service_id,
        availability_id=availability_id,
        scheduled_date=scheduled_date,
        status=SCHEDULED,
        final_price=final_price,
        repair_description=repair_description,
        warranty_days=service.warranty,
    )
    db.add(appointment)
    await db.flush()

    emit_event(db, APPOINTMENT_CREATED, appointment_payload(appointment, service_title=service.title))
    await db.commit()

    logger.info(
        "Appointment %s booked (provider %s, warranty_days=%s)",
        str(appointment.id)[:8], str(provider_id)[:8], appointment.warranty_days,
        extra={"appointment_id": str(appointment.id)},
    )

    await run_conversation_hook(db, appointment)
    return appointment


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

async def apply_transition(db: AsyncSession, appointment: Appointment, status: str, now: datetime) -> str:
    """
    Mutate the appointment for the requested status. Returns the status actually set:
    finishing work with a warranty lands in in-warranty, not finished.
    """
    if status == FINISHED:
        appointment.finished_at = now
        expiry = open_warranty_window(appointment, base_date=now, now=now)
        appointment.status = IN_WARRANTY if expiry is not None else FINISHED

    elif status == IN_WARRANTY:
        if appointment.finished_at is None:
            appointment.finished_at = now
        open_warranty_window(appointment, base_date=as_utc(appointment.finished_at), now=now)
        appointment.status = IN_WARRANTY

    elif status == COMPLETED:
        await complete_appointment(db, appointment, now)

    else:
        appointment.status = status

    return appointment.status


async def update_appointment_status(
    db: AsyncSession,
    appointment_id: uuid.UUID,
    status: str,
    actor: Actor,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    if not status:
        raise ValidationError("Status is required")
    if status not in APPOINTMENT_STATUSES:
        raise ValidationError(
            f"Invalid status. Valid statuses are: {', '.join(APPOINTMENT_STATUSES)}"
        )

    if status == CANCELLED:
        return await cancel_appointment(db, appointment_id, reason, actor, now=now)

    now = now or utcnow()
    appointment = await get_appointment(db, appointment_id)
    require_participant(actor, appointment)

    if appointment.status in TERMINAL_APPOINTMENT_STATUSES:
        raise ValidationError(f"Appointment is already {appointment.status}")
    if status == BACKJOB:
        raise ValidationError("Backjob status is set by applying for a warranty backjob")

    previous = appointment.status
    new_status = await apply_transition(db, appointment, status, now)

    emit_event(
        db,
        APPOINTMENT_COMPLETED if new_status == COMPLETED else APPOINTMENT_STATUS_CHANGED,
        appointment_payload(appointment, previous_status=previous, requested_status=status),
    )
    await db.commit()

    logger.info(
        "Appointment %s: %s -> %s",
        str(appointment.id)[:8], previous, new_status,
        extra={"appointment_id": str(appointment.id)},
    )

    if new_status in CONVERSATION_HOOK_STATUSES:
        await run_conversation_hook(db, appointment, now)
    return appointment


async def cancel_appointment(
    db: AsyncSession,
    appointment_id: uuid.UUID,
    reason: Optional[str],
    actor: Actor,
    now: Optional[datetime] = None,
) -> Appointment:
    """Cancel with a required reason. Warranty fields are left as they are."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Cancellation reason is required")

    appointment = await get_appointment(db, appointment_id)
    require_participant(actor, appointment)

    if appointment.status in TERMINAL_APPOINTMENT_STATUSES:
        raise ValidationError(f"Appointment is already {appointment.status}")

    previous = appointment.status
    appointment.status = CANCELLED
    appointment.cancellation_reason = reason
    appointment.cancelled_by = actor.user_type

    emit_event(db, APPOINTMENT_CANCELLED, appointment_payload(
        appointment, previous_status=previous, cancelled_by=actor.user_type, reason=reason,
    ))
    await db.commit()

    logger.info(
        "Appointment %s cancelled by %s (was %s)",
        str(appointment.id)[:8], actor.user_type, previous,
        extra={"appointment_id": str(appointment.id)},
    )

    await run_conversation_hook(db, appointment, now)
    return appointment


async def complete_appointment_by_customer(
    db: AsyncSession,
    appointment_id: uuid.UUID,
    actor: Actor,
    now: Optional[datetime] = None,
) -> Appointment:
    """The customer confirms the job is done, ending the warranty early."""
    now = now or utcnow()
    appointment = await get_appointment(db, appointment_id)
    if not actor.is_customer_of(appointment):
        raise AuthorizationError("Only the appointment customer can mark it as completed")

    if appointment.status == COMPLETED:
        return appointment
    if appointment.status not in (FINISHED, IN_WARRANTY):
        raise ValidationError("Appointment is not eligible for completion")

    previous = appointment.status
    await complete_appointment(db, appointment, now)
    emit_event(db, APPOINTMENT_COMPLETED, appointment_payload(
        appointment, previous_status=previous, completed_by="customer",
    ))
    await db.commit()

    logger.info(
        "Appointment %s completed by customer", str(appointment.id)[:8],
        extra={"appointment_id": str(appointment.id)},
    )

    await run_conversation_hook(db, appointment, now)
    return appointment


async def reschedule_appointment(
    db: AsyncSession,
    appointment_id: uuid.UUID,
    new_scheduled_date: datetime,
    actor: Actor,
    availability_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    """Move a booking that has not started yet to a new future slot."""
    now = now or utcnow()
    appointment = await get_appointment(db, appointment_id)
    require_participant(actor, appointment)

    if appointment.status not in BOOKED_STATUSES:
        raise ValidationError(f"Cannot reschedule an appointment that is {appointment.status}")

    new_scheduled_date = as_utc(new_scheduled_date)
    if new_scheduled_date < now:
        raise ValidationError("New scheduled date must be in the future")

    conflicting = await find_schedule_conflict(
        db, appointment.provider_id, new_scheduled_date, exclude_id=appointment.id
    )
    if conflicting is not None:
        raise _conflict(conflicting, "Provider already has an appointment at the new time")

    appointment.scheduled_date = new_scheduled_date
    if availability_id is not None:
        appointment.availability_id = availability_id
    appointment.status = SCHEDULED

    emit_event(db, APPOINTMENT_RESCHEDULED, appointment_payload(appointment))
    await db.commit()
    return appointment
