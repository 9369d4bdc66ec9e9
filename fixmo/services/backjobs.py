"""
Backjob workflow - warranty claims layered on the appointment state machine.

    apply (customer)              -> approved, appointment backjob, warranty paused
    dispute (provider)            -> disputed, warranty resumed, appointment in-warranty
    cancel (customer)             -> cancelled-by-customer, warranty resumed
    admin approve-dispute         -> cancelled-by-admin, warranty resumed
    admin reject-dispute          -> approved again, appointment backjob, warranty paused
    admin approve                 -> approved, appointment backjob
    admin cancel-by-admin         -> appointment completed, warranty force-expired
    admin cancel-by-user          -> cancelled-by-user, warranty resumed
    provider reschedule           -> appointment scheduled, warranty stays paused

The backjob change and the appointment's warranty change commit together.
Only approved, pending or disputed claims can be cancelled. A completed or
cancelled appointment never moves back, and an appointment still held by
another approved claim keeps its warranty paused.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_, func, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.config import get_settings
from fixmo.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from fixmo.models.appointment import Appointment, IN_WARRANTY, BACKJOB, SCHEDULED, TERMINAL_APPOINTMENT_STATUSES
from fixmo.models.backjob import (
    BackjobApplication,
    BACKJOB_STATUSES,
    PENDING,
    APPROVED,
    DISPUTED,
    CANCELLED_BY_ADMIN,
    CANCELLED_BY_USER,
    CANCELLED_BY_CUSTOMER,
)
from fixmo.services.actors import Actor, require_admin
from fixmo.services.appointments import get_appointment, find_schedule_conflict, _conflict
from fixmo.services.completion import complete_appointment
from fixmo.services.conversations import run_conversation_hook
from fixmo.services.outbox import (
    emit_event,
    appointment_payload,
    BACKJOB_APPLIED,
    BACKJOB_DISPUTED,
    BACKJOB_CANCELLED,
    BACKJOB_STATUS_CHANGED,
    BACKJOB_RESCHEDULED,
)
from fixmo.services.warranty import (
    Expired,
    pause_warranty,
    resume_warranty,
    is_paused,
    warranty_state,
)
from fixmo.utils.locks import appointment_lock, LockTimeoutError
from fixmo.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

ADMIN_ACTIONS = ("approve", "cancel-by-admin", "cancel-by-user")
ACTIVE_CLAIM_STATUSES = (APPROVED, PENDING, DISPUTED)


async def get_backjob(db: AsyncSession, backjob_id: uuid.UUID) -> BackjobApplication:
    backjob = await db.get(BackjobApplication, backjob_id)
    if backjob is None:
        raise NotFoundError("Backjob application not found")
    return backjob


async def find_approved_backjob(
    db: AsyncSession,
    appointment_id: uuid.UUID,
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[BackjobApplication]:
    query = select(BackjobApplication).where(
        and_(
            BackjobApplication.appointment_id == appointment_id,
            BackjobApplication.status == APPROVED,
        )
    )
    if exclude_id is not None:
        query = query.where(BackjobApplication.id != exclude_id)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


def _duplicate_claim(existing: BackjobApplication) -> ConflictError:
    return ConflictError(
        "An active backjob request already exists for this appointment",
        detail={"backjob_id": str(existing.id), "status": existing.status},
    )


def _return_to_warranty(appointment: Appointment, now: datetime) -> None:
    """Resume a paused countdown if there is one; the appointment goes back to in-warranty either way."""
    resume_warranty(appointment, now)
    appointment.status = IN_WARRANTY


async def _release_claim(
    db: AsyncSession,
    backjob: BackjobApplication,
    appointment: Appointment,
    now: datetime,
) -> bool:
    """
    Hand the appointment back to its warranty once `backjob` stops holding it.

    A completed or cancelled appointment is left alone, as is one still held by
    another approved claim. Returns whether the warranty was resumed.
    """
    if appointment.status in TERMINAL_APPOINTMENT_STATUSES:
        return False
    if await find_approved_backjob(db, appointment.id, exclude_id=backjob.id) is not None:
        return False
    _return_to_warranty(appointment, now)
    return True


def _reopen_claim(appointment: Appointment, now: datetime) -> None:
    """Put the appointment back on hold for rework: paused warranty, backjob status."""
    if appointment.status in TERMINAL_APPOINTMENT_STATUSES:
        raise ValidationError(f"Appointment is already {appointment.status}")
    if not is_paused(appointment):
        pause_warranty(appointment, now)
    if appointment.status == IN_WARRANTY:
        appointment.status = BACKJOB


def _backjob_payload(backjob: BackjobApplication, appointment: Appointment, **extra) -> dict:
    return appointment_payload(
        appointment,
        backjob_id=backjob.id,
        backjob_status=backjob.status,
        reason=backjob.reason,
        **extra,
    )


async def _save_claim(db: AsyncSession, appointment_id: uuid.UUID, flush: bool = False) -> None:
    """Flush or commit, mapping the one-approved-claim index violation to a conflict."""
    try:
        if flush:
            await db.flush()
        else:
            await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await find_approved_backjob(db, appointment_id)
        if existing is not None:
            raise _duplicate_claim(existing)
        raise ConflictError(
            "An active backjob request already exists for this appointment",
            detail={"appointment_id": str(appointment_id)},
        )


# ---------------------------------------------------------------------------
# Customer
# ---------------------------------------------------------------------------

async def apply_backjob(
    db: AsyncSession,
    appointment_id: uuid.UUID,
    actor: Actor,
    reason: Optional[str],
    evidence_description: Optional[str] = None,
    evidence_files: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> tuple[BackjobApplication, Appointment]:
    """
    File a warranty claim. Auto-approved; pauses the warranty countdown.

    Evidence is either uploaded file references or a written description.
    """
    now = now or utcnow()
    reason = (reason or "").strip()
    description = (evidence_description or "").strip()
    files = [f for f in (evidence_files or []) if f]
    if not reason:
        raise ValidationError("Reason is required")
    if not description and not files:
        raise ValidationError("Evidence is required: upload files or describe the problem")

    appointment = await get_appointment(db, appointment_id)
    if not actor.is_customer_of(appointment):
        raise AuthorizationError("Only the appointment customer can apply for a backjob")
    if appointment.status != IN_WARRANTY:
        raise ValidationError("Backjob can only be applied during warranty")
    if isinstance(warranty_state(appointment, now), Expired):
        raise ValidationError("Warranty has expired for this appointment")

    settings = get_settings()
    try:
        async with appointment_lock(
            str(appointment.id),
            ttl=settings.backjob_lock_ttl_seconds,
            wait=settings.backjob_lock_wait_seconds,
        ):
            existing = await find_approved_backjob(db, appointment.id)
            if existing is not None:
                raise _duplicate_claim(existing)

            backjob = BackjobApplication(
                appointment_id=appointment.id,
                customer_id=appointment.customer_id,
                provider_id=appointment.provider_id,
                status=APPROVED,
                reason=reason,
                evidence={"description": description or None, "files": files},
            )
            db.add(backjob)

            remaining = pause_warranty(appointment, now)
            appointment.status = BACKJOB
            # The partial unique index fires here if a concurrent apply slipped past the check
            await _save_claim(db, appointment_id, flush=True)

            emit_event(db, BACKJOB_APPLIED, _backjob_payload(backjob, appointment))
            await _save_claim(db, appointment_id)
    except LockTimeoutError:
        raise ConflictError("Another warranty claim for this appointment is being processed")

    logger.info(
        "Backjob %s applied on appointment %s, warranty paused with %d day(s) left",
        str(backjob.id)[:8], str(appointment.id)[:8], remaining,
        extra={"backjob_id": str(backjob.id), "appointment_id": str(appointment.id)},
    )
    return backjob, appointment


async def cancel_backjob_by_customer(
    db: AsyncSession,
    backjob_id: uuid.UUID,
    actor: Actor,
    reason: Optional[str],
    now: Optional[datetime] = None,
) -> tuple[BackjobApplication, Appointment]:
    now = now or utcnow()
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Cancellation reason is required")

    backjob = await get_backjob(db, backjob_id)
    if not actor.is_customer_of(backjob):
        raise AuthorizationError("Only the customer who applied can cancel this backjob")
    if backjob.status not in ACTIVE_CLAIM_STATUSES:
        raise ValidationError(f"Cannot cancel a backjob that is {backjob.status}")

    appointment = await get_appointment(db, backjob.appointment_id)
    backjob.status = CANCELLED_BY_CUSTOMER
    backjob.customer_cancellation_reason = reason
    backjob.resolved_at = now
    await _release_claim(db, backjob, appointment, now)

    emit_event(db, BACKJOB_CANCELLED, _backjob_payload(
        backjob, appointment, cancelled_by="customer", cancellation_reason=reason,
    ))
    await db.commit()

    logger.info(
        "Backjob %s cancelled by customer", str(backjob.id)[:8],
        extra={"backjob_id": str(backjob.id), "appointment_id": str(appointment.id)},
    )
    await run_conversation_hook(db, appointment, now, refresh=(backjob,))
    return backjob, appointment


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

async def dispute_backjob(
    db: AsyncSession,
    backjob_id: uuid.UUID,
    actor: Actor,
    reason: Optional[str],
    evidence: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> tuple[BackjobApplication, Appointment]:
    """
    Provider contests the claim. The warranty countdown resumes immediately;
    an admin arbitrates later.
    """
    now = now or utcnow()
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Dispute reason is required")

    backjob = await get_backjob(db, backjob_id)
    if not actor.is_provider_of(backjob):
        raise AuthorizationError("Only the appointment provider can dispute a backjob")
    if backjob.status not in (APPROVED, PENDING):
        raise ValidationError(f"Cannot dispute a backjob that is {backjob.status}")

    appointment = await get_appointment(db, backjob.appointment_id)
    if appointment.status not in (BACKJOB, IN_WARRANTY):
        # A rescheduled rework visit is taken as acceptance of the claim
        raise ValidationError(f"Cannot dispute a backjob once the appointment is {appointment.status}")

    backjob.status = DISPUTED
    backjob.provider_dispute_reason = reason
    backjob.provider_dispute_evidence = evidence
    await _release_claim(db, backjob, appointment, now)

    emit_event(db, BACKJOB_DISPUTED, _backjob_payload(backjob, appointment, dispute_reason=reason))
    await db.commit()

    logger.info(
        "Backjob %s disputed, appointment %s warranty resumed until %s",
        str(backjob.id)[:8], str(appointment.id)[:8], appointment.warranty_expires_at,
        extra={"backjob_id": str(backjob.id), "appointment_id": str(appointment.id)},
    )
    await run_conversation_hook(db, appointment, now, refresh=(backjob,))
    return backjob, appointment


async def reschedule_from_backjob(
    db: AsyncSession,
    appointment_id: uuid.UUID,
    actor: Actor,
    new_scheduled_date: datetime,
    availability_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Book the rework visit. The appointment returns to scheduled under the same id;
    the warranty stays paused until the work is finished again.
    """
    now = now or utcnow()
    appointment = await get_appointment(db, appointment_id)
    if not actor.is_provider_of(appointment):
        raise AuthorizationError("Only the appointment provider can reschedule a backjob")
    if appointment.status != BACKJOB:
        raise ValidationError("Appointment is not in backjob status")

    backjob = await find_approved_backjob(db, appointment.id)
    if backjob is None:
        raise ValidationError("No approved backjob found for this appointment")

    new_scheduled_date = as_utc(new_scheduled_date)
    if new_scheduled_date < now:
        raise ValidationError("New scheduled date must be in the future")

    conflicting = await find_schedule_conflict(
        db, appointment.provider_id, new_scheduled_date, exclude_id=appointment.id
    )
    if conflicting is not None:
        raise _conflict(conflicting, "Provider already has an appointment at this time")

    appointment.scheduled_date = new_scheduled_date
    appointment.availability_id = availability_id
    appointment.status = SCHEDULED

    emit_event(db, BACKJOB_RESCHEDULED, _backjob_payload(backjob, appointment))
    await db.commit()

    logger.info(
        "Backjob %s rescheduled to %s", str(backjob.id)[:8], new_scheduled_date.isoformat(),
        extra={"backjob_id": str(backjob.id), "appointment_id": str(appointment.id)},
    )
    return appointment


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

async def admin_update_backjob(
    db: AsyncSession,
    backjob_id: uuid.UUID,
    action: str,
    actor: Actor,
    admin_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[BackjobApplication, Appointment]:
    require_admin(actor)
    if action not in ADMIN_ACTIONS:
        raise ValidationError(f"Invalid action. Valid actions are: {', '.join(ADMIN_ACTIONS)}")

    now = now or utcnow()
    backjob = await get_backjob(db, backjob_id)
    appointment = await get_appointment(db, backjob.appointment_id)
    previous = backjob.status
    if action != "approve" and previous not in ACTIVE_CLAIM_STATUSES:
        raise ValidationError(f"Cannot {action} a backjob that is {previous}")
    if action == "cancel-by-user" and appointment.status in TERMINAL_APPOINTMENT_STATUSES:
        raise ValidationError(f"Appointment is already {appointment.status}")

    if action == "approve":
        existing = await find_approved_backjob(db, appointment.id, exclude_id=backjob.id)
        if existing is not None:
            raise _duplicate_claim(existing)
        _reopen_claim(appointment, now)
        backjob.status = APPROVED
        backjob.resolved_at = None

    elif action == "cancel-by-admin":
        # Terminal denial: the warranty ends here
        backjob.status = CANCELLED_BY_ADMIN
        backjob.resolved_at = now
        if appointment.status not in TERMINAL_APPOINTMENT_STATUSES:
            await complete_appointment(db, appointment, now)

    else:
        backjob.status = CANCELLED_BY_USER
        backjob.resolved_at = now
        await _release_claim(db, backjob, appointment, now)

    if admin_notes is not None:
        backjob.admin_notes = admin_notes

    emit_event(db, BACKJOB_STATUS_CHANGED, _backjob_payload(
        backjob, appointment, previous_status=previous, action=action,
    ))
    await _save_claim(db, appointment.id)

    logger.info(
        "Admin %s on backjob %s: %s -> %s (appointment %s)",
        action, str(backjob.id)[:8], previous, backjob.status, appointment.status,
        extra={"backjob_id": str(backjob.id), "appointment_id": str(appointment.id)},
    )
    await run_conversation_hook(db, appointment, now, refresh=(backjob,))
    return backjob, appointment


async def admin_approve_dispute(
    db: AsyncSession,
    backjob_id: uuid.UUID,
    actor: Actor,
    admin_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[BackjobApplication, Appointment]:
    """Side with the provider: the claim is denied and the warranty carries on."""
    require_admin(actor)
    now = now or utcnow()
    backjob = await get_backjob(db, backjob_id)
    if backjob.status != DISPUTED:
        raise ValidationError("Backjob is not disputed")

    appointment = await get_appointment(db, backjob.appointment_id)
    backjob.status = CANCELLED_BY_ADMIN
    backjob.admin_notes = admin_notes
    backjob.resolved_at = now
    await _release_claim(db, backjob, appointment, now)

    emit_event(db, BACKJOB_STATUS_CHANGED, _backjob_payload(
        backjob, appointment, previous_status=DISPUTED, action="approve-dispute",
    ))
    await db.commit()

    logger.info(
        "Dispute on backjob %s upheld, claim cancelled", str(backjob.id)[:8],
        extra={"backjob_id": str(backjob.id), "appointment_id": str(appointment.id)},
    )
    await run_conversation_hook(db, appointment, now, refresh=(backjob,))
    return backjob, appointment


async def admin_reject_dispute(
    db: AsyncSession,
    backjob_id: uuid.UUID,
    actor: Actor,
    admin_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[BackjobApplication, Appointment]:
    """Side with the customer: the claim stands and the provider must reschedule."""
    require_admin(actor)
    now = now or utcnow()
    backjob = await get_backjob(db, backjob_id)
    if backjob.status != DISPUTED:
        raise ValidationError("Backjob is not disputed")

    appointment = await get_appointment(db, backjob.appointment_id)
    existing = await find_approved_backjob(db, appointment.id, exclude_id=backjob.id)
    if existing is not None:
        raise _duplicate_claim(existing)

    _reopen_claim(appointment, now)
    backjob.status = APPROVED
    backjob.admin_notes = admin_notes

    emit_event(db, BACKJOB_STATUS_CHANGED, _backjob_payload(
        backjob, appointment, previous_status=DISPUTED, action="reject-dispute",
    ))
    await _save_claim(db, appointment.id)

    logger.info(
        "Dispute on backjob %s rejected, claim reinstated", str(backjob.id)[:8],
        extra={"backjob_id": str(backjob.id), "appointment_id": str(appointment.id)},
    )
    await run_conversation_hook(db, appointment, now, refresh=(backjob,))
    return backjob, appointment


async def list_backjobs(
    db: AsyncSession,
    actor: Actor,
    status: Optional[str] = None,
    page: int = 1,
    per_page: int = 10,
) -> tuple[list[BackjobApplication], int]:
    require_admin(actor)
    if status is not None and status not in BACKJOB_STATUSES:
        raise ValidationError(f"Invalid status. Valid statuses are: {', '.join(BACKJOB_STATUSES)}")

    query = select(BackjobApplication)
    if status:
        query = query.where(BackjobApplication.status == status)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
    result = await db.execute(
        query.order_by(desc(BackjobApplication.created_at)).offset((page - 1) * per_page).limit(per_page)
    )
    return list(result.scalars().all()), total
