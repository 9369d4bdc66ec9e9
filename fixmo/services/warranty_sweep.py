"""
Stale warranty sweep - completes in-warranty/backjob appointments whose
window lapsed while nothing held it paused.

Open claims on such an appointment are cancelled by the system so a claim
can never outlive its warranty.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.models.appointment import Appointment, IN_WARRANTY, BACKJOB
from fixmo.models.backjob import BackjobApplication, APPROVED, PENDING, CANCELLED_BY_ADMIN
from fixmo.services.completion import complete_appointment
from fixmo.services.conversations import run_conversation_hook
from fixmo.services.outbox import (
    emit_event,
    appointment_payload,
    APPOINTMENT_COMPLETED,
    BACKJOB_STATUS_CHANGED,
)
from fixmo.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 100
SYSTEM_CANCEL_NOTE = "Automatically cancelled by system: warranty period expired"


async def find_expired_warranties(db: AsyncSession, now: datetime, limit: int = SWEEP_BATCH_SIZE) -> list[Appointment]:
    result = await db.execute(
        select(Appointment)
        .where(
            and_(
                Appointment.status.in_([IN_WARRANTY, BACKJOB]),
                Appointment.warranty_expires_at.is_not(None),
                Appointment.warranty_expires_at < now,
                Appointment.warranty_paused_at.is_(None),
            )
        )
        .order_by(Appointment.warranty_expires_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def _expire_appointment(db: AsyncSession, appointment: Appointment, now: datetime) -> int:
    """Cancel open claims and complete one appointment. Returns the number of claims cancelled."""
    result = await db.execute(
        select(BackjobApplication).where(
            and_(
                BackjobApplication.appointment_id == appointment.id,
                BackjobApplication.status.in_([APPROVED, PENDING]),
            )
        )
    )
    backjobs = result.scalars().all()
    previous = appointment.status

    for backjob in backjobs:
        backjob.status = CANCELLED_BY_ADMIN
        backjob.admin_notes = SYSTEM_CANCEL_NOTE
        backjob.resolved_at = now

    # The lapsed expiry is kept as the completion's expiry
    await complete_appointment(db, appointment, now, expired_at=as_utc(appointment.warranty_expires_at))

    for backjob in backjobs:
        emit_event(db, BACKJOB_STATUS_CHANGED, appointment_payload(
            appointment,
            backjob_id=backjob.id,
            backjob_status=backjob.status,
            action="warranty-expired",
        ))
    emit_event(db, APPOINTMENT_COMPLETED, appointment_payload(
        appointment, previous_status=previous, auto_completed=True,
    ))
    return len(backjobs)


async def sweep_expired_warranties(db: AsyncSession, now: Optional[datetime] = None) -> dict[str, int]:
    """
    Complete every lapsed, unpaused warranty. Each appointment commits on its own
    so one bad row does not hold back the rest. Idempotent.
    """
    now = now or utcnow()
    summary = {"appointments_completed": 0, "backjobs_cancelled": 0, "errors": 0}
    failed_ids = set()

    while True:
        found = await find_expired_warranties(db, now)
        batch = [a.id for a in found if a.id not in failed_ids]
        if not batch:
            break

        for appointment_id in batch:
            # Re-fetch: a rollback earlier in the batch expires loaded rows
            appointment = await db.get(Appointment, appointment_id)
            try:
                cancelled = await _expire_appointment(db, appointment, now)
                await db.commit()
            except Exception as e:
                logger.error(
                    "Warranty sweep failed for appointment %s: %s", str(appointment_id)[:8], str(e),
                    exc_info=True, extra={"appointment_id": str(appointment_id)},
                )
                await db.rollback()
                failed_ids.add(appointment_id)
                summary["errors"] += 1
                continue

            summary["appointments_completed"] += 1
            summary["backjobs_cancelled"] += cancelled
            logger.info(
                "Auto-completed appointment %s after warranty expiry (%d claim(s) cancelled)",
                str(appointment_id)[:8], cancelled,
                extra={"appointment_id": str(appointment_id)},
            )
            await run_conversation_hook(db, appointment, now)

        if len(found) < SWEEP_BATCH_SIZE:
            break

    return summary
