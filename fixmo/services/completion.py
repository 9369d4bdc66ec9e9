"""
Completing an appointment - shared by the status endpoint, the customer's
"mark as done", admin denial of a claim, and the sweeps.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.models.appointment import COMPLETED
from fixmo.models.backjob import BackjobApplication, APPROVED
from fixmo.models.backjob import COMPLETED as BACKJOB_COMPLETED
from fixmo.services.warranty import expire_warranty

logger = logging.getLogger(__name__)


async def complete_appointment(
    db: AsyncSession,
    appointment,
    now: datetime,
    expired_at: Optional[datetime] = None,
) -> int:
    """
    Mark the appointment completed and force-expire its warranty.

    Any approved backjob on it is resolved as completed in the same session.
    expired_at lets the sweeps keep an expiry that already lapsed; it defaults to now.
    Returns the number of backjobs completed.
    """
    appointment.status = COMPLETED
    appointment.completed_at = now
    expire_warranty(appointment, expired_at or now)

    result = await db.execute(
        select(BackjobApplication).where(
            and_(
                BackjobApplication.appointment_id == appointment.id,
                BackjobApplication.status == APPROVED,
            )
        )
    )
    backjobs = result.scalars().all()
    for backjob in backjobs:
        backjob.status = BACKJOB_COMPLETED
        backjob.resolved_at = now

    if backjobs:
        logger.info(
            "Appointment %s completed, resolved %d approved backjob(s)",
            str(appointment.id)[:8], len(backjobs),
            extra={"appointment_id": str(appointment.id)},
        )
    return len(backjobs)
