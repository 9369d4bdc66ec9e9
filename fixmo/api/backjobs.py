"""
Backjob endpoints for participants - provider dispute and customer cancellation.
Admin arbitration lives in fixmo.api.admin.
"""
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.api.auth import get_current_actor
from fixmo.database import get_db
from fixmo.schemas.api import (
    AppointmentOut,
    BackjobCancelRequest,
    BackjobDisputeRequest,
    BackjobOut,
    BackjobResponse,
)
from fixmo.services import backjobs as backjob_service
from fixmo.services.actors import Actor

router = APIRouter(tags=["backjobs"])


def backjob_response(backjob, appointment, message: str) -> BackjobResponse:
    return BackjobResponse(
        message=message,
        data=BackjobOut.model_validate(backjob),
        appointment=AppointmentOut.model_validate(appointment),
    )


@router.post("/api/v1/backjobs/{backjob_id}/dispute", response_model=BackjobResponse)
async def dispute_backjob(
    backjob_id: uuid.UUID,
    payload: BackjobDisputeRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    backjob, appointment = await backjob_service.dispute_backjob(
        db, backjob_id, actor, payload.dispute_reason, evidence=payload.dispute_evidence,
    )
    return backjob_response(backjob, appointment, "Backjob disputed, warranty resumed")


@router.post("/api/v1/backjobs/{backjob_id}/cancel", response_model=BackjobResponse)
async def cancel_backjob(
    backjob_id: uuid.UUID,
    payload: BackjobCancelRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    backjob, appointment = await backjob_service.cancel_backjob_by_customer(
        db, backjob_id, actor, payload.cancellation_reason,
    )
    return backjob_response(backjob, appointment, "Backjob cancelled, warranty resumed")
