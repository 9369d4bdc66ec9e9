"""
Appointment endpoints - booking, status transitions, cancellation, completion,
rescheduling, and the appointment-scoped warranty claim actions.
"""
import logging
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.api.auth import get_current_actor
from fixmo.database import get_db
from fixmo.schemas.api import (
    AppointmentCreateRequest,
    AppointmentOut,
    AppointmentResponse,
    BackjobApplyRequest,
    BackjobOut,
    BackjobRescheduleRequest,
    BackjobResponse,
    CancelRequest,
    RescheduleRequest,
    StatusUpdateRequest,
)
from fixmo.services import appointments as appointment_service
from fixmo.services import backjobs as backjob_service
from fixmo.services.actors import Actor

logger = logging.getLogger(__name__)
router = APIRouter(tags=["appointments"])


def _appointment_response(appointment, message: str) -> AppointmentResponse:
    return AppointmentResponse(message=message, data=AppointmentOut.model_validate(appointment))


@router.post("/api/v1/appointments", response_model=AppointmentResponse, status_code=201)
async def create_appointment(
    payload: AppointmentCreateRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    appointment = await appointment_service.create_appointment(
        db,
        actor,
        customer_id=payload.customer_id,
        provider_id=payload.provider_id,
        service_id=payload.service_id,
        scheduled_date=payload.scheduled_date,
        availability_id=payload.availability_id,
        final_price=payload.final_price,
        repair_description=payload.repair_description,
    )
    return _appointment_response(appointment, "Appointment created successfully")


@router.patch("/api/v1/appointments/{appointment_id}/status", response_model=AppointmentResponse)
async def update_appointment_status(
    appointment_id: uuid.UUID,
    payload: StatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Move an appointment along its lifecycle. Finishing work starts the warranty."""
    appointment = await appointment_service.update_appointment_status(
        db, appointment_id, payload.status, actor, reason=payload.cancellation_reason,
    )
    return _appointment_response(appointment, f"Appointment status updated to {appointment.status}")


@router.post("/api/v1/appointments/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: uuid.UUID,
    payload: CancelRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    appointment = await appointment_service.cancel_appointment(
        db, appointment_id, payload.cancellation_reason, actor,
    )
    return _appointment_response(appointment, "Appointment cancelled successfully")


@router.post("/api/v1/appointments/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Customer confirms the job is done. Ends the warranty early."""
    appointment = await appointment_service.complete_appointment_by_customer(db, appointment_id, actor)
    return _appointment_response(appointment, "Appointment marked as completed")


@router.post("/api/v1/appointments/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_id: uuid.UUID,
    payload: RescheduleRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    appointment = await appointment_service.reschedule_appointment(
        db, appointment_id, payload.new_scheduled_date, actor, availability_id=payload.availability_id,
    )
    return _appointment_response(appointment, "Appointment rescheduled successfully")


@router.post("/api/v1/appointments/{appointment_id}/backjobs", response_model=BackjobResponse, status_code=201)
async def apply_backjob(
    appointment_id: uuid.UUID,
    payload: BackjobApplyRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """File a warranty claim. The claim is approved at once and the warranty pauses."""
    backjob, appointment = await backjob_service.apply_backjob(
        db,
        appointment_id,
        actor,
        payload.reason,
        evidence_description=payload.evidence_description,
        evidence_files=payload.evidence_files,
    )
    return BackjobResponse(
        message="Backjob application submitted and approved",
        data=BackjobOut.model_validate(backjob),
        appointment=AppointmentOut.model_validate(appointment),
    )


@router.post("/api/v1/appointments/{appointment_id}/backjob-reschedule", response_model=AppointmentResponse)
async def reschedule_from_backjob(
    appointment_id: uuid.UUID,
    payload: BackjobRescheduleRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    appointment = await backjob_service.reschedule_from_backjob(
        db, appointment_id, actor, payload.new_scheduled_date, payload.availability_id,
    )
    return _appointment_response(appointment, "Backjob rescheduled successfully")
