"""
Request and response schemas for the appointment, backjob and conversation endpoints.
"""
import uuid
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


# === REQUESTS ===

class AppointmentCreateRequest(BaseModel):
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    service_id: uuid.UUID
    scheduled_date: datetime
    availability_id: Optional[uuid.UUID] = None
    final_price: Optional[float] = Field(default=None, ge=0)
    repair_description: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str
    cancellation_reason: Optional[str] = None


class CancelRequest(BaseModel):
    cancellation_reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    new_scheduled_date: datetime
    availability_id: Optional[uuid.UUID] = None


class BackjobRescheduleRequest(BaseModel):
    new_scheduled_date: datetime
    availability_id: uuid.UUID


class BackjobApplyRequest(BaseModel):
    reason: str
    evidence_description: Optional[str] = None
    evidence_files: list[str] = Field(default_factory=list)


class BackjobDisputeRequest(BaseModel):
    dispute_reason: str
    dispute_evidence: Optional[dict[str, Any]] = None


class BackjobCancelRequest(BaseModel):
    cancellation_reason: str


class AdminBackjobUpdateRequest(BaseModel):
    action: str
    admin_notes: Optional[str] = None


class AdminNotesRequest(BaseModel):
    admin_notes: Optional[str] = None


class MessageCreateRequest(BaseModel):
    content: str


# === RESPONSES ===

class AppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    service_id: uuid.UUID
    availability_id: Optional[uuid.UUID] = None
    status: str
    scheduled_date: datetime
    final_price: Optional[float] = None
    repair_description: Optional[str] = None
    finished_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    warranty_days: Optional[int] = None
    warranty_expires_at: Optional[datetime] = None
    warranty_paused_at: Optional[datetime] = None
    warranty_remaining_days: Optional[int] = None
    created_at: datetime


class BackjobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    appointment_id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    status: str
    reason: str
    evidence: Optional[dict[str, Any]] = None
    provider_dispute_reason: Optional[str] = None
    provider_dispute_evidence: Optional[dict[str, Any]] = None
    customer_cancellation_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    status: str
    warranty_expires: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    conversation_id: uuid.UUID
    sender_id: uuid.UUID
    sender_type: str
    content: str
    created_at: datetime


class MessagingStatusOut(BaseModel):
    has_appointment: bool
    can_message: bool
    latest_status: Optional[str] = None
    active_appointment_ids: list[uuid.UUID] = Field(default_factory=list)
    warranty_expires_at: Optional[datetime] = None


class AppointmentResponse(BaseModel):
    success: bool = True
    message: str
    data: AppointmentOut


class BackjobResponse(BaseModel):
    success: bool = True
    message: str
    data: BackjobOut
    appointment: AppointmentOut


class BackjobListResponse(BaseModel):
    success: bool = True
    data: list[BackjobOut]
    total: int
    page: int
    pages: int


class ConversationListResponse(BaseModel):
    success: bool = True
    data: list[ConversationOut]
    total: int
    page: int
    pages: int


class MessageResponse(BaseModel):
    success: bool = True
    data: MessageOut
