"""
Conversation endpoints. Access is re-derived from the pair's appointments on
every check and every message.
"""
import math
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.api.auth import get_current_actor
from fixmo.database import get_db
from fixmo.schemas.api import (
    ConversationListResponse,
    ConversationOut,
    MessageCreateRequest,
    MessageOut,
    MessageResponse,
    MessagingStatusOut,
)
from fixmo.services import conversations as conversation_service
from fixmo.services.actors import Actor

router = APIRouter(tags=["conversations"])


@router.get("/api/v1/conversations", response_model=ConversationListResponse)
async def list_conversations(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    conversations, total = await conversation_service.list_conversations(db, actor, page=page, per_page=per_page)
    return ConversationListResponse(
        data=[ConversationOut.model_validate(c) for c in conversations],
        total=total,
        page=page,
        pages=math.ceil(total / per_page) if total else 0,
    )


@router.get("/api/v1/conversations/status/{customer_id}/{provider_id}")
async def messaging_status(
    customer_id: uuid.UUID,
    provider_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    check = await conversation_service.get_messaging_status(db, actor, customer_id, provider_id)
    return {
        "success": True,
        "data": MessagingStatusOut(
            has_appointment=check.has_appointment,
            can_message=check.can_message,
            latest_status=check.latest_status,
            active_appointment_ids=check.active_appointment_ids,
            warranty_expires_at=check.warranty_expires_at,
        ),
    }


@router.post("/api/v1/conversations/{conversation_id}/messages", response_model=MessageResponse, status_code=201)
async def send_message(
    conversation_id: uuid.UUID,
    payload: MessageCreateRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    message = await conversation_service.send_message(db, conversation_id, actor, payload.content)
    return MessageResponse(data=MessageOut.model_validate(message))
