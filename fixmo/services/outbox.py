"""
Domain events - written to the outbox table inside the caller's transaction.

The state change and its events commit together; fixmo.workers.outbox_dispatcher
delivers them (email, push, real-time) afterwards. Nothing here talks to the network.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.models.outbox import OutboxEvent

logger = logging.getLogger(__name__)

APPOINTMENT_CREATED = "appointment_created"
APPOINTMENT_STATUS_CHANGED = "appointment_status_changed"
APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
APPOINTMENT_CANCELLED = "appointment_cancelled"
APPOINTMENT_COMPLETED = "appointment_completed"
BACKJOB_APPLIED = "backjob_applied"
BACKJOB_DISPUTED = "backjob_disputed"
BACKJOB_CANCELLED = "backjob_cancelled"
BACKJOB_STATUS_CHANGED = "backjob_status_changed"
BACKJOB_RESCHEDULED = "backjob_rescheduled"
CONVERSATION_OPENED = "conversation_opened"
CONVERSATION_CLOSED = "conversation_closed"
MESSAGE_SENT = "message_sent"


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def emit_event(db: AsyncSession, event_type: str, payload: Optional[dict[str, Any]] = None) -> OutboxEvent:
    """Queue a domain event in the current transaction."""
    event = OutboxEvent(event_type=event_type, payload=_jsonable(payload or {}), status="pending")
    db.add(event)
    logger.debug("Event queued: %s", event_type, extra={"event_type": event_type})
    return event


def appointment_payload(appointment, **extra) -> dict[str, Any]:
    """Common appointment fields carried by appointment/backjob events."""
    payload = {
        "appointment_id": appointment.id,
        "customer_id": appointment.customer_id,
        "provider_id": appointment.provider_id,
        "service_id": appointment.service_id,
        "status": appointment.status,
        "scheduled_date": appointment.scheduled_date,
        "warranty_expires_at": appointment.warranty_expires_at,
        "warranty_remaining_days": appointment.warranty_remaining_days,
    }
    payload.update(extra)
    return payload
