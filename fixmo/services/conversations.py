"""
Conversation lifecycle - one thread per customer/provider pair, open while any
appointment between them licenses messaging.

- find_or_create_conversation / extend_conversation_warranty: the store adapter.
- check_appointment_status: the per-pair aggregate. Also completes in-warranty
  appointments whose window has lapsed and memoises derivable expiries.
- sync_conversation: apply the aggregate to the pair's conversation (open/close).
- handle_appointment_warranty: post-transition hook used by the state machine.
- reconcile_conversations: the periodic batch over every conversation.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.exceptions import AuthorizationError, NotFoundError, ValidationError
from fixmo.models.appointment import (
    Appointment,
    ACTIVE_APPOINTMENT_STATUSES,
    CANCELLED,
    COMPLETED,
    IN_WARRANTY,
)
from fixmo.models.conversation import Conversation, Message, ACTIVE, CLOSED
from fixmo.services.actors import Actor, CUSTOMER, PROVIDER
from fixmo.services.completion import complete_appointment
from fixmo.services.outbox import (
    emit_event,
    appointment_payload,
    APPOINTMENT_COMPLETED,
    CONVERSATION_OPENED,
    CONVERSATION_CLOSED,
    MESSAGE_SENT,
)
from fixmo.services.warranty import calculate_warranty_expiry, derived_expiry
from fixmo.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

RECONCILE_BATCH_SIZE = 200
MAX_MESSAGE_LENGTH = 5000


@dataclass
class AppointmentStatusCheck:
    """Result of check_appointment_status for one pair."""
    has_appointment: bool
    can_message: bool
    latest_status: Optional[str] = None
    active_appointment_ids: list[uuid.UUID] = field(default_factory=list)
    auto_completed_ids: list[uuid.UUID] = field(default_factory=list)
    warranty_expires_at: Optional[datetime] = None


@dataclass
class ConversationSync:
    conversation: Optional[Conversation]
    can_message: bool
    change: Optional[str] = None  # "opened", "reopened", "closed"


# ---------------------------------------------------------------------------
# Store adapter
# ---------------------------------------------------------------------------

async def get_conversation_for_pair(
    db: AsyncSession, customer_id: uuid.UUID, provider_id: uuid.UUID
) -> Optional[Conversation]:
    result = await db.execute(
        select(Conversation).where(
            and_(
                Conversation.customer_id == customer_id,
                Conversation.provider_id == provider_id,
            )
        )
    )
    return result.scalar_one_or_none()


def extend_conversation_warranty(conversation: Conversation, new_expiry: Optional[datetime]) -> bool:
    """Move warranty_expires forward only. Returns True if it changed."""
    if new_expiry is None:
        return False
    current = as_utc(conversation.warranty_expires)
    new_expiry = as_utc(new_expiry)
    if current is not None and new_expiry <= current:
        return False
    conversation.warranty_expires = new_expiry
    logger.info(
        "Extended conversation %s warranty to %s",
        str(conversation.id)[:8], new_expiry.isoformat(),
        extra={"conversation_id": str(conversation.id)},
    )
    return True


async def find_or_create_conversation(
    db: AsyncSession,
    customer_id: uuid.UUID,
    provider_id: uuid.UUID,
    warranty_expires: Optional[datetime] = None,
) -> tuple[Conversation, Optional[str]]:
    """
    Reuse the pair's conversation, reactivating it if closed; create it otherwise.
    Returns (conversation, change) where change is "opened", "reopened" or None.
    """
    conversation = await get_conversation_for_pair(db, customer_id, provider_id)

    if conversation is None:
        conversation = Conversation(
            customer_id=customer_id,
            provider_id=provider_id,
            status=ACTIVE,
            warranty_expires=as_utc(warranty_expires),
        )
        db.add(conversation)
        await db.flush()
        _emit_conversation_event(db, conversation, CONVERSATION_OPENED)
        return conversation, "opened"

    change = None
    if conversation.status == CLOSED:
        conversation.status = ACTIVE
        conversation.closed_at = None
        change = "reopened"
        _emit_conversation_event(db, conversation, CONVERSATION_OPENED)
        logger.info(
            "Reopened conversation %s", str(conversation.id)[:8],
            extra={"conversation_id": str(conversation.id)},
        )

    extend_conversation_warranty(conversation, warranty_expires)
    return conversation, change


def _close_conversation(db: AsyncSession, conversation: Conversation, now: datetime) -> None:
    conversation.status = CLOSED
    conversation.closed_at = now
    _emit_conversation_event(db, conversation, CONVERSATION_CLOSED)
    logger.info(
        "Closed conversation %s", str(conversation.id)[:8],
        extra={"conversation_id": str(conversation.id)},
    )


def _emit_conversation_event(db: AsyncSession, conversation: Conversation, event_type: str) -> None:
    emit_event(db, event_type, {
        "conversation_id": conversation.id,
        "customer_id": conversation.customer_id,
        "provider_id": conversation.provider_id,
        "status": conversation.status,
        "warranty_expires": conversation.warranty_expires,
    })


# ---------------------------------------------------------------------------
# Aggregate check
# ---------------------------------------------------------------------------

async def check_appointment_status(
    db: AsyncSession,
    customer_id: uuid.UUID,
    provider_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> AppointmentStatusCheck:
    """
    Decide whether the pair may message, looking at every non-cancelled appointment.

    Side effects on in-warranty appointments:
    - lapsed window (stored, or derived from finished_at + warranty_days) -> completed
    - derivable but still open -> the derived expiry is stored
    """
    now = now or utcnow()
    result = await db.execute(
        select(Appointment)
        .where(
            and_(
                Appointment.customer_id == customer_id,
                Appointment.provider_id == provider_id,
                Appointment.status != CANCELLED,
            )
        )
        .order_by(desc(Appointment.created_at))
    )
    appointments = result.scalars().all()

    if not appointments:
        return AppointmentStatusCheck(has_appointment=False, can_message=False)

    auto_completed = []
    for appointment in appointments:
        if appointment.status != IN_WARRANTY:
            continue
        expires_at = derived_expiry(appointment)
        if expires_at is None:
            continue
        if expires_at < now:
            await complete_appointment(db, appointment, now, expired_at=expires_at)
            emit_event(db, APPOINTMENT_COMPLETED, appointment_payload(appointment, auto_completed=True))
            auto_completed.append(appointment.id)
            logger.info(
                "Auto-completed appointment %s (warranty lapsed %s)",
                str(appointment.id)[:8], expires_at.isoformat(),
                extra={"appointment_id": str(appointment.id)},
            )
        elif appointment.warranty_expires_at is None:
            appointment.warranty_expires_at = expires_at

    active = [a for a in appointments if a.status in ACTIVE_APPOINTMENT_STATUSES]
    expiries = [as_utc(a.warranty_expires_at) for a in active if a.warranty_expires_at is not None]

    return AppointmentStatusCheck(
        has_appointment=True,
        can_message=bool(active),
        latest_status=appointments[0].status,
        active_appointment_ids=[a.id for a in active],
        auto_completed_ids=auto_completed,
        warranty_expires_at=max(expiries) if expiries else None,
    )


async def sync_conversation(
    db: AsyncSession,
    customer_id: uuid.UUID,
    provider_id: uuid.UUID,
    warranty_expires: Optional[datetime] = None,
    create_missing: bool = False,
    now: Optional[datetime] = None,
) -> ConversationSync:
    """Bring the pair's conversation status in line with check_appointment_status."""
    now = now or utcnow()
    check = await check_appointment_status(db, customer_id, provider_id, now)
    conversation = await get_conversation_for_pair(db, customer_id, provider_id)
    change = None

    if check.can_message:
        if conversation is not None or create_missing:
            conversation, change = await find_or_create_conversation(
                db, customer_id, provider_id, warranty_expires
            )
    elif conversation is not None:
        extend_conversation_warranty(conversation, warranty_expires)
        if conversation.status == ACTIVE:
            _close_conversation(db, conversation, now)
            change = "closed"

    return ConversationSync(conversation=conversation, can_message=check.can_message, change=change)


async def is_messaging_allowed(db: AsyncSession, customer_id: uuid.UUID, provider_id: uuid.UUID) -> bool:
    check = await check_appointment_status(db, customer_id, provider_id)
    return check.can_message


# ---------------------------------------------------------------------------
# State machine hook
# ---------------------------------------------------------------------------

def conversation_expiry_for(appointment) -> Optional[datetime]:
    """
    Expiry to stamp on the pair's conversation for this appointment.
    Before the work is finished the window is provisional: scheduled date + warranty days.
    """
    if appointment.status == COMPLETED:
        return as_utc(appointment.warranty_expires_at)
    expiry = derived_expiry(appointment)
    if expiry is None and appointment.scheduled_date is not None:
        expiry = calculate_warranty_expiry(appointment.scheduled_date, appointment.warranty_days)
    return expiry


async def handle_appointment_warranty(
    db: AsyncSession, appointment, now: Optional[datetime] = None
) -> ConversationSync:
    """Open, extend or close the pair's conversation after an appointment changed."""
    return await sync_conversation(
        db,
        appointment.customer_id,
        appointment.provider_id,
        warranty_expires=conversation_expiry_for(appointment),
        create_missing=True,
        now=now,
    )


async def run_conversation_hook(
    db: AsyncSession, appointment, now: Optional[datetime] = None, refresh: tuple = ()
) -> None:
    """
    Run handle_appointment_warranty after the primary transition has committed.
    Failures are logged and rolled back on their own; the transition stands.
    Rows the caller still needs (the appointment plus `refresh`) are reloaded after a rollback.
    """
    try:
        await handle_appointment_warranty(db, appointment, now)
        await db.commit()
    except Exception as e:
        logger.error(
            "Conversation hook failed for appointment %s: %s",
            str(appointment.id)[:8], str(e),
            exc_info=True,
            extra={"appointment_id": str(appointment.id)},
        )
        await db.rollback()
        for row in (appointment, *refresh):
            await db.refresh(row)


# ---------------------------------------------------------------------------
# Periodic reconciliation
# ---------------------------------------------------------------------------

async def reconcile_conversations(db: AsyncSession, now: Optional[datetime] = None) -> dict[str, int]:
    """
    Re-derive every active/closed conversation from current appointment state.
    Idempotent: a second run with no intervening changes mutates nothing.
    """
    now = now or utcnow()
    summary = {"checked": 0, "reopened": 0, "closed": 0, "appointments_completed": 0}

    last_id = None
    while True:
        query = (
            select(Conversation.id, Conversation.customer_id, Conversation.provider_id)
            .where(Conversation.status.in_([ACTIVE, CLOSED]))
            .order_by(Conversation.id)
            .limit(RECONCILE_BATCH_SIZE)
        )
        if last_id is not None:
            query = query.where(Conversation.id > last_id)
        rows = (await db.execute(query)).all()
        if not rows:
            break

        for conversation_id, customer_id, provider_id in rows:
            summary["checked"] += 1
            check = await check_appointment_status(db, customer_id, provider_id, now)
            summary["appointments_completed"] += len(check.auto_completed_ids)

            conversation = await db.get(Conversation, conversation_id)
            if check.can_message and conversation.status == CLOSED:
                conversation.status = ACTIVE
                conversation.closed_at = None
                _emit_conversation_event(db, conversation, CONVERSATION_OPENED)
                summary["reopened"] += 1
            elif not check.can_message and conversation.status == ACTIVE:
                _close_conversation(db, conversation, now)
                summary["closed"] += 1

        last_id = rows[-1][0]

    return summary


async def conversation_statistics(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """Counts for the admin warranty status view."""
    now = now or utcnow()
    by_status = dict(
        (await db.execute(
            select(Conversation.status, func.count(Conversation.id)).group_by(Conversation.status)
        )).all()
    )
    active_with_warranty = (await db.execute(
        select(func.count(Conversation.id)).where(
            and_(Conversation.status == ACTIVE, Conversation.warranty_expires.is_not(None))
        )
    )).scalar() or 0
    pending_expiry = (await db.execute(
        select(func.count(Conversation.id)).where(
            and_(Conversation.status == ACTIVE, Conversation.warranty_expires < now)
        )
    )).scalar() or 0
    return {
        "conversations_by_status": by_status,
        "active_with_warranty": active_with_warranty,
        "pending_expiry": pending_expiry,
    }


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------

async def list_conversations(
    db: AsyncSession,
    actor: Actor,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Conversation], int]:
    """The actor's conversations that are not closed, most recently active first."""
    if actor.user_type == CUSTOMER:
        condition = Conversation.customer_id == actor.user_id
    elif actor.user_type == PROVIDER:
        condition = Conversation.provider_id == actor.user_id
    else:
        raise ValidationError("Only customers and providers have conversations")

    query = select(Conversation).where(and_(condition, Conversation.status != CLOSED))
    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
    result = await db.execute(
        query.order_by(desc(Conversation.updated_at)).offset((page - 1) * per_page).limit(per_page)
    )
    return list(result.scalars().all()), total


async def get_messaging_status(
    db: AsyncSession,
    actor: Actor,
    customer_id: uuid.UUID,
    provider_id: uuid.UUID,
) -> AppointmentStatusCheck:
    if not actor.is_admin and actor.user_id not in (customer_id, provider_id):
        raise AuthorizationError("You can only check your own conversations")
    check = await check_appointment_status(db, customer_id, provider_id)
    await db.commit()
    return check


async def send_message(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    actor: Actor,
    content: str,
    now: Optional[datetime] = None,
) -> Message:
    """
    Post a message after re-checking the pair's appointments.
    A pair with nothing active gets its conversation closed and the message refused.
    """
    now = now or utcnow()
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content is required")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")

    conversation = await db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    if not (actor.is_customer_of(conversation) or actor.is_provider_of(conversation)):
        raise AuthorizationError("You are not a participant in this conversation")

    synced = await sync_conversation(
        db, conversation.customer_id, conversation.provider_id, now=now
    )
    if not synced.can_message:
        await db.commit()
        raise AuthorizationError(
            "Messaging is closed: no active appointment or warranty with this user",
            detail={"conversation_id": str(conversation.id), "status": conversation.status},
        )

    message = Message(
        conversation_id=conversation.id,
        sender_id=actor.user_id,
        sender_type=actor.user_type,
        content=content,
        created_at=now,
    )
    db.add(message)
    conversation.last_message_at = now
    await db.flush()

    emit_event(db, MESSAGE_SENT, {
        "conversation_id": conversation.id,
        "message_id": message.id,
        "customer_id": conversation.customer_id,
        "provider_id": conversation.provider_id,
        "sender_type": actor.user_type,
        "preview": content[:100],
    })
    await db.commit()
    return message
