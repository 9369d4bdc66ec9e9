"""
Notification fan-out for domain events - email, push and real-time broadcast.

deliver_event() is called by the outbox dispatcher once per event. Each channel
is attempted once and independently; failures are logged and reported back,
never raised.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.models.outbox import OutboxEvent
from fixmo.models.service_listing import ServiceListing
from fixmo.models.user import Customer, ServiceProvider
from fixmo.services import event_bus, outbox, push, transactional_email as email

logger = logging.getLogger(__name__)


def _uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class _Delivery:
    """Recipients for one event plus the errors collected while notifying them."""

    def __init__(self, db: AsyncSession, event: OutboxEvent):
        self.db = db
        self.event = event
        self.payload: dict[str, Any] = event.payload or {}
        self.customer: Optional[Customer] = None
        self.provider: Optional[ServiceProvider] = None
        self.service_title = "your service"
        self.errors: list[str] = []

    async def load(self) -> None:
        customer_id = _uuid(self.payload.get("customer_id"))
        provider_id = _uuid(self.payload.get("provider_id"))
        service_id = _uuid(self.payload.get("service_id"))
        if customer_id is not None:
            self.customer = await self.db.get(Customer, customer_id)
        if provider_id is not None:
            self.provider = await self.db.get(ServiceProvider, provider_id)
        if service_id is not None:
            service = await self.db.get(ServiceListing, service_id)
            if service is not None:
                self.service_title = service.title
        self.service_title = self.payload.get("service_title") or self.service_title

    async def attempt(self, channel: str, send: Awaitable) -> None:
        try:
            result = await send
        except Exception as e:
            logger.error(
                "%s delivery raised for %s: %s", channel, self.event.event_type, str(e),
                exc_info=True, extra={"event_type": self.event.event_type},
            )
            self.errors.append(f"{channel}: {e}")
            return
        if isinstance(result, dict) and result.get("status") == "error":
            self.errors.append(f"{channel}: {result.get('error')}")

    async def email_customer(self, make: Callable[[str, str], Awaitable]) -> None:
        if self.customer is not None:
            await self.attempt("email", make(self.customer.email, self.customer.first_name))

    async def email_provider(self, make: Callable[[str, str], Awaitable]) -> None:
        if self.provider is not None:
            await self.attempt("email", make(self.provider.email, self.provider.first_name))

    async def push_to(self, user_type: str, title: str, body: str) -> None:
        user_id = _uuid(self.payload.get(f"{user_type}_id"))
        if user_id is None:
            return
        data = {
            "type": self.event.event_type,
            "appointment_id": self.payload.get("appointment_id"),
            "backjob_id": self.payload.get("backjob_id"),
            "conversation_id": self.payload.get("conversation_id"),
        }
        await self.attempt("push", push.send_push_notification(
            self.db, user_id, user_type, title, body, {k: v for k, v in data.items() if v},
        ))

    async def broadcast(self) -> None:
        delivered = await event_bus.broadcast_to_participants(
            self.payload.get("customer_id"),
            self.payload.get("provider_id"),
            self.event.event_type,
            self.payload,
        )
        if delivered < 2:
            self.errors.append("realtime: broadcast incomplete")

    @property
    def appointment_id(self):
        return self.payload.get("appointment_id")

    @property
    def scheduled_date(self) -> Optional[datetime]:
        return _datetime(self.payload.get("scheduled_date"))


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def _appointment_created(d: _Delivery) -> None:
    await d.email_customer(lambda to, name: email.send_booking_confirmation(
        to, name, d.service_title, d.scheduled_date, d.appointment_id, recipient="customer",
    ))
    await d.email_provider(lambda to, name: email.send_booking_confirmation(
        to, name, d.service_title, d.scheduled_date, d.appointment_id, recipient="provider",
    ))
    await d.push_to("provider", "New Booking", f"New booking: {d.service_title}")


async def _appointment_status_changed(d: _Delivery) -> None:
    status = d.payload.get("status")
    await d.push_to("customer", "Booking Update", f"Your {d.service_title} booking is now {status}")
    await d.broadcast()


async def _appointment_rescheduled(d: _Delivery) -> None:
    when = d.scheduled_date.strftime("%b %d, %Y") if d.scheduled_date else "a new date"
    await d.push_to("customer", "Booking Rescheduled", f"Your {d.service_title} has been rescheduled to {when}")
    await d.push_to("provider", "Booking Rescheduled", f"{d.service_title} has been rescheduled to {when}")


async def _appointment_cancelled(d: _Delivery) -> None:
    reason = d.payload.get("reason") or ""
    cancelled_by = d.payload.get("cancelled_by") or "user"
    for send in (d.email_customer, d.email_provider):
        await send(lambda to, name: email.send_booking_cancellation(
            to, name, d.service_title, d.scheduled_date, d.appointment_id, reason, cancelled_by,
        ))
    other = "provider" if cancelled_by == "customer" else "customer"
    await d.push_to(other, "Booking Cancelled", f"The booking for {d.service_title} has been cancelled")


async def _appointment_completed(d: _Delivery) -> None:
    await d.email_customer(lambda to, name: email.send_booking_completion(
        to, name, d.service_title, d.appointment_id,
    ))
    await d.push_to("customer", "Service Completed", f"Your {d.service_title} service is completed. Rate your experience!")


async def _backjob_applied(d: _Delivery) -> None:
    reason = d.payload.get("reason") or ""
    await d.email_customer(lambda to, name: email.send_backjob_application(
        to, name, d.appointment_id, reason, recipient="customer",
    ))
    await d.email_provider(lambda to, name: email.send_backjob_application(
        to, name, d.appointment_id, reason, recipient="provider",
    ))
    await d.push_to("provider", "Warranty Claim Filed", f"A customer filed a warranty claim for {d.service_title}")


async def _backjob_disputed(d: _Delivery) -> None:
    reason = d.payload.get("dispute_reason") or ""
    await d.email_customer(lambda to, name: email.send_backjob_dispute(to, name, d.appointment_id, reason))
    await d.push_to("customer", "Backjob Application Disputed",
                 f"The provider has disputed your backjob request for {d.service_title}")


async def _backjob_cancelled(d: _Delivery) -> None:
    reason = d.payload.get("cancellation_reason")
    await d.email_provider(lambda to, name: email.send_backjob_cancellation(
        to, name, d.appointment_id, "customer", reason,
    ))
    await d.push_to("provider", "Warranty Request Cancelled",
                 f"The customer cancelled their warranty request for {d.service_title}")


async def _backjob_status_changed(d: _Delivery) -> None:
    status = d.payload.get("backjob_status")
    if status == "approved":
        await d.push_to("customer", "Backjob Application Approved",
                     f"Your backjob request for {d.service_title} has been approved")
        await d.push_to("provider", "Warranty Claim Approved",
                     f"Please reschedule the warranty rework for {d.service_title}")
    elif status in ("cancelled-by-admin", "cancelled-by-user"):
        cancelled_by = "admin" if status == "cancelled-by-admin" else "customer"
        await d.email_customer(lambda to, name: email.send_backjob_cancellation(
            to, name, d.appointment_id, cancelled_by,
        ))
        await d.push_to("customer", "Backjob Application Cancelled", "Your backjob request has been cancelled")


async def _backjob_rescheduled(d: _Delivery) -> None:
    await d.email_customer(lambda to, name: email.send_backjob_reschedule(
        to, name, d.appointment_id, d.scheduled_date, recipient="customer",
    ))
    await d.email_provider(lambda to, name: email.send_backjob_reschedule(
        to, name, d.appointment_id, d.scheduled_date, recipient="provider",
    ))
    await d.push_to("customer", "Warranty Service Scheduled",
                 f"Your warranty rework for {d.service_title} has been scheduled")


async def _conversation_changed(d: _Delivery) -> None:
    await d.broadcast()


async def _message_sent(d: _Delivery) -> None:
    recipient = "provider" if d.payload.get("sender_type") == "customer" else "customer"
    await d.push_to(recipient, "New Message", d.payload.get("preview") or "")
    await d.broadcast()


EVENT_HANDLERS: dict[str, Callable[[_Delivery], Awaitable[None]]] = {
    outbox.APPOINTMENT_CREATED: _appointment_created,
    outbox.APPOINTMENT_STATUS_CHANGED: _appointment_status_changed,
    outbox.APPOINTMENT_RESCHEDULED: _appointment_rescheduled,
    outbox.APPOINTMENT_CANCELLED: _appointment_cancelled,
    outbox.APPOINTMENT_COMPLETED: _appointment_completed,
    outbox.BACKJOB_APPLIED: _backjob_applied,
    outbox.BACKJOB_DISPUTED: _backjob_disputed,
    outbox.BACKJOB_CANCELLED: _backjob_cancelled,
    outbox.BACKJOB_STATUS_CHANGED: _backjob_status_changed,
    outbox.BACKJOB_RESCHEDULED: _backjob_rescheduled,
    outbox.CONVERSATION_OPENED: _conversation_changed,
    outbox.CONVERSATION_CLOSED: _conversation_changed,
    outbox.MESSAGE_SENT: _message_sent,
}


async def deliver_event(db: AsyncSession, event: OutboxEvent) -> list[str]:
    """Notify everyone concerned by one event. Returns per-channel errors (empty on success)."""
    handler = EVENT_HANDLERS.get(event.event_type)
    if handler is None:
        logger.warning("No handler for event type %s", event.event_type, extra={"event_type": event.event_type})
        return []

    delivery = _Delivery(db, event)
    await delivery.load()
    await handler(delivery)
    return delivery.errors
