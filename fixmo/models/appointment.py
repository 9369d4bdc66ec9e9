"""
Appointment model - a booked job between one customer and one provider.
Carries the warranty window: expiry, plus the pause snapshot taken while a
backjob claim is open (see fixmo.services.warranty).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Float, Integer, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from fixmo.database import Base

# Exact status vocabulary (case-sensitive)
SCHEDULED = "scheduled"
CONFIRMED = "confirmed"
ON_THE_WAY = "On the Way"
IN_PROGRESS = "in-progress"
FINISHED = "finished"
IN_WARRANTY = "in-warranty"
BACKJOB = "backjob"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "no-show"

APPOINTMENT_STATUSES = (
    SCHEDULED, CONFIRMED, ON_THE_WAY, IN_PROGRESS, IN_WARRANTY,
    FINISHED, COMPLETED, CANCELLED, BACKJOB, NO_SHOW,
)

# Statuses that keep the customer/provider conversation open
ACTIVE_APPOINTMENT_STATUSES = (
    SCHEDULED, CONFIRMED, ON_THE_WAY, IN_PROGRESS, FINISHED, IN_WARRANTY, BACKJOB,
)

# Statuses that occupy the provider's calendar slot
BOOKED_STATUSES = (SCHEDULED, CONFIRMED, ON_THE_WAY, IN_PROGRESS)

TERMINAL_APPOINTMENT_STATUSES = (COMPLETED, CANCELLED, NO_SHOW)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("service_providers.id"), nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("service_listings.id"), nullable=False
    )
    # Slot management is owned by the availability service
    availability_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    status: Mapped[str] = mapped_column(String(20), default=SCHEDULED, nullable=False)
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    final_price: Mapped[Optional[float]] = mapped_column(Float)
    repair_description: Mapped[Optional[str]] = mapped_column(Text)

    # Lifecycle stamps
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(20))  # customer, provider, admin

    # Warranty window
    warranty_days: Mapped[Optional[int]] = mapped_column(Integer)
    warranty_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    warranty_paused_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    warranty_remaining_days: Mapped[Optional[int]] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        CheckConstraint(
            "(warranty_paused_at IS NULL) = (warranty_remaining_days IS NULL)",
            name="warranty_pause_pair",
        ),
        Index("ix_appointments_pair", "customer_id", "provider_id"),
        Index("ix_appointments_provider_schedule", "provider_id", "scheduled_date"),
        Index("ix_appointments_status", "status"),
        Index("ix_appointments_warranty_expires_at", "warranty_expires_at"),
    )

    def __repr__(self) -> str:
        return f"<Appointment {str(self.id)[:8]} status={self.status}>"
