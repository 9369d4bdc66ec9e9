"""
Backjob application - a customer's warranty claim that finished work needs redoing.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from fixmo.database import Base

PENDING = "pending"
APPROVED = "approved"
DISPUTED = "disputed"
COMPLETED = "completed"
CANCELLED_BY_ADMIN = "cancelled-by-admin"
CANCELLED_BY_USER = "cancelled-by-user"
CANCELLED_BY_CUSTOMER = "cancelled-by-customer"

BACKJOB_STATUSES = (
    PENDING, APPROVED, DISPUTED, COMPLETED,
    CANCELLED_BY_ADMIN, CANCELLED_BY_USER, CANCELLED_BY_CUSTOMER,
)
TERMINAL_BACKJOB_STATUSES = (
    COMPLETED, CANCELLED_BY_ADMIN, CANCELLED_BY_USER, CANCELLED_BY_CUSTOMER,
)


class BackjobApplication(Base):
    __tablename__ = "backjob_applications"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("appointments.id"), nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("service_providers.id"), nullable=False
    )

    status: Mapped[str] = mapped_column(String(30), default=APPROVED, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    # {"description": str | None, "files": [url, ...]}
    evidence: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)

    provider_dispute_reason: Mapped[Optional[str]] = mapped_column(Text)
    provider_dispute_evidence: Mapped[Optional[dict]] = mapped_column(JSONB)
    customer_cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_backjob_applications_appointment_id", "appointment_id"),
        Index("ix_backjob_applications_status", "status"),
        # One open (approved) claim per appointment
        Index(
            "uq_backjob_applications_one_approved",
            "appointment_id",
            unique=True,
            postgresql_where=text("status = 'approved'"),
            sqlite_where=text("status = 'approved'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<BackjobApplication {str(self.id)[:8]} status={self.status}>"
