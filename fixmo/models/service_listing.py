"""
Service listing - what a provider offers, including the nominal warranty.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Float, Integer, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from fixmo.database import Base


class ServiceListing(Base):
    __tablename__ = "service_listings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("service_providers.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    starting_price: Mapped[float] = mapped_column(Float, default=0.0)

    # Warranty days copied onto each appointment at booking time
    warranty: Mapped[Optional[int]] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_service_listings_provider_id", "provider_id"),
    )

    def __repr__(self) -> str:
        return f"<ServiceListing {self.title} warranty={self.warranty}>"
