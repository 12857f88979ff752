import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, DateTime, ForeignKey, Enum, Numeric, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agenda.core.database import Base


class PaymentRequest(Base):
    """Link between a payment gateway reference and the draft it pays for.

    Consumed exactly once: ``consumed_at`` is set with a conditional update
    when the approval callback turns the draft into a booking.
    """
    __tablename__ = "payment_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("businesses.id"), nullable=False)
    conversation_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("conversations.id"), nullable=False)
    reference: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    # Snapshot of the confirmed BookingDraft
    draft: Mapped[dict] = mapped_column(JSON, nullable=False)
    payment_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    status: Mapped[str] = mapped_column(
        Enum('PENDING', 'APPROVED', 'REJECTED', name='payment_request_status_enum'),
        default="PENDING"
    )
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("bookings.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    conversation = relationship("Conversation", back_populates="payment_requests")
