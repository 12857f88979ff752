import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, Enum, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agenda.core.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("businesses.id"), nullable=False)
    whatsapp_instance_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("whatsapp_instances.id"), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    contact_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    booking_state: Mapped[str] = mapped_column(
        Enum(
            'COLLECTING', 'SUMMARIZED', 'CONFIRMATION_RECEIVED', 'PAYMENT_PENDING',
            'CONFIRMED', 'CONFIRMED_DIRECT',
            name='booking_flow_state_enum'
        ),
        default="COLLECTING"
    )
    state_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    business = relationship("Business", back_populates="conversations")
    whatsapp_instance = relationship("WhatsappInstance", back_populates="conversations")
    messages = relationship("ConversationMessage", back_populates="conversation")
    bookings = relationship("Booking", back_populates="conversation")
    payment_requests = relationship("PaymentRequest", back_populates="conversation")
