# agenda/models/business.py
import uuid
from datetime import datetime
from sqlalchemy import String, Text, Boolean, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agenda.core.database import Base


class Business(Base):
    """Tenant owning professionals, services, WhatsApp instances and bookings."""
    __tablename__ = "businesses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slug: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    business_name: Mapped[str] = mapped_column(String(200), nullable=False)

    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/Sao_Paulo")
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    opening_hours_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_agent_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)

    mercadopago_access_token: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    whatsapp_instances = relationship("WhatsappInstance", back_populates="business")
    professionals = relationship("Professional", back_populates="business")
    services = relationship("Service", back_populates="business")
    clients = relationship("Client", back_populates="business")
    conversations = relationship("Conversation", back_populates="business")
    bookings = relationship("Booking", back_populates="business")
