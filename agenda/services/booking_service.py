import uuid
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from agenda.models import Booking, Client
from agenda.models.enums import BookingStatus

logger = logging.getLogger(__name__)


class BookingService:
    """
    Booking repository used by the availability checker and the commit pipeline.
    Bookings are never deleted here.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def bookings_for_professional_on(
        self,
        professional_id: uuid.UUID,
        appointment_date: date,
    ) -> list[Booking]:
        """All non-cancelled bookings of a professional on a calendar date."""

        result = await self.db.execute(
            select(Booking)
            .where(
                Booking.professional_id == professional_id,
                Booking.appointment_date == appointment_date,
                Booking.status != BookingStatus.CANCELLED.value,
            )
            .order_by(Booking.appointment_time)
        )
        return list(result.scalars().all())

    async def recent_booking_for_conversation(
        self,
        conversation_id: uuid.UUID,
        window_minutes: int,
    ) -> Booking | None:
        """Non-cancelled booking created for this conversation within the idempotency window."""

        since = datetime.utcnow() - timedelta(minutes=window_minutes)
        result = await self.db.execute(
            select(Booking)
            .where(
                Booking.conversation_id == conversation_id,
                Booking.status != BookingStatus.CANCELLED.value,
                Booking.created_at >= since,
            )
            .order_by(Booking.created_at.desc())
        )
        return result.scalars().first()

    async def create_booking(
        self,
        business_id: uuid.UUID,
        professional_id: uuid.UUID,
        service_id: uuid.UUID,
        conversation_id: uuid.UUID | None,
        client_name: str,
        client_phone: str,
        appointment_date: date,
        appointment_time: str,
        duration_minutes: int,
        price: Decimal,
        status: BookingStatus = BookingStatus.CONFIRMED,
        notes: str | None = None,
    ) -> Booking:
        now = datetime.utcnow()
        booking = Booking(
            business_id=business_id,
            professional_id=professional_id,
            service_id=service_id,
            conversation_id=conversation_id,
            client_name=client_name,
            client_phone=client_phone,
            appointment_date=appointment_date,
            appointment_time=appointment_time,
            duration_minutes=duration_minutes,
            price=price,
            status=status.value,
            notes=notes,
            confirmed_at=now if status == BookingStatus.CONFIRMED else None,
            created_at=now,
            updated_at=now,
        )

        self.db.add(booking)
        await self.db.flush()

        logger.info(
            "Booking %s created for %s on %s %s",
            booking.id, client_phone, appointment_date.isoformat(), appointment_time,
        )
        return booking

    async def reschedule_in_place(
        self,
        booking: Booking,
        service_id: uuid.UUID,
        conversation_id: uuid.UUID | None,
        client_name: str,
        appointment_date: date,
        appointment_time: str,
        duration_minutes: int,
        price: Decimal,
        notes: str | None = None,
    ) -> Booking:
        """Same contact asked again for an overlapping slot: move the existing booking."""

        booking.service_id = service_id
        booking.conversation_id = conversation_id
        booking.client_name = client_name
        booking.appointment_date = appointment_date
        booking.appointment_time = appointment_time
        booking.duration_minutes = duration_minutes
        booking.price = price
        booking.status = BookingStatus.CONFIRMED.value
        booking.confirmed_at = datetime.utcnow()
        booking.updated_at = datetime.utcnow()
        if notes:
            booking.notes = notes

        await self.db.flush()

        logger.info("Booking %s rescheduled in place to %s %s", booking.id, appointment_date.isoformat(), appointment_time)
        return booking

    async def upsert_client(self, business_id: uuid.UUID, name: str, phone: str) -> Client:
        """Keep the tenant's client list in step with bookings made over chat."""

        result = await self.db.execute(
            select(Client).where(Client.business_id == business_id, Client.phone == phone)
        )
        client = result.scalars().first()

        if client:
            if name and not name.startswith("Cliente") and client.name != name:
                client.name = name
                client.updated_at = datetime.utcnow()
        else:
            client = Client(
                business_id=business_id,
                name=name,
                phone=phone,
                created_at=datetime.utcnow(),
                updated_at=datetime.utcnow(),
            )
            self.db.add(client)

        await self.db.flush()
        return client
