import uuid
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from agenda.core.config import settings
from agenda.models import Booking, Professional
from agenda.services.booking_service import BookingService
from agenda.services.slot_extractor import normalize_phone

logger = logging.getLogger(__name__)

SLOT_STEP_MINUTES = 30

WEEKDAY_LABELS = ("segunda", "terça", "quarta", "quinta", "sexta", "sábado", "domingo")


def to_minutes(hhmm: str) -> int:
    """'14:30' -> 870"""
    hour, minute = hhmm.split(":")
    return int(hour) * 60 + int(minute)


def from_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def overlaps(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    """Half-open interval overlap: [a) and [b) touching at an edge do not overlap."""
    return start_a < end_b and end_a > start_b


def booking_interval(booking: Booking) -> tuple[int, int]:
    start = to_minutes(booking.appointment_time)
    return start, start + (booking.duration_minutes or settings.DEFAULT_DURATION_MINUTES)


@dataclass
class AvailabilityResult:
    free: bool
    conflict: Booking | None = None
    # Overlapping booking of the same contact; update it instead of adding another
    reschedule_target: Booking | None = None


class AvailabilityChecker:
    """
    Free/busy checks against a professional's committed bookings.

    Handles:
    - Overlap test of a candidate slot against non-cancelled bookings
    - Same-contact overlaps, reported as reschedule targets
    - Free-slot listing and the multi-day grid handed to the language model
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.bookings = BookingService(db)

    async def is_available(
        self,
        professional_id: uuid.UUID,
        appointment_date: date,
        appointment_time: str,
        duration_minutes: int | None = None,
        exclude_contact_phone: str | None = None,
    ) -> AvailabilityResult:
        """
        Check a candidate slot.

        Returns:
            free=True when nothing overlaps, or when the only overlap belongs
            to ``exclude_contact_phone`` (then ``reschedule_target`` is set);
            otherwise free=False with the first conflicting booking.
        """

        duration = duration_minutes or settings.DEFAULT_DURATION_MINUTES
        start = to_minutes(appointment_time)
        end = start + duration
        requester = normalize_phone(exclude_contact_phone) if exclude_contact_phone else None

        existing = await self.bookings.bookings_for_professional_on(professional_id, appointment_date)

        reschedule_target = None
        for booking in existing:
            existing_start, existing_end = booking_interval(booking)
            if not overlaps(start, end, existing_start, existing_end):
                continue

            if requester and normalize_phone(booking.client_phone) == requester:
                reschedule_target = reschedule_target or booking
                continue

            logger.info(
                "Slot %s %s-%s overlaps booking %s",
                appointment_date.isoformat(), appointment_time, from_minutes(end), booking.id,
            )
            return AvailabilityResult(free=False, conflict=booking, reschedule_target=reschedule_target)

        return AvailabilityResult(free=True, reschedule_target=reschedule_target)

    async def free_slots(
        self,
        professional: Professional,
        target_date: date,
        duration_minutes: int | None = None,
    ) -> list[str]:
        """Start times inside the professional's working hours that fit ``duration_minutes``."""

        # work_days uses 0=Sunday; date.weekday() uses 0=Monday
        if (target_date.weekday() + 1) % 7 not in (professional.work_days or []):
            return []

        duration = duration_minutes or settings.DEFAULT_DURATION_MINUTES
        day_start = to_minutes(professional.work_start_time or "09:00")
        day_end = to_minutes(professional.work_end_time or "18:00")

        busy = [
            booking_interval(b)
            for b in await self.bookings.bookings_for_professional_on(professional.id, target_date)
        ]

        slots = []
        current = day_start
        while current + duration <= day_end:
            if not any(overlaps(current, current + duration, s, e) for s, e in busy):
                slots.append(from_minutes(current))
            current += SLOT_STEP_MINUTES
        return slots

    async def availability_grid(
        self,
        business_id: uuid.UUID,
        start_date: date,
        days: int | None = None,
    ) -> str:
        """Plain-text free-slot grid for the next ``days`` days, one line per professional and day."""

        result = await self.db.execute(
            select(Professional)
            .where(Professional.business_id == business_id, Professional.is_active == True)
            .order_by(Professional.name)
        )
        professionals = result.scalars().all()

        lines = []
        for offset in range(days or settings.AVAILABILITY_DAYS):
            day = start_date + timedelta(days=offset)
            label = f"{WEEKDAY_LABELS[day.weekday()]} {day.strftime('%d/%m/%Y')}"
            for professional in professionals:
                slots = await self.free_slots(professional, day)
                if slots:
                    lines.append(f"- {professional.name} ({label}): {', '.join(slots)}")
                else:
                    lines.append(f"- {professional.name} ({label}): sem horários")

        return "\n".join(lines)
