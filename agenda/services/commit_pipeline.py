"""
Payment-gated booking commit.

A confirmed draft either becomes a PaymentRequest (priced service and a
configured payment gateway) or a Booking right away. Approved payment
callbacks consume the PaymentRequest exactly once and commit its snapshot.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agenda.core.config import settings
from agenda.core.exceptions import DuplicateCommit, ExternalServiceUnavailable, SchedulingConflict
from agenda.models import Booking, Business, Conversation, PaymentRequest, Service, WhatsappInstance
from agenda.models.enums import BookingFlowState, BookingStatus, COMMITTED_STATES, MessageRole, PaymentRequestStatus
from agenda.services.availability import AvailabilityChecker
from agenda.services.booking_service import BookingService
from agenda.services.conversation_store import ConversationStore
from agenda.services.notifications import NotificationBroadcaster, booking_created_event
from agenda.services.payment_gateway import MercadoPagoClient, payment_gateway_for
from agenda.services.slot_extractor import BookingDraft

logger = logging.getLogger(__name__)

APPROVED_STATUSES = frozenset({"approved", "paid", "confirmed", "received"})
REJECTED_STATUSES = frozenset({"rejected", "cancelled", "canceled", "refunded", "charged_back"})


class CommitGuard:
    """
    Process-wide coordination for booking writes.

    One asyncio.Lock per (professional, date) serializes the availability
    check and the insert. ``claim_scan`` lets the post-send scan run at most
    once per conversation inside the idempotency window.
    """

    def __init__(self, window_minutes: int | None = None):
        self.window = timedelta(minutes=window_minutes or settings.IDEMPOTENCY_WINDOW_MINUTES)
        self._locks: dict[tuple, asyncio.Lock] = {}
        self._scans: dict[uuid.UUID, datetime] = {}

    def lock_for(self, professional_id: uuid.UUID, appointment_date: date) -> asyncio.Lock:
        key = (professional_id, appointment_date)
        lock = self._locks.get(key)
        if lock is None:
            # Forget idle locks of days already past
            today = date.today()
            for stale_key, stale in list(self._locks.items()):
                if stale_key[1] < today and not stale.locked():
                    self._locks.pop(stale_key, None)
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def claim_scan(self, conversation_id: uuid.UUID, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        last = self._scans.get(conversation_id)
        if last and now - last < self.window:
            return False
        self._scans[conversation_id] = now
        # Forget expired entries
        for key, seen in list(self._scans.items()):
            if now - seen >= self.window:
                self._scans.pop(key, None)
        return True


@dataclass
class CommitOutcome:
    action: str
    booking: Booking | None = None
    payment_request: PaymentRequest | None = None
    rescheduled: bool = False


def format_price(value: Decimal | None) -> str:
    amount = Decimal(value or 0).quantize(Decimal("0.01"))
    return f"R$ {amount}".replace(".", ",")


def booking_details(booking: Booking, service_name: str, professional_name: str) -> str:
    return (
        "📋 *Detalhes do Agendamento*\n"
        f"👤 Nome: {booking.client_name}\n"
        f"✅ Serviço: {service_name}\n"
        f"👨 Profissional: {professional_name}\n"
        f"📅 Data: {booking.appointment_date.strftime('%d/%m/%Y')}\n"
        f"⏰ Horário: {booking.appointment_time}\n"
        f"💰 Valor: {format_price(booking.price)}"
    )


def confirmation_message(booking: Booking, service_name: str, professional_name: str, paid: bool) -> str:
    header = "✅ *Pagamento aprovado!*\n\nSeu agendamento foi confirmado:" if paid else "✅ *Agendamento confirmado!*"
    return f"{header}\n\n{booking_details(booking, service_name, professional_name)}\n\nObrigado pela preferência! 😊"


def payment_link_message(draft: BookingDraft, amount: Decimal, url: str) -> str:
    return (
        f"Perfeito, {draft.client_name}! Para garantir seu horário de "
        f"{draft.date.strftime('%d/%m/%Y')} às {draft.time} com {draft.professional_name}, "
        f"realize o pagamento de {format_price(amount)} pelo link abaixo:\n\n{url}\n\n"
        "Assim que o pagamento for aprovado, enviaremos a confirmação por aqui."
    )


def conflict_message(draft: BookingDraft) -> str:
    return (
        f"Desculpe, o horário de {draft.time} em {draft.date.strftime('%d/%m/%Y')} com "
        f"{draft.professional_name} acabou de ser ocupado. Pode escolher outro horário?"
    )


def make_reference(conversation_id: uuid.UUID) -> str:
    return f"temp_{int(time.time() * 1000)}_{conversation_id.hex[:8]}"


class CommitPipeline:
    """
    Turns confirmed drafts into bookings.

    Handles:
    - Payment-gated vs direct commit decision
    - Approved/rejected payment callbacks with exactly-once consumption
    - Idempotency window and per-(professional, date) locking
    - Confirmation messages and booking_created notifications
    """

    def __init__(
        self,
        db: AsyncSession,
        messaging,
        broadcaster: NotificationBroadcaster,
        guard: CommitGuard,
        payment_gateway_factory: Callable[[Business], MercadoPagoClient | None] = payment_gateway_for,
    ):
        self.db = db
        self.messaging = messaging
        self.broadcaster = broadcaster
        self.guard = guard
        self.payment_gateway_factory = payment_gateway_factory
        self.store = ConversationStore(db)
        self.bookings = BookingService(db)
        self.availability = AvailabilityChecker(db)

    # ============== Outbound messaging ==============

    async def _send(self, conversation: Conversation, text: str) -> None:
        """Record an outbound message and try to deliver it. Delivery failures are logged only."""
        message = await self.store.append(conversation, MessageRole.OUTBOUND, text)
        instance = await self.db.get(WhatsappInstance, conversation.whatsapp_instance_id)
        try:
            await self.messaging.send_text(instance, conversation.phone_number, text)
            message.delivered = True
        except ExternalServiceUnavailable as exc:
            logger.error("Could not deliver message to %s: %s", conversation.phone_number, exc)
        await self.db.commit()

    # ============== Confirmed drafts ==============

    async def process_confirmed_draft(
        self,
        conversation: Conversation,
        draft: BookingDraft,
        trigger: str = "confirmation",
    ) -> CommitOutcome:
        """
        Route a complete, confirmed draft to payment or to a direct commit.

        ``trigger`` is "confirmation" for a contact's corroborated "sim" and
        "assistant_confirmation" for the post-send scan.
        """
        if not draft.is_complete():
            logger.info("Draft incomplete (%s), keep collecting", draft.missing_fields())
            return CommitOutcome(action="incomplete")

        await self.store.set_state(conversation, BookingFlowState.CONFIRMATION_RECEIVED)

        business = await self.db.get(Business, conversation.business_id)
        service = await self.db.get(Service, draft.service_id)
        price = Decimal(service.base_price or 0) if service else Decimal(0)
        gateway = self.payment_gateway_factory(business) if price > 0 else None

        if gateway is not None:
            try:
                request = await self._request_payment(conversation, draft, price, gateway, trigger)
                return CommitOutcome(action="payment_requested", payment_request=request)
            except ExternalServiceUnavailable as exc:
                # Without a link the contact cannot pay; book directly instead
                logger.error("Payment link failed for conversation %s, committing directly: %s", conversation.id, exc)

        return await self.commit_booking(conversation, draft, paid=False)

    async def _request_payment(
        self,
        conversation: Conversation,
        draft: BookingDraft,
        amount: Decimal,
        gateway: MercadoPagoClient,
        trigger: str,
    ) -> PaymentRequest:
        reference = make_reference(conversation.id)
        notification_url = (
            f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/v1/webhook/payment"
            f"?business_id={conversation.business_id}"
        )

        url = await gateway.create_payment_link(
            amount,
            reference,
            metadata={"conversation_id": str(conversation.id), "trigger": trigger},
            notification_url=notification_url,
            title=f"{draft.service_name} - {draft.professional_name}",
        )

        request = PaymentRequest(
            business_id=conversation.business_id,
            conversation_id=conversation.id,
            reference=reference,
            amount=amount,
            draft=draft.to_snapshot(),
            payment_url=url,
            status=PaymentRequestStatus.PENDING.value,
            created_at=datetime.utcnow(),
            updated_at=datetime.utcnow(),
        )
        self.db.add(request)
        await self.store.set_state(conversation, BookingFlowState.PAYMENT_PENDING)
        await self.db.commit()

        logger.info("Payment requested for conversation %s, reference %s", conversation.id, reference)
        await self._send(conversation, payment_link_message(draft, amount, url))
        return request

    async def try_commit_from_summary(self, conversation: Conversation, draft: BookingDraft) -> CommitOutcome:
        """Post-send scan entry: the assistant itself declared the booking confirmed."""
        if self._recently_committed(conversation):
            return CommitOutcome(action="already_committed")
        if not draft.is_complete():
            return CommitOutcome(action="incomplete")
        if not self.guard.claim_scan(conversation.id):
            logger.info("Post-send scan for %s already ran inside the window", conversation.id)
            return CommitOutcome(action="duplicate")
        return await self.process_confirmed_draft(conversation, draft, trigger="assistant_confirmation")

    @staticmethod
    def _recently_committed(conversation: Conversation, now: datetime | None = None) -> bool:
        """A committed state only blocks new commits inside the idempotency window."""
        if BookingFlowState(conversation.booking_state) not in COMMITTED_STATES:
            return False
        changed = conversation.state_updated_at
        if changed is None:
            return True
        if changed.tzinfo is not None:
            changed = changed.astimezone(timezone.utc).replace(tzinfo=None)
        now = now or datetime.utcnow()
        return now - changed < timedelta(minutes=settings.IDEMPOTENCY_WINDOW_MINUTES)

    # ============== Booking write ==============

    async def commit_booking(
        self,
        conversation: Conversation,
        draft: BookingDraft,
        paid: bool,
        payment_request: PaymentRequest | None = None,
    ) -> CommitOutcome:
        """Idempotency check, locked availability gate, insert or reschedule, confirm, notify."""
        try:
            booking, rescheduled = await self._write_booking(conversation, draft, paid, payment_request)
        except DuplicateCommit as exc:
            logger.info("Skipping commit for conversation %s: %s", conversation.id, exc)
            return CommitOutcome(action="duplicate")
        except SchedulingConflict as exc:
            logger.warning("Rejected booking for conversation %s: %s", conversation.id, exc)
            await self._send(conversation, conflict_message(draft))
            return CommitOutcome(action="conflict")

        await self._send(
            conversation,
            confirmation_message(booking, draft.service_name, draft.professional_name, paid),
        )
        self.broadcaster.publish(booking_created_event(booking))
        return CommitOutcome(action="booking_created", booking=booking, rescheduled=rescheduled)

    async def _write_booking(
        self,
        conversation: Conversation,
        draft: BookingDraft,
        paid: bool,
        payment_request: PaymentRequest | None,
    ) -> tuple[Booking, bool]:
        async with self.guard.lock_for(draft.professional_id, draft.date):
            existing = await self.bookings.recent_booking_for_conversation(
                conversation.id, settings.IDEMPOTENCY_WINDOW_MINUTES
            )
            if existing:
                raise DuplicateCommit(f"booking {existing.id} created within the idempotency window")

            service = await self.db.get(Service, draft.service_id)
            duration = (service.duration_minutes if service else None) or settings.DEFAULT_DURATION_MINUTES
            price = Decimal(service.base_price or 0) if service else Decimal(0)

            check = await self.availability.is_available(
                draft.professional_id, draft.date, draft.time, duration,
                exclude_contact_phone=draft.phone,
            )
            if not check.free:
                if settings.BOOKING_CONFLICT_POLICY == "strict":
                    raise SchedulingConflict(check.conflict.id)
                logger.warning(
                    "Booking %s %s for professional %s overlaps booking %s, proceeding",
                    draft.date.isoformat(), draft.time, draft.professional_id, check.conflict.id,
                )

            notes = f"Agendamento via WhatsApp{' - pagamento aprovado' if paid else ''} - conversa {conversation.id}"

            if check.reschedule_target is not None:
                booking = await self.bookings.reschedule_in_place(
                    check.reschedule_target,
                    service_id=draft.service_id,
                    conversation_id=conversation.id,
                    client_name=draft.client_name,
                    appointment_date=draft.date,
                    appointment_time=draft.time,
                    duration_minutes=duration,
                    price=price,
                    notes=notes,
                )
                rescheduled = True
            else:
                booking = await self.bookings.create_booking(
                    business_id=conversation.business_id,
                    professional_id=draft.professional_id,
                    service_id=draft.service_id,
                    conversation_id=conversation.id,
                    client_name=draft.client_name,
                    client_phone=draft.phone,
                    appointment_date=draft.date,
                    appointment_time=draft.time,
                    duration_minutes=duration,
                    price=price,
                    status=BookingStatus.CONFIRMED,
                    notes=notes,
                )
                rescheduled = False

            await self.bookings.upsert_client(conversation.business_id, draft.client_name, draft.phone)

            if payment_request is not None:
                payment_request.booking_id = booking.id
                payment_request.updated_at = datetime.utcnow()

            await self.store.set_state(
                conversation,
                BookingFlowState.CONFIRMED if paid else BookingFlowState.CONFIRMED_DIRECT,
            )
            await self.db.commit()

        return booking, rescheduled

    # ============== Payment callbacks ==============

    async def handle_payment_notification(
        self,
        business_id: uuid.UUID | None,
        status: str | None = None,
        reference: str | None = None,
        payment_id: str | None = None,
    ) -> CommitOutcome:
        """
        Apply a payment gateway callback.

        Either ``status``/``reference`` arrive directly, or only ``payment_id``
        does and the payment is fetched from the tenant's gateway.
        """
        business = await self.db.get(Business, business_id) if business_id else None

        if payment_id and not status:
            gateway = self.payment_gateway_factory(business) if business else None
            if gateway is None:
                logger.warning("Payment %s notified but no gateway configured for %s", payment_id, business_id)
                return CommitOutcome(action="ignored")
            try:
                payment = await gateway.get_payment(payment_id)
            except ExternalServiceUnavailable as exc:
                logger.error("Could not fetch payment %s: %s", payment_id, exc)
                return CommitOutcome(action="gateway_unavailable")
            status = payment.get("status")
            reference = reference or payment.get("external_reference")

        normalized = (status or "").strip().lower()
        request = await self._resolve_request(business_id, reference)

        if request is None:
            logger.warning("No pending payment request for reference %s (business %s)", reference, business_id)
            return CommitOutcome(action="unresolved")

        if payment_id:
            request.gateway_payment_id = str(payment_id)

        if normalized not in APPROVED_STATUSES:
            if normalized in REJECTED_STATUSES and request.consumed_at is None:
                request.status = PaymentRequestStatus.REJECTED.value
                request.updated_at = datetime.utcnow()
            await self.db.commit()
            logger.info("Payment %s for reference %s, no booking", normalized or "status unknown", request.reference)
            return CommitOutcome(action="payment_not_approved", payment_request=request)

        # Compare-and-swap: only one delivery can flip consumed_at
        now = datetime.utcnow()
        result = await self.db.execute(
            update(PaymentRequest)
            .where(PaymentRequest.id == request.id, PaymentRequest.consumed_at.is_(None))
            .values(consumed_at=now, status=PaymentRequestStatus.APPROVED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.commit()
            logger.info("Payment request %s already consumed", request.reference)
            return CommitOutcome(action="duplicate", payment_request=request)
        await self.db.commit()
        await self.db.refresh(request)

        conversation = await self.store.get(request.conversation_id)
        draft = BookingDraft.from_snapshot(request.draft)
        outcome = await self.commit_booking(conversation, draft, paid=True, payment_request=request)
        outcome.payment_request = request
        return outcome

    async def _resolve_request(self, business_id: uuid.UUID | None, reference: str | None) -> PaymentRequest | None:
        if reference:
            query = select(PaymentRequest).where(PaymentRequest.reference == reference)
            if business_id:
                query = query.where(PaymentRequest.business_id == business_id)
            result = await self.db.execute(query)
            request = result.scalar_one_or_none()
            if request:
                return request

        if not business_id:
            return None

        # Demo/test payments carry references we never issued
        since = datetime.utcnow() - timedelta(minutes=settings.PAYMENT_FALLBACK_WINDOW_MINUTES)
        result = await self.db.execute(
            select(Conversation)
            .where(
                Conversation.business_id == business_id,
                Conversation.booking_state == BookingFlowState.PAYMENT_PENDING.value,
                Conversation.state_updated_at >= since,
            )
            .order_by(Conversation.state_updated_at.desc())
        )
        conversation = result.scalars().first()
        if conversation is None:
            return None

        result = await self.db.execute(
            select(PaymentRequest)
            .where(
                PaymentRequest.conversation_id == conversation.id,
                PaymentRequest.consumed_at.is_(None),
            )
            .order_by(PaymentRequest.created_at.desc())
        )
        request = result.scalars().first()
        if request:
            logger.info("Resolved payment by fallback to conversation %s", conversation.id)
        return request
