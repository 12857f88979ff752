"""Tests for the payment-gated commit pipeline."""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from agenda.core.config import settings
from agenda.models import Booking, Client, PaymentRequest
from agenda.models.enums import BookingFlowState, BookingStatus, MessageRole
from agenda.services.booking_service import BookingService
from agenda.services.commit_pipeline import CommitGuard, CommitPipeline
from agenda.services.conversation_store import ConversationStore
from agenda.services.slot_extractor import BookingDraft

from conftest import CONTACT_PHONE

SATURDAY = date(2026, 10, 17)


@pytest_asyncio.fixture
async def conversation(db, seed):
    conversation = await ConversationStore(db).get_or_create(
        seed.business.id, seed.instance.id, CONTACT_PHONE, contact_name="João"
    )
    await db.commit()
    return conversation


@pytest.fixture
def pipeline(db, messaging, broadcaster, guard, gateway_factory):
    return CommitPipeline(db, messaging, broadcaster, guard, gateway_factory)


def make_draft(seed, service=None, time="14:00", phone=CONTACT_PHONE):
    service = service or seed.corte
    return BookingDraft(
        client_name="João Silva",
        professional_id=seed.magnus.id,
        professional_name="Magnus",
        service_id=service.id,
        service_name=service.service_name,
        date=SATURDAY,
        time=time,
        phone=phone,
    )


async def booking_count(db) -> int:
    return await db.scalar(select(func.count()).select_from(Booking))


class TestPaymentGate:

    @pytest.mark.asyncio
    async def test_priced_service_requests_payment_without_booking(
        self, db, seed, conversation, pipeline, messaging, payment_gateway
    ):
        outcome = await pipeline.process_confirmed_draft(conversation, make_draft(seed))

        assert outcome.action == "payment_requested"
        assert await booking_count(db) == 0
        assert conversation.booking_state == BookingFlowState.PAYMENT_PENDING.value

        request = outcome.payment_request
        assert request.reference.startswith("temp_")
        assert request.amount == Decimal("60.00")
        assert payment_gateway.links[0]["notification_url"].endswith(
            f"/api/v1/webhook/payment?business_id={seed.business.id}"
        )
        assert request.payment_url in messaging.texts[-1]

    @pytest.mark.asyncio
    async def test_free_service_commits_directly(self, db, seed, conversation, pipeline, messaging, broadcaster):
        subscription = broadcaster.subscribe()

        outcome = await pipeline.process_confirmed_draft(conversation, make_draft(seed, service=seed.barba))

        assert outcome.action == "booking_created"
        assert outcome.booking.status == BookingStatus.CONFIRMED.value
        assert conversation.booking_state == BookingFlowState.CONFIRMED_DIRECT.value
        assert "Agendamento confirmado" in messaging.texts[-1]
        event = subscription.queue.get_nowait()
        assert event["type"] == "booking_created"
        assert event["booking_id"] == str(outcome.booking.id)

    @pytest.mark.asyncio
    async def test_no_gateway_commits_directly(self, db, seed, conversation, messaging, broadcaster, guard):
        pipeline = CommitPipeline(db, messaging, broadcaster, guard, lambda business: None)
        outcome = await pipeline.process_confirmed_draft(conversation, make_draft(seed))
        assert outcome.action == "booking_created"
        assert await booking_count(db) == 1

    @pytest.mark.asyncio
    async def test_incomplete_draft_is_not_committed(self, db, seed, conversation, pipeline):
        draft = make_draft(seed)
        draft.time = None
        outcome = await pipeline.process_confirmed_draft(conversation, draft)
        assert outcome.action == "incomplete"
        assert await booking_count(db) == 0


class TestPaymentNotifications:

    @pytest.mark.asyncio
    async def test_duplicate_deliveries_create_one_booking(self, db, seed, conversation, pipeline):
        requested = await pipeline.process_confirmed_draft(conversation, make_draft(seed))
        reference = requested.payment_request.reference

        outcomes = [
            await pipeline.handle_payment_notification(seed.business.id, status="approved", reference=reference)
            for _ in range(4)
        ]

        assert [o.action for o in outcomes] == ["booking_created", "duplicate", "duplicate", "duplicate"]
        assert await booking_count(db) == 1

        booking = outcomes[0].booking
        assert booking.client_name == "João Silva"
        assert booking.appointment_time == "14:00"
        assert booking.appointment_date == SATURDAY

        request = await db.get(PaymentRequest, requested.payment_request.id)
        await db.refresh(request)
        assert request.consumed_at is not None
        assert request.booking_id == booking.id
        assert conversation.booking_state == BookingFlowState.CONFIRMED.value

    @pytest.mark.asyncio
    async def test_rejected_payment_creates_nothing(self, db, seed, conversation, pipeline):
        requested = await pipeline.process_confirmed_draft(conversation, make_draft(seed))

        outcome = await pipeline.handle_payment_notification(
            seed.business.id, status="rejected", reference=requested.payment_request.reference
        )

        assert outcome.action == "payment_not_approved"
        assert outcome.payment_request.status == "REJECTED"
        assert await booking_count(db) == 0

    @pytest.mark.asyncio
    async def test_unknown_reference_falls_back_to_pending_conversation(self, db, seed, conversation, pipeline):
        await pipeline.process_confirmed_draft(conversation, make_draft(seed))

        outcome = await pipeline.handle_payment_notification(
            seed.business.id, status="approved", reference="demo-payment-123"
        )

        assert outcome.action == "booking_created"
        assert await booking_count(db) == 1

    @pytest.mark.asyncio
    async def test_fallback_ignores_stale_pending_conversations(self, db, seed, conversation, pipeline):
        await pipeline.process_confirmed_draft(conversation, make_draft(seed))
        conversation.state_updated_at = datetime.utcnow() - timedelta(
            minutes=settings.PAYMENT_FALLBACK_WINDOW_MINUTES + 5
        )
        await db.commit()

        outcome = await pipeline.handle_payment_notification(
            seed.business.id, status="approved", reference="demo-payment-123"
        )

        assert outcome.action == "unresolved"
        assert await booking_count(db) == 0

    @pytest.mark.asyncio
    async def test_payment_id_is_looked_up_on_the_gateway(self, db, seed, conversation, pipeline, payment_gateway):
        requested = await pipeline.process_confirmed_draft(conversation, make_draft(seed))
        payment_gateway.payments["987654"] = {
            "status": "approved",
            "external_reference": requested.payment_request.reference,
        }

        outcome = await pipeline.handle_payment_notification(seed.business.id, payment_id="987654")

        assert outcome.action == "booking_created"
        assert outcome.payment_request.gateway_payment_id == "987654"


class TestBookingWrite:

    @pytest.mark.asyncio
    async def test_same_contact_overlap_updates_in_place(self, db, seed, conversation, pipeline):
        existing = await BookingService(db).create_booking(
            business_id=seed.business.id,
            professional_id=seed.magnus.id,
            service_id=seed.barba.id,
            conversation_id=None,
            client_name="João Silva",
            client_phone=CONTACT_PHONE,
            appointment_date=SATURDAY,
            appointment_time="14:00",
            duration_minutes=30,
            price=Decimal("0"),
        )
        await db.commit()

        outcome = await pipeline.commit_booking(conversation, make_draft(seed, time="14:15"), paid=False)

        assert outcome.action == "booking_created"
        assert outcome.rescheduled
        assert outcome.booking.id == existing.id
        assert outcome.booking.appointment_time == "14:15"
        assert await booking_count(db) == 1

    @pytest.mark.asyncio
    async def test_repeat_commit_inside_window_is_skipped(self, db, seed, conversation, pipeline):
        first = await pipeline.commit_booking(conversation, make_draft(seed, service=seed.barba), paid=False)
        second = await pipeline.commit_booking(conversation, make_draft(seed, service=seed.barba, time="16:00"), paid=False)

        assert first.action == "booking_created"
        assert second.action == "duplicate"
        assert await booking_count(db) == 1

    @pytest.mark.asyncio
    async def test_permissive_policy_books_over_conflict(self, db, seed, conversation, pipeline):
        await BookingService(db).create_booking(
            business_id=seed.business.id,
            professional_id=seed.magnus.id,
            service_id=seed.barba.id,
            conversation_id=None,
            client_name="Outro Cliente",
            client_phone="5511988887777",
            appointment_date=SATURDAY,
            appointment_time="14:00",
            duration_minutes=30,
            price=Decimal("0"),
        )
        await db.commit()

        outcome = await pipeline.commit_booking(conversation, make_draft(seed), paid=False)

        assert outcome.action == "booking_created"
        assert await booking_count(db) == 2

    @pytest.mark.asyncio
    async def test_strict_policy_rejects_conflict(self, db, seed, conversation, pipeline, messaging, monkeypatch):
        monkeypatch.setattr(settings, "BOOKING_CONFLICT_POLICY", "strict")
        await BookingService(db).create_booking(
            business_id=seed.business.id,
            professional_id=seed.magnus.id,
            service_id=seed.barba.id,
            conversation_id=None,
            client_name="Outro Cliente",
            client_phone="5511988887777",
            appointment_date=SATURDAY,
            appointment_time="14:00",
            duration_minutes=30,
            price=Decimal("0"),
        )
        await db.commit()

        outcome = await pipeline.commit_booking(conversation, make_draft(seed), paid=False)

        assert outcome.action == "conflict"
        assert await booking_count(db) == 1
        assert "acabou de ser ocupado" in messaging.texts[-1]

    @pytest.mark.asyncio
    async def test_commit_upserts_client_record(self, db, seed, conversation, pipeline):
        await pipeline.commit_booking(conversation, make_draft(seed, service=seed.barba), paid=False)

        client = await db.scalar(select(Client).where(Client.phone == CONTACT_PHONE))
        assert client.name == "João Silva"

    @pytest.mark.asyncio
    async def test_undelivered_confirmation_is_recorded(self, db, seed, conversation, pipeline, messaging):
        messaging.fail_send = True

        outcome = await pipeline.commit_booking(conversation, make_draft(seed, service=seed.barba), paid=False)

        assert outcome.action == "booking_created"
        history = await ConversationStore(db).history(conversation.id)
        assert history[-1]["role"] == MessageRole.OUTBOUND.value


class TestCommitGuard:

    def test_scan_claimed_once_per_window(self):
        guard = CommitGuard(window_minutes=5)
        now = datetime(2026, 10, 17, 12, 0)
        conversation_id = object()

        assert guard.claim_scan(conversation_id, now)
        assert not guard.claim_scan(conversation_id, now + timedelta(minutes=4))
        assert guard.claim_scan(conversation_id, now + timedelta(minutes=6))

    def test_one_lock_per_professional_and_date(self):
        guard = CommitGuard()
        assert guard.lock_for("p1", SATURDAY) is guard.lock_for("p1", SATURDAY)
        assert guard.lock_for("p1", SATURDAY) is not guard.lock_for("p2", SATURDAY)

    def test_idle_locks_of_past_days_are_released(self):
        guard = CommitGuard()
        yesterday = date.today() - timedelta(days=1)
        tomorrow = date.today() + timedelta(days=1)

        old = guard.lock_for("p1", yesterday)
        guard.lock_for("p1", tomorrow)

        assert guard.lock_for("p1", yesterday) is not old

    @pytest.mark.asyncio
    async def test_held_lock_is_kept(self):
        guard = CommitGuard()
        yesterday = date.today() - timedelta(days=1)
        tomorrow = date.today() + timedelta(days=1)

        held = guard.lock_for("p1", yesterday)
        async with held:
            guard.lock_for("p2", tomorrow)
            assert guard.lock_for("p1", yesterday) is held


class TestCommittedState:

    @pytest.mark.asyncio
    async def test_scan_blocked_right_after_commit(self, db, seed, conversation, pipeline):
        await pipeline.commit_booking(conversation, make_draft(seed, service=seed.barba), paid=False)

        outcome = await pipeline.try_commit_from_summary(conversation, make_draft(seed, service=seed.barba, time="16:00"))

        assert outcome.action == "already_committed"
        assert await booking_count(db) == 1

    @pytest.mark.asyncio
    async def test_stale_pending_payment_does_not_block(self, db, seed, conversation, pipeline):
        await pipeline.process_confirmed_draft(conversation, make_draft(seed))
        conversation.state_updated_at = datetime.utcnow() - timedelta(days=2)
        await db.commit()

        outcome = await pipeline.try_commit_from_summary(conversation, make_draft(seed, service=seed.barba, time="16:00"))

        assert outcome.action == "booking_created"
