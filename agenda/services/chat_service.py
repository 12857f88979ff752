import base64
import binascii
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from agenda.core.config import settings
from agenda.core.exceptions import ExternalServiceUnavailable, TranscriptionFailure
from agenda.core.logging_context import set_conversation_id
from agenda.models import Business, Conversation, Professional, Service, WhatsappInstance
from agenda.models.enums import BookingFlowState, MessageRole
from agenda.schemas.webhook import EvolutionMessageData, EvolutionWebhook, WebhookAck
from agenda.services.availability import AvailabilityChecker
from agenda.services.chat_graph import dialogue_graph
from agenda.services.chat_state import DialogueState
from agenda.services.commit_pipeline import CommitGuard, CommitPipeline
from agenda.services.confirmation import is_final_confirmation, is_summary_message
from agenda.services.conversation_store import ConversationStore
from agenda.services.llm import transcribe_audio
from agenda.services.notifications import NotificationBroadcaster
from agenda.services.payment_gateway import payment_gateway_for
from agenda.services.prompts import TRANSCRIPTION_FALLBACK, build_system_prompt, fallback_message, local_now
from agenda.services.slot_extractor import build_draft, normalize_phone

logger = logging.getLogger(__name__)


class ChatService:
    """
    Service that connects the WhatsApp webhook to LangGraph and the database.

    One call to ``handle_inbound`` handles one inbound message end to end:
    transcription, conversation lookup, confirmation routing, the language
    model turn and the post-send booking scan. It never raises for domain
    failures; the webhook always gets an acknowledgement.
    """

    def __init__(
        self,
        db: AsyncSession,
        messaging,
        broadcaster: NotificationBroadcaster,
        guard: CommitGuard,
        payment_gateway_factory: Callable = payment_gateway_for,
    ):
        self.db = db
        self.messaging = messaging
        self.store = ConversationStore(db)
        self.availability = AvailabilityChecker(db)
        self.pipeline = CommitPipeline(db, messaging, broadcaster, guard, payment_gateway_factory)

    async def handle_inbound(self, instance_name: str, webhook: EvolutionWebhook) -> WebhookAck:
        if not webhook.is_message:
            return WebhookAck(action="ignored", detail=f"event {webhook.event}")

        data = webhook.message_data()
        if data is None:
            return WebhookAck(action="ignored", detail="no message data")
        if data.key.from_me:
            return WebhookAck(action="ignored", detail="own message")
        if data.is_group:
            return WebhookAck(action="ignored", detail="group chat")

        result = await self.db.execute(
            select(WhatsappInstance).where(WhatsappInstance.instance_name == instance_name)
        )
        instance = result.scalar_one_or_none()
        if not instance:
            logger.warning("Webhook for unknown instance %s", instance_name)
            return WebhookAck(action="ignored", detail=f"unknown instance {instance_name}")

        business = await self.db.get(Business, instance.business_id)
        phone = normalize_phone(data.key.remote_jid)

        conversation = await self.store.get_or_create(
            business.id, instance.id, phone, contact_name=data.push_name
        )
        set_conversation_id(str(conversation.id))

        if data.key.id and await self.store.has_external_message(conversation.id, data.key.id):
            logger.info("Duplicate delivery of message %s", data.key.id)
            return WebhookAck(action="duplicate", conversation_id=conversation.id)

        if data.text:
            text, message_type = data.text, "text"
        elif data.is_audio:
            try:
                text = await self._transcribe(instance, data)
                message_type = "audio"
            except TranscriptionFailure as exc:
                logger.warning("Audio from %s could not be transcribed: %s", phone, exc)
                await self.store.append(
                    conversation, MessageRole.INBOUND, "[áudio]",
                    external_message_id=data.key.id, message_type="audio",
                )
                await self._send_reply(instance, conversation, TRANSCRIPTION_FALLBACK)
                return WebhookAck(action="transcription_failed", conversation_id=conversation.id)
        else:
            return WebhookAck(action="ignored", detail="unsupported message type", conversation_id=conversation.id)

        await self.store.append(
            conversation, MessageRole.INBOUND, text,
            external_message_id=data.key.id, message_type=message_type,
        )
        await self.db.commit()

        return await self._run_turn(business, instance, conversation, text)

    async def _transcribe(self, instance: WhatsappInstance, data: EvolutionMessageData) -> str:
        try:
            media = data.inline_media or await self.messaging.fetch_media_base64(
                instance, {"key": data.key.model_dump(by_alias=True), "message": data.message}
            )
            audio = base64.b64decode(media)
        except (ExternalServiceUnavailable, binascii.Error, ValueError) as exc:
            raise TranscriptionFailure(str(exc)) from exc
        return await transcribe_audio(audio)

    async def _run_turn(
        self,
        business: Business,
        instance: WhatsappInstance,
        conversation: Conversation,
        text: str,
    ) -> WebhookAck:
        now = local_now(business.timezone)
        today = now.date()

        draft = await build_draft(self.db, conversation, today)
        messages = await self.store.history(conversation.id, limit=settings.HISTORY_WINDOW_MESSAGES)
        professionals, services = await self._catalog(business.id)
        grid = await self.availability.availability_grid(business.id, today)

        state: DialogueState = {
            "conversation_id": str(conversation.id),
            "business_id": str(business.id),
            "messages": messages,
            "current_message": text,
            "system_prompt": build_system_prompt(business, professionals, services, grid, now),
            "fallback_text": fallback_message(business, professionals),
            "draft_complete": draft.is_complete(),
            "missing_fields": draft.missing_fields(),
        }
        result = await dialogue_graph.ainvoke(state)

        if result["next_action"] == "commit":
            logger.info("Confirmation event, committing draft")
            outcome = await self.pipeline.process_confirmed_draft(conversation, draft, trigger="confirmation")
            ack = WebhookAck(
                action=outcome.action,
                conversation_id=conversation.id,
                booking_id=outcome.booking.id if outcome.booking else None,
                payment_reference=outcome.payment_request.reference if outcome.payment_request else None,
            )
        else:
            response = result["response"]
            await self._send_reply(instance, conversation, response)
            if not result.get("used_fallback") and is_summary_message(response):
                await self.store.set_state(conversation, BookingFlowState.SUMMARIZED)
                await self.db.commit()
            ack = WebhookAck(
                action="fallback_replied" if result.get("used_fallback") else "replied",
                conversation_id=conversation.id,
            )

        scan = await self._post_send_scan(conversation, today)
        if scan is not None:
            ack = scan
        return ack

    async def _post_send_scan(self, conversation: Conversation, today) -> WebhookAck | None:
        """Commit when the assistant itself announced the booking as confirmed."""
        messages = await self.store.history(conversation.id, limit=settings.HISTORY_WINDOW_MESSAGES)
        latest_outbound = next(
            (m["content"] for m in reversed(messages) if m["role"] == MessageRole.OUTBOUND.value),
            None,
        )
        if not latest_outbound or not is_final_confirmation(latest_outbound):
            return None

        draft = await build_draft(self.db, conversation, today)
        outcome = await self.pipeline.try_commit_from_summary(conversation, draft)
        if outcome.action not in ("booking_created", "payment_requested"):
            return None

        logger.info("Post-send scan committed draft: %s", outcome.action)
        return WebhookAck(
            action=outcome.action,
            conversation_id=conversation.id,
            booking_id=outcome.booking.id if outcome.booking else None,
            payment_reference=outcome.payment_request.reference if outcome.payment_request else None,
        )

    async def _send_reply(self, instance: WhatsappInstance, conversation: Conversation, text: str) -> None:
        message = await self.store.append(conversation, MessageRole.OUTBOUND, text)
        try:
            await self.messaging.send_text(instance, conversation.phone_number, text)
            message.delivered = True
        except ExternalServiceUnavailable as exc:
            logger.error("Reply to %s not delivered: %s", conversation.phone_number, exc)
        await self.db.commit()

    async def _catalog(self, business_id) -> tuple[list[Professional], list[Service]]:
        result = await self.db.execute(
            select(Professional)
            .where(Professional.business_id == business_id, Professional.is_active == True)
            .order_by(Professional.name)
        )
        professionals = list(result.scalars().all())

        result = await self.db.execute(
            select(Service)
            .where(Service.business_id == business_id, Service.is_active == True)
            .order_by(Service.service_name)
        )
        services = list(result.scalars().all())
        return professionals, services
