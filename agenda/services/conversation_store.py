import uuid
from datetime import datetime, timedelta, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from agenda.models import Conversation, ConversationMessage
from agenda.models.enums import BookingFlowState, MessageRole


class ConversationStore:
    """
    Per-contact message history and conversation metadata.

    Handles:
    - Picking the active conversation for a (tenant, phone) pair
    - Appending inbound/outbound messages to the append-only log
    - Reading history windows for extraction and prompting
    - Moving the explicit booking state machine
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_create(
        self,
        business_id: uuid.UUID,
        instance_id: uuid.UUID,
        phone_number: str,
        contact_name: str | None = None,
    ) -> Conversation:
        """
        Return the most recently active conversation for this phone within the
        tenant, across any channel instance, creating one on first contact.
        """

        result = await self.db.execute(
            select(Conversation)
            .where(
                Conversation.business_id == business_id,
                Conversation.phone_number == phone_number,
            )
            .order_by(
                Conversation.last_message_at.desc().nulls_last(),
                Conversation.created_at.desc(),
            )
        )
        conversation = result.scalars().first()

        if conversation:
            if contact_name and not conversation.contact_name:
                conversation.contact_name = contact_name
            # Outbound messages follow the instance the contact last wrote to
            if conversation.whatsapp_instance_id != instance_id:
                conversation.whatsapp_instance_id = instance_id
                await self.db.flush()
            return conversation

        conversation = Conversation(
            business_id=business_id,
            whatsapp_instance_id=instance_id,
            phone_number=phone_number,
            contact_name=contact_name,
            booking_state=BookingFlowState.COLLECTING.value,
            state_updated_at=datetime.utcnow(),
            last_message_at=datetime.utcnow(),
            created_at=datetime.utcnow(),
        )
        self.db.add(conversation)
        await self.db.flush()
        return conversation

    async def get(self, conversation_id: uuid.UUID) -> Conversation | None:
        result = await self.db.execute(
            select(Conversation).where(Conversation.id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def has_external_message(self, conversation_id: uuid.UUID, external_message_id: str) -> bool:
        result = await self.db.execute(
            select(ConversationMessage.id).where(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.external_message_id == external_message_id,
            )
        )
        return result.first() is not None

    async def append(
        self,
        conversation: Conversation,
        role: MessageRole,
        content: str,
        external_message_id: str | None = None,
        message_type: str = "text",
        delivered: bool = False,
    ) -> ConversationMessage:
        created_at = datetime.utcnow()
        last = conversation.last_message_at
        if last is not None and last.tzinfo is not None:
            last = last.astimezone(timezone.utc).replace(tzinfo=None)
        # History is ordered by created_at; keep the log strictly increasing
        if last and created_at <= last:
            created_at = last + timedelta(microseconds=1)

        message = ConversationMessage(
            business_id=conversation.business_id,
            conversation_id=conversation.id,
            external_message_id=external_message_id,
            role=role.value,
            content=content,
            message_type=message_type,
            delivered=delivered,
            created_at=created_at,
        )
        self.db.add(message)
        conversation.last_message_at = message.created_at
        await self.db.flush()
        return message

    async def history(self, conversation_id: uuid.UUID, limit: int | None = None) -> list[dict]:
        """Messages oldest first as {"role", "content"} dicts; ``limit`` keeps the newest ones."""

        query = (
            select(ConversationMessage)
            .where(ConversationMessage.conversation_id == conversation_id)
            .order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
        )
        if limit:
            query = query.limit(limit)

        result = await self.db.execute(query)
        rows = list(result.scalars().all())
        rows.reverse()

        return [{"role": msg.role, "content": msg.content} for msg in rows]

    async def set_state(self, conversation: Conversation, state: BookingFlowState) -> None:
        if conversation.booking_state != state.value:
            conversation.booking_state = state.value
            conversation.state_updated_at = datetime.utcnow()
        await self.db.flush()
