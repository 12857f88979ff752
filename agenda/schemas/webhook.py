from pydantic import BaseModel, Field, field_validator
from uuid import UUID


# ============== Messaging gateway (Evolution API) ==============

class EvolutionMessageKey(BaseModel):
    remote_jid: str = Field(..., alias="remoteJid")
    from_me: bool = Field(False, alias="fromMe")
    id: str | None = None

    class Config:
        populate_by_name = True
        extra = "allow"


class EvolutionMessageData(BaseModel):
    key: EvolutionMessageKey
    push_name: str | None = Field(None, alias="pushName")
    message: dict | None = None
    message_type: str | None = Field(None, alias="messageType")

    class Config:
        populate_by_name = True
        extra = "allow"

    @property
    def text(self) -> str | None:
        message = self.message or {}
        if message.get("conversation"):
            return message["conversation"]
        extended = message.get("extendedTextMessage") or {}
        return extended.get("text") or None

    @property
    def is_audio(self) -> bool:
        return bool((self.message or {}).get("audioMessage")) or self.message_type == "audioMessage"

    @property
    def inline_media(self) -> str | None:
        """Base64 body when the instance is configured to embed media in webhooks."""
        return (self.message or {}).get("base64")

    @property
    def is_group(self) -> bool:
        return self.key.remote_jid.endswith("@g.us")


class EvolutionWebhook(BaseModel):
    """Inbound webhook envelope. Only ``messages.upsert`` carries contact messages."""
    event: str
    instance: str | None = None
    data: dict | list | None = None

    class Config:
        extra = "allow"

    @field_validator("event")
    @classmethod
    def normalize_event(cls, value: str) -> str:
        # Evolution sends both "messages.upsert" and "MESSAGES_UPSERT"
        return value.strip().lower().replace("_", ".")

    @property
    def is_message(self) -> bool:
        return self.event == "messages.upsert"

    def message_data(self) -> EvolutionMessageData | None:
        data = self.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict) or "key" not in data:
            return None
        return EvolutionMessageData.model_validate(data)


# ============== Payment gateway ==============

class PaymentNotificationData(BaseModel):
    id: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value) if value is not None else None


class PaymentNotification(BaseModel):
    """
    Payment callback body. Either the direct form ``{status, reference}`` or
    the MercadoPago form ``{type: "payment", data: {id}}``.
    """
    status: str | None = None
    reference: str | None = None
    external_reference: str | None = None
    type: str | None = None
    topic: str | None = None
    action: str | None = None
    data: PaymentNotificationData | None = None

    class Config:
        extra = "allow"

    @property
    def resolved_reference(self) -> str | None:
        return self.reference or self.external_reference

    @property
    def payment_id(self) -> str | None:
        kind = self.type or self.topic or ""
        if self.data and self.data.id and (not kind or kind == "payment"):
            return self.data.id
        return None

    @property
    def is_recognized(self) -> bool:
        return bool(self.status or self.payment_id or self.type or self.topic)


# ============== Responses ==============

class WebhookAck(BaseModel):
    """Every processed webhook is acknowledged with 200 and what was done."""
    action: str
    detail: str | None = None
    conversation_id: UUID | None = None
    booking_id: UUID | None = None
    payment_reference: str | None = None
