from agenda.schemas.webhook import (
    EvolutionMessageKey,
    EvolutionMessageData,
    EvolutionWebhook,
    PaymentNotificationData,
    PaymentNotification,
    WebhookAck,
)
