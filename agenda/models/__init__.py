# agenda/models/__init__.py

from agenda.core.database import Base

# Core models
from agenda.models.business import Business
from agenda.models.whatsapp_instance import WhatsappInstance
from agenda.models.professional import Professional
from agenda.models.service import Service
from agenda.models.client import Client
from agenda.models.conversation import Conversation
from agenda.models.conversation_message import ConversationMessage
from agenda.models.booking import Booking
from agenda.models.payment_request import PaymentRequest

__all__ = [
    "Base",
    "Business",
    "WhatsappInstance",
    "Professional",
    "Service",
    "Client",
    "Conversation",
    "ConversationMessage",
    "Booking",
    "PaymentRequest",
]
