import enum


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class BookingFlowState(str, enum.Enum):
    """Per-conversation position in the booking state machine.

    COLLECTING -> SUMMARIZED -> CONFIRMATION_RECEIVED
        -> PAYMENT_PENDING -> CONFIRMED
        -> CONFIRMED_DIRECT
    """
    COLLECTING = "COLLECTING"
    SUMMARIZED = "SUMMARIZED"
    CONFIRMATION_RECEIVED = "CONFIRMATION_RECEIVED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    CONFIRMED = "CONFIRMED"
    CONFIRMED_DIRECT = "CONFIRMED_DIRECT"


# States in which a new booking must not be started from this conversation
# until the contact starts over.
COMMITTED_STATES = (
    BookingFlowState.PAYMENT_PENDING,
    BookingFlowState.CONFIRMED,
    BookingFlowState.CONFIRMED_DIRECT,
)


class MessageRole(str, enum.Enum):
    INBOUND = "user"
    OUTBOUND = "assistant"


class PaymentRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
