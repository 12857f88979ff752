"""Domain errors raised inside the booking flow.

None of these reach the webhook caller: the orchestrator and the commit
pipeline recover from each one with fallback messaging or by skipping work.
"""


class BookingFlowError(Exception):
    """Base class for booking flow errors."""


class TranscriptionFailure(BookingFlowError):
    """Audio could not be fetched or transcribed."""


class ExternalServiceUnavailable(BookingFlowError):
    """Language model, messaging or payment gateway call failed."""

    def __init__(self, service: str, detail: str = ""):
        self.service = service
        self.detail = detail
        super().__init__(f"{service} unavailable: {detail}" if detail else f"{service} unavailable")


class SchedulingConflict(BookingFlowError):
    """Candidate interval overlaps another contact's booking."""

    def __init__(self, conflicting_booking_id=None):
        self.conflicting_booking_id = conflicting_booking_id
        super().__init__(f"Time slot overlaps booking {conflicting_booking_id}")


class DuplicateCommit(BookingFlowError):
    """A booking for this conversation was already committed recently."""
