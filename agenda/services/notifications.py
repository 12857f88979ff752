import asyncio
import json
import logging
import uuid
from datetime import datetime

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100


class SubscriptionClosed(Exception):
    pass


class Subscription:
    """One live listener. Events are queued until the transport drains them."""

    def __init__(self, business_id: uuid.UUID | None = None, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self.id = uuid.uuid4()
        self.business_id = business_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def wants(self, event: dict) -> bool:
        return self.business_id is None or str(event.get("business_id")) == str(self.business_id)

    def deliver(self, event: dict) -> None:
        if self.closed:
            raise SubscriptionClosed(str(self.id))
        self.queue.put_nowait(event)

    async def next_event(self, timeout: float | None = None) -> dict | None:
        """Next queued event, or None when ``timeout`` passes first."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self.closed = True


class NotificationBroadcaster:
    """
    Best-effort fan-out of booking events to live subscribers (dashboards).

    No replay and no delivery guarantee. A subscriber whose delivery fails is
    dropped; the publisher and the other subscribers are unaffected.
    """

    def __init__(self):
        self._subscribers: dict[uuid.UUID, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, business_id: uuid.UUID | None = None) -> Subscription:
        subscription = Subscription(business_id)
        self._subscribers[subscription.id] = subscription
        logger.debug("Subscriber %s added (%s total)", subscription.id, self.subscriber_count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        self._subscribers.pop(subscription.id, None)

    def publish(self, event: dict) -> int:
        """Deliver ``event`` to every interested subscriber; returns how many received it."""
        delivered = 0
        for subscription in list(self._subscribers.values()):
            if not subscription.wants(event):
                continue
            try:
                subscription.deliver(event)
                delivered += 1
            except (asyncio.QueueFull, SubscriptionClosed):
                logger.info("Dropping subscriber %s", subscription.id)
                self.unsubscribe(subscription)
        return delivered


def booking_created_event(booking) -> dict:
    return {
        "type": "booking_created",
        "business_id": str(booking.business_id),
        "booking_id": str(booking.id),
        "professional_id": str(booking.professional_id),
        "client_name": booking.client_name,
        "appointment_date": booking.appointment_date.isoformat(),
        "appointment_time": booking.appointment_time,
        "status": booking.status,
        "emitted_at": datetime.utcnow().isoformat(),
    }


def format_sse(event: dict) -> str:
    return f"event: {event.get('type', 'message')}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n"
