"""Tests for the booking event broadcaster."""

import json
import uuid

import pytest

from agenda.services.notifications import NotificationBroadcaster, Subscription, format_sse


def event(business_id=None, **extra):
    return {"type": "booking_created", "business_id": str(business_id or uuid.uuid4()), **extra}


class TestBroadcaster:

    def test_fan_out_to_every_subscriber(self):
        broadcaster = NotificationBroadcaster()
        first, second = broadcaster.subscribe(), broadcaster.subscribe()

        assert broadcaster.publish(event()) == 2
        assert first.queue.qsize() == 1
        assert second.queue.qsize() == 1

    def test_publish_without_subscribers(self):
        assert NotificationBroadcaster().publish(event()) == 0

    def test_closed_subscriber_is_dropped_without_affecting_others(self):
        broadcaster = NotificationBroadcaster()
        gone, alive = broadcaster.subscribe(), broadcaster.subscribe()
        gone.close()

        assert broadcaster.publish(event()) == 1
        assert broadcaster.subscriber_count == 1
        assert alive.queue.qsize() == 1

    def test_full_queue_drops_subscriber(self):
        broadcaster = NotificationBroadcaster()
        slow = Subscription(maxsize=1)
        broadcaster._subscribers[slow.id] = slow

        broadcaster.publish(event())
        broadcaster.publish(event())

        assert broadcaster.subscriber_count == 0

    def test_business_filter(self):
        broadcaster = NotificationBroadcaster()
        business_id = uuid.uuid4()
        scoped = broadcaster.subscribe(business_id)
        everything = broadcaster.subscribe()

        broadcaster.publish(event(business_id))
        broadcaster.publish(event())

        assert scoped.queue.qsize() == 1
        assert everything.queue.qsize() == 2

    def test_unsubscribe(self):
        broadcaster = NotificationBroadcaster()
        subscription = broadcaster.subscribe()
        broadcaster.unsubscribe(subscription)

        assert subscription.closed
        assert broadcaster.publish(event()) == 0


class TestSubscription:

    @pytest.mark.asyncio
    async def test_next_event_times_out(self):
        assert await Subscription().next_event(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_next_event_returns_queued(self):
        subscription = Subscription()
        subscription.deliver(event(client_name="João"))
        received = await subscription.next_event(timeout=1)
        assert received["client_name"] == "João"


def test_format_sse():
    text = format_sse(event(client_name="João"))
    lines = text.split("\n")
    assert lines[0] == "event: booking_created"
    assert json.loads(lines[1].removeprefix("data: "))["client_name"] == "João"
    assert text.endswith("\n\n")
