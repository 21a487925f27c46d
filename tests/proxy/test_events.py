import asyncio

import pytest

from ccbproxy.proxy.events import EventChannel


def test_publish_reaches_every_subscriber():
    channel = EventChannel()
    first = channel.subscribe()
    second = channel.subscribe()

    channel.status("running", port=8487)
    channel.log("request OpenAI", type="request")

    for subscription in (first, second):
        events = subscription.pending()
        assert [(e.kind, e.message) for e in events] == [("status", "running"), ("log", "request OpenAI")]
        assert events[0].data == {"port": 8487}
    assert channel.subscriber_count == 2


def test_full_queue_drops_oldest_event():
    channel = EventChannel(maxsize=3)
    subscription = channel.subscribe()
    for index in range(5):
        channel.log(f"event {index}")

    assert [e.message for e in subscription.pending()] == ["event 2", "event 3", "event 4"]
    assert subscription.dropped == 2


def test_unsubscribed_consumer_receives_nothing():
    channel = EventChannel()
    subscription = channel.subscribe()
    channel.unsubscribe(subscription)
    channel.log("ignored")
    assert subscription.pending() == []
    assert channel.subscriber_count == 0


@pytest.mark.asyncio
async def test_async_iteration_ends_on_close():
    channel = EventChannel()
    subscription = channel.subscribe()

    async def consume():
        return [event.message async for event in subscription]

    consumer = asyncio.create_task(consume())
    channel.status("starting")
    channel.status("running")
    await asyncio.sleep(0)
    subscription.close()

    assert await asyncio.wait_for(consumer, timeout=1.0) == ["starting", "running"]
    assert channel.subscriber_count == 0


@pytest.mark.asyncio
async def test_get_waits_for_next_event():
    channel = EventChannel()
    subscription = channel.subscribe()
    waiter = asyncio.create_task(subscription.get())
    await asyncio.sleep(0)
    channel.log("hello", level="warn")
    event = await asyncio.wait_for(waiter, timeout=1.0)
    assert event.message == "hello"
    assert event.level == "warn"
