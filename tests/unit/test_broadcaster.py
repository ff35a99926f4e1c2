"""Unit tests for the subscriber fan-out."""

import asyncio

import pytest

from agentdeck.broadcaster import Broadcaster, make_message

from conftest import drain


def test_publish_reaches_every_subscriber():
    broadcaster = Broadcaster()
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()

    delivered = broadcaster.publish(make_message("event", {"id": "e1"}))

    assert delivered == 2
    assert drain(first) == [{"type": "event", "payload": {"id": "e1"}}]
    assert drain(second) == [{"type": "event", "payload": {"id": "e1"}}]


def test_initial_messages_come_first():
    broadcaster = Broadcaster()
    subscription = broadcaster.subscribe(initial=[make_message("connected"), make_message("sessions", [])])
    broadcaster.publish(make_message("event", {}))

    assert [m["type"] for m in drain(subscription)] == ["connected", "sessions", "event"]


def test_slow_subscriber_is_dropped_without_affecting_others():
    broadcaster = Broadcaster(config={"server": {"subscriber_queue_size": 2}})
    slow = broadcaster.subscribe()
    fast = broadcaster.subscribe()

    for i in range(3):
        broadcaster.publish(make_message("event", {"n": i}))
        drain(fast)

    assert broadcaster.subscriber_count == 1
    assert slow.closed is True
    assert slow.dropped is True
    assert fast.closed is False


def test_unsubscribe_is_idempotent():
    broadcaster = Broadcaster()
    subscription = broadcaster.subscribe()

    broadcaster.unsubscribe(subscription)
    assert subscription.dropped is False
    broadcaster.unsubscribe(subscription)

    assert broadcaster.subscriber_count == 0
    assert broadcaster.publish(make_message("pong")) == 0


@pytest.mark.asyncio
async def test_close_wakes_pending_reader():
    broadcaster = Broadcaster()
    subscription = broadcaster.subscribe()
    reader = asyncio.create_task(subscription.get())
    await asyncio.sleep(0)

    broadcaster.close_all()

    assert await asyncio.wait_for(reader, timeout=1) is None
