"""Publish/subscribe fan-out of engine messages to connected clients."""

import asyncio
import itertools
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def make_message(msg_type: str, payload: Any = None) -> dict:
    """Build a server message envelope."""
    return {"type": msg_type, "payload": payload}


class Subscription:
    """One subscriber's bounded message queue."""

    def __init__(self, subscriber_id: int, max_queue: int):
        self.id = subscriber_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.closed = False
        self.dropped = False

    def offer(self, message: dict) -> bool:
        """Queue a message without waiting. Returns False if the queue is full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            return False

    async def get(self) -> Optional[dict]:
        """Wait for the next message; None once the subscription is closed."""
        if self.closed and self.queue.empty():
            return None
        message = await self.queue.get()
        return message

    def close(self):
        if self.closed:
            return
        self.closed = True
        # Undelivered messages are discarded; None wakes a pending get()
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


class Broadcaster:
    """
    Fan-out of messages to all subscribers.

    publish() never blocks: each subscriber drains its own queue, and a
    subscriber whose queue is full is dropped instead of slowing the rest.
    """

    def __init__(self, config: Optional[dict] = None):
        config = config or {}
        self.max_queue = config.get("server", {}).get("subscriber_queue_size", 256)
        self._subscribers: dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, initial: Optional[list] = None) -> Subscription:
        """
        Register a subscriber.

        Args:
            initial: Messages queued ahead of anything published afterwards
        """
        subscription = Subscription(next(self._ids), self.max_queue)
        for message in initial or []:
            subscription.offer(message)
        self._subscribers[subscription.id] = subscription
        logger.info(f"Subscriber {subscription.id} connected ({len(self._subscribers)} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if self._subscribers.pop(subscription.id, None) is not None:
            logger.info(f"Subscriber {subscription.id} disconnected ({len(self._subscribers)} total)")
        subscription.close()

    def drop(self, subscription: Subscription):
        """Unsubscribe a subscriber that cannot keep up."""
        logger.warning(f"Dropping slow subscriber {subscription.id}")
        subscription.dropped = True
        self.unsubscribe(subscription)

    def publish(self, message: dict) -> int:
        """
        Deliver a message to every subscriber.

        Returns:
            Number of subscribers the message was queued for
        """
        delivered = 0
        slow = []
        for subscription in list(self._subscribers.values()):
            if subscription.offer(message):
                delivered += 1
            else:
                slow.append(subscription)

        for subscription in slow:
            self.drop(subscription)

        return delivered

    def close_all(self):
        for subscription in list(self._subscribers.values()):
            self.unsubscribe(subscription)
