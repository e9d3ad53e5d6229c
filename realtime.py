"""
Kitchen dashboard fan-out.

One ``Broadcaster`` is built per application and handed to the order and
kitchen services. Dashboard WebSocket sessions subscribe with an asyncio queue;
``publish`` may be called from any thread. Delivery is best effort: a session
only sees events published while it is subscribed, and dashboards re-fetch the
kitchen queue periodically to recover anything they missed. A session that
falls too far behind is dropped and its socket closed.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from linebot.v3.messaging import (
    ApiClient, Configuration, MessagingApi, PushMessageRequest, TextMessage,
)

logger = logging.getLogger(__name__)

ORDER_CREATED = "order_created"
ORDER_UPDATED = "order_updated"

# pending events per dashboard session before it is dropped
SUBSCRIBER_QUEUE_SIZE = 100


@dataclass(eq=False)
class Subscription:
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue
    on_overflow: Optional[Callable] = None
    dropped: bool = False

    def deliver(self, message):
        self.loop.call_soon_threadsafe(self._put, message)

    def _put(self, message):
        # runs on the session's own loop
        if self.dropped:
            return
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped = True
            logger.warning(f"Dashboard session fell {self.queue.maxsize} events behind, dropping it")
            if self.on_overflow is not None:
                self.on_overflow(self)


class Broadcaster:
    def __init__(self, queue_size=SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscriptions = set()
        self._listeners = []

    def subscribe(self) -> Subscription:
        """Register the calling coroutine's session; must run inside an event loop."""
        subscription = Subscription(
            loop=asyncio.get_running_loop(),
            queue=asyncio.Queue(maxsize=self.queue_size),
            on_overflow=self.unsubscribe,
        )
        with self._lock:
            self._subscriptions.add(subscription)
        return subscription

    def unsubscribe(self, subscription):
        with self._lock:
            self._subscriptions.discard(subscription)

    def add_listener(self, listener):
        """Synchronous callback receiving every message, e.g. a push notifier."""
        with self._lock:
            self._listeners.append(listener)

    @property
    def session_count(self):
        return len(self._subscriptions)

    def publish(self, event_type, order, message):
        payload = {"type": event_type, "order": order, "message": message}
        with self._lock:
            subscriptions = list(self._subscriptions)
            listeners = list(self._listeners)

        for subscription in subscriptions:
            try:
                subscription.deliver(payload)
            except RuntimeError:
                # the session's loop is gone
                self.unsubscribe(subscription)
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.exception(f"Fan-out listener failed for {event_type}")
        return payload

    def order_created(self, order):
        return self.publish(ORDER_CREATED, order, f"New order {order['orderNumber']} received")

    def order_updated(self, order):
        return self.publish(
            ORDER_UPDATED, order, f"Order {order['orderNumber']} is now {order['status']}"
        )


class LineNotifier:
    """Push new orders to the shop owner's LINE account."""

    def __init__(self, access_token, to, timeout=10):
        self.configuration = Configuration(access_token=access_token)
        self.to = to
        self.timeout = timeout

    @staticmethod
    def format_order(order):
        lines = [f"🍔 New order {order['orderNumber']}"]
        for item in order["items"]:
            lines.append(f"- {item['name']} x {item['quantity']}")
        lines.append(f"Total: {order['totalAmount']:.2f}")
        return "\n".join(lines)

    def __call__(self, payload):
        if payload["type"] != ORDER_CREATED:
            return
        with ApiClient(self.configuration) as api_client:
            MessagingApi(api_client).push_message(
                PushMessageRequest(
                    to=self.to,
                    messages=[TextMessage(text=self.format_order(payload["order"]))],
                ),
                _request_timeout=self.timeout,
            )
