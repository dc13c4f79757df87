"""
Change notifications for purchase requests.

Clients hold a server-sent-events connection open and re-fetch whenever a
``pr-change`` event arrives. Delivery is best effort: a subscriber that cannot
accept an event is dropped rather than retried, and is expected to reconnect.

The in-process bus only reaches subscribers connected to the same process.
Deployments running several workers should point ``PROCUREMENT_CHANGE_BUS`` at
an implementation backed by a shared broker.
"""

from __future__ import annotations

import abc
import json
import logging
import queue
import threading
import time
import uuid

from asgiref.sync import sync_to_async
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)

EVENT_CONNECTED = "connected"
EVENT_PING = "ping"
EVENT_PR_CHANGE = "pr-change"

DEFAULT_HEARTBEAT_SECONDS = 30
DEFAULT_MAX_PENDING = 100


def format_sse(event: dict) -> str:
    return f"data: {json.dumps(event, cls=DjangoJSONEncoder)}\n\n"


class Subscription:
    """A single connected client.

    Iterating yields SSE frames until the subscription is closed. A keep-alive
    ``ping`` frame goes out every ``heartbeat_interval`` seconds, whether or not
    events arrived in between.

    Plain iteration blocks the calling thread and suits WSGI workers. ASGI
    servers stream from ``aiter_frames()``, which waits in a worker thread and
    closes the subscription when the client disconnects.
    """

    def __init__(self, bus: ChangeNotificationBus, *, heartbeat_interval: float, max_pending: int):
        self.id = uuid.uuid4()
        self._bus = bus
        self._queue: queue.Queue = queue.Queue(maxsize=max_pending)
        self._heartbeat_interval = heartbeat_interval
        self._next_ping_at = time.monotonic() + heartbeat_interval
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def deliver(self, event: dict) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            return False
        return True

    def next_frame(self) -> str | None:
        """Block until the next frame is due; ``None`` once closed."""
        if self.closed:
            return None
        event = {"type": EVENT_PING}
        timeout = self._next_ping_at - time.monotonic()
        if timeout > 0:
            try:
                event = self._queue.get(timeout=timeout)
            except queue.Empty:
                pass
        if self.closed:
            return None
        if event.get("type") == EVENT_PING:
            self._next_ping_at = time.monotonic() + self._heartbeat_interval
        return format_sse(event)

    def __iter__(self):
        return self

    def __next__(self) -> str:
        frame = self.next_frame()
        if frame is None:
            raise StopIteration
        return frame

    async def aiter_frames(self):
        try:
            while True:
                frame = await sync_to_async(self.next_frame, thread_sensitive=False)()
                if frame is None:
                    return
                yield frame
        finally:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        # Wake a reader blocked on the queue.
        try:
            self._queue.put_nowait({"type": EVENT_PING})
        except queue.Full:
            pass
        self._bus.unsubscribe(self)


class ChangeNotificationBus(abc.ABC):
    @abc.abstractmethod
    def publish(self, event: dict) -> int:
        """Fan ``event`` out to every subscriber; returns how many received it."""

    @abc.abstractmethod
    def subscribe(self) -> Subscription:
        raise NotImplementedError

    @abc.abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Disconnect every subscriber."""


class InProcessChangeBus(ChangeNotificationBus):
    def __init__(self, *, heartbeat_interval: float | None = None, max_pending: int | None = None):
        self.heartbeat_interval = heartbeat_interval or getattr(
            settings, "PROCUREMENT_EVENTS_HEARTBEAT_SECONDS", DEFAULT_HEARTBEAT_SECONDS
        )
        self.max_pending = max_pending or getattr(settings, "PROCUREMENT_EVENTS_MAX_PENDING", DEFAULT_MAX_PENDING)
        self._subscriptions: set[Subscription] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, heartbeat_interval=self.heartbeat_interval, max_pending=self.max_pending)
        subscription.deliver({"type": EVENT_CONNECTED})
        with self._lock:
            self._subscriptions.add(subscription)
            count = len(self._subscriptions)
        logger.info("change_subscriber_connected", extra={"subscriber_count": count})
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            registered = subscription in self._subscriptions
            self._subscriptions.discard(subscription)
            count = len(self._subscriptions)
        if not subscription.closed:
            subscription.close()
        if registered:
            logger.info("change_subscriber_disconnected", extra={"subscriber_count": count})

    def publish(self, event: dict) -> int:
        with self._lock:
            subscriptions = list(self._subscriptions)

        delivered = 0
        for subscription in subscriptions:
            if subscription.deliver(event):
                delivered += 1
            else:
                logger.warning("change_subscriber_dropped", extra={"action": event.get("action")})
                self.unsubscribe(subscription)
        return delivered

    def close(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.close()


_bus: ChangeNotificationBus | None = None
_bus_lock = threading.Lock()


def get_change_bus() -> ChangeNotificationBus:
    global _bus
    with _bus_lock:
        if _bus is None:
            bus_path = getattr(settings, "PROCUREMENT_CHANGE_BUS", "procurement.events.InProcessChangeBus")
            _bus = import_string(bus_path)()
        return _bus


def reset_change_bus() -> None:
    global _bus
    with _bus_lock:
        if _bus is not None:
            _bus.close()
        _bus = None


def build_change_event(purchase_request_id=None, action=None) -> dict:
    return {
        "type": EVENT_PR_CHANGE,
        "timestamp": int(time.time() * 1000),
        "purchase_request_id": str(purchase_request_id) if purchase_request_id else None,
        "action": action,
    }


def notify_purchase_request_change(purchase_request_id=None, action=None) -> None:
    """Publish a ``pr-change`` event once the surrounding transaction commits."""
    event = build_change_event(purchase_request_id, action)
    transaction.on_commit(lambda: get_change_bus().publish(event))
