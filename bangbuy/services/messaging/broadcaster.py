# bangbuy/services/messaging/broadcaster.py
"""
In-process realtime broadcaster with per-conversation topics.

Design decisions:
- One bounded queue and one delivery thread per subscription, so a slow
  handler only ever delays its own subscriber
- ``publish`` never blocks: a full queue drops the event and counts the drop
- Per-subscriber FIFO; no ordering across conversations or subscribers
- No buffering for absent subscribers; viewers reconcile by re-fetching
- Handler exceptions are logged and swallowed per event
- The broker is an injected object, never a module-level singleton
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import ulid

from ...monitoring.prometheus_metrics import prometheus_metrics

if TYPE_CHECKING:
    from .redis_relay import RedisRelay

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], None]

DEFAULT_QUEUE_SIZE = 100
_POLL_INTERVAL_SECONDS = 0.05


class Subscription:
    """
    A live subscription to one conversation topic.

    ``close`` is idempotent and safe to call from any thread, including from
    inside the subscription's own handler.
    """

    def __init__(
        self,
        conversation_id: str,
        handler: EventHandler,
        queue_size: int,
        on_close: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.id = str(ulid.ULID())
        self.conversation_id = conversation_id
        self.handler = handler
        self.delivered = 0
        self.dropped = 0
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=queue_size)
        self._closed = threading.Event()
        self._idle = threading.Condition()
        self._in_flight = 0
        self._on_close = on_close
        self._thread = threading.Thread(
            target=self._run,
            name=f"broadcast-{conversation_id}-{self.id[-6:]}",
            daemon=True,
        )
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, event: Dict[str, Any]) -> bool:
        """Enqueue without blocking. Returns False when closed or full."""
        if self._closed.is_set():
            return False
        with self._idle:
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                self.dropped += 1
                return False
            self._in_flight += 1
        return True

    def _run(self) -> None:
        while not self._closed.is_set():
            try:
                event = self._queue.get(timeout=_POLL_INTERVAL_SECONDS)
            except queue.Empty:
                continue
            try:
                if not self._closed.is_set():
                    self.handler(event)
                    self.delivered += 1
            except Exception:
                logger.exception(
                    "[BROADCAST] Subscriber handler failed",
                    extra={
                        "conversation_id": self.conversation_id,
                        "subscription_id": self.id,
                        "event_type": event.get("type"),
                    },
                )
            finally:
                with self._idle:
                    self._in_flight -= 1
                    self._idle.notify_all()

    def wait_until_idle(self, timeout: float = 2.0) -> bool:
        """Block until every accepted event has been handed to the handler."""
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight <= 0 or self.closed, timeout=timeout)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        with self._idle:
            self._in_flight = 0
            self._idle.notify_all()
        if self._on_close is not None:
            self._on_close(self)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=1.0)


class RealtimeBroadcaster:
    """
    Per-conversation publish/subscribe fan-out.

    Usage:
        broadcaster = RealtimeBroadcaster()
        sub = broadcaster.subscribe(conversation_id, handler)
        broadcaster.publish(conversation_id, event)
        broadcaster.unsubscribe(sub)
    """

    def __init__(
        self,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        relay: Optional["RedisRelay"] = None,
    ) -> None:
        self.queue_size = queue_size
        self.relay = relay
        self._lock = threading.Lock()
        self._topics: Dict[str, Dict[str, Subscription]] = {}
        self._publish_count = 0
        self._drop_count = 0
        if relay is not None:
            relay.start_listener(self.deliver_remote)

    def subscribe(
        self,
        conversation_id: str,
        handler: EventHandler,
        queue_size: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(
            conversation_id,
            handler,
            queue_size or self.queue_size,
            on_close=self._detach,
        )
        with self._lock:
            self._topics.setdefault(conversation_id, {})[subscription.id] = subscription
        logger.debug(
            "[BROADCAST] Subscribed",
            extra={"conversation_id": conversation_id, "subscription_id": subscription.id},
        )
        return subscription

    def publish(self, conversation_id: str, event: Dict[str, Any]) -> int:
        """
        Fan an event out to every current subscriber of the conversation and
        hand it to the relay for other processes.

        Returns:
            Number of local subscriber queues that accepted the event
        """
        accepted = self._fan_out(conversation_id, event)
        if self.relay is not None:
            self.relay.publish(conversation_id, event)
        return accepted

    def deliver_remote(self, conversation_id: str, event: Dict[str, Any]) -> int:
        """Deliver an event received from another process to local subscribers only."""
        return self._fan_out(conversation_id, event)

    def _fan_out(self, conversation_id: str, event: Dict[str, Any]) -> int:
        with self._lock:
            subscribers: List[Subscription] = list(self._topics.get(conversation_id, {}).values())

        accepted = 0
        dropped = 0
        for subscription in subscribers:
            if subscription.offer(event):
                accepted += 1
            elif not subscription.closed:
                dropped += 1

        with self._lock:
            self._publish_count += 1
            self._drop_count += dropped

        event_type = str(event.get("type", "unknown"))
        prometheus_metrics.record_realtime_event(event_type, accepted, dropped)
        if dropped:
            logger.warning(
                f"[BROADCAST] Dropped {event_type} for {dropped} slow subscriber(s)",
                extra={"conversation_id": conversation_id},
            )

        return accepted

    def unsubscribe(self, subscription: Optional[Subscription]) -> None:
        """Stop a subscription. Safe to call repeatedly or with an already-closed handle."""
        if subscription is None:
            return
        subscription.close()
        self._detach(subscription)

    def _detach(self, subscription: Subscription) -> None:
        with self._lock:
            topic = self._topics.get(subscription.conversation_id)
            if topic is None:
                return
            topic.pop(subscription.id, None)
            if not topic:
                self._topics.pop(subscription.conversation_id, None)

    def subscriber_count(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._topics.get(conversation_id, {}))

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "topics": len(self._topics),
                "subscriptions": sum(len(topic) for topic in self._topics.values()),
                "publish_count": self._publish_count,
                "drop_count": self._drop_count,
            }

    def close(self) -> None:
        """Shut every subscription down."""
        with self._lock:
            subscriptions = [sub for topic in self._topics.values() for sub in topic.values()]
        for subscription in subscriptions:
            subscription.close()
        with self._lock:
            self._topics.clear()
        if self.relay is not None:
            self.relay.close()
