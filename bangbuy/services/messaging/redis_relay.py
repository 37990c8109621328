# bangbuy/services/messaging/redis_relay.py
"""
Redis Pub/Sub relay for realtime events.

Mirrors every locally published event onto ``conversation:{id}`` and feeds
events published by other processes into the local broadcaster, so viewers
connected to any worker see every event.

Design decisions:
- ``publish`` only enqueues; a background thread talks to Redis, so a slow or
  hung Redis never blocks the caller (full outbox drops and counts)
- Socket timeouts on the client bound every Redis call
- Envelopes carry an origin id; a process ignores its own echoes
- Failures are logged, never raised into the publisher
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError
import ulid

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "conversation:"
CHANNEL_PATTERN = f"{CHANNEL_PREFIX}*"

RemoteHandler = Callable[[str, Dict[str, Any]], None]

_LISTEN_TIMEOUT_SECONDS = 1.0
_RETRY_DELAY_SECONDS = 1.0


def conversation_channel(conversation_id: str) -> str:
    return f"{CHANNEL_PREFIX}{conversation_id}"


class RedisRelay:
    """Cross-process bridge between RealtimeBroadcaster instances."""

    def __init__(self, client: "Redis[str]", queue_size: int = 1000) -> None:
        self._redis: Optional["Redis[str]"] = client
        self.origin = str(ulid.ULID())
        self._outbox: "queue.Queue[Tuple[str, str]]" = queue.Queue(maxsize=queue_size)
        self._stopped = threading.Event()
        self._idle = threading.Condition()
        self._in_flight = 0
        self._publish_count = 0
        self._error_count = 0
        self._drop_count = 0
        self._received_count = 0
        self._listener: Optional[threading.Thread] = None
        self._publisher = threading.Thread(target=self._publish_loop, name="redis-relay-publish", daemon=True)
        self._publisher.start()

    @classmethod
    def from_url(cls, redis_url: str, socket_timeout: float = 2.0, queue_size: int = 1000) -> "RedisRelay":
        client: "Redis[str]" = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            socket_keepalive=True,
            health_check_interval=30,
        )
        logger.info("[REDIS-RELAY] Relay created")
        return cls(client, queue_size=queue_size)

    # Outbound

    def publish(self, conversation_id: str, event: Dict[str, Any]) -> bool:
        """
        Queue an event for the conversation's channel without blocking.

        Returns:
            True if queued, False if the relay is closed or its outbox is full
        """
        if self._redis is None or self._stopped.is_set():
            return False
        envelope = json.dumps({"origin": self.origin, "event": event})
        with self._idle:
            try:
                self._outbox.put_nowait((conversation_channel(conversation_id), envelope))
            except queue.Full:
                self._drop_count += 1
                logger.warning(
                    "[REDIS-RELAY] Outbox full, dropping event",
                    extra={"conversation_id": conversation_id, "event_type": event.get("type")},
                )
                return False
            self._in_flight += 1
        return True

    def _publish_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                channel, envelope = self._outbox.get(timeout=_LISTEN_TIMEOUT_SECONDS / 4)
            except queue.Empty:
                continue
            try:
                client = self._redis
                if client is not None:
                    receivers = client.publish(channel, envelope)
                    self._publish_count += 1
                    logger.debug(f"[REDIS-RELAY] Published to {channel} (subscribers: {receivers})")
            except (RedisError, OSError) as e:
                self._error_count += 1
                logger.error(f"[REDIS-RELAY] Failed to publish to {channel}: {e}")
            finally:
                with self._idle:
                    self._in_flight -= 1
                    self._idle.notify_all()

    def flush(self, timeout: float = 2.0) -> bool:
        """Block until every queued event has been handed to Redis (or failed)."""
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight <= 0, timeout=timeout)

    # Inbound

    def start_listener(self, handler: RemoteHandler) -> None:
        """Subscribe to every conversation channel and pass foreign events to ``handler``."""
        if self._redis is None or self._listener is not None:
            return
        self._listener = threading.Thread(
            target=self._listen_loop, args=(handler,), name="redis-relay-listen", daemon=True
        )
        self._listener.start()

    def _listen_loop(self, handler: RemoteHandler) -> None:
        pubsub = None
        while not self._stopped.is_set():
            try:
                if pubsub is None:
                    client = self._redis
                    if client is None:
                        return
                    pubsub = client.pubsub(ignore_subscribe_messages=True)
                    pubsub.psubscribe(CHANNEL_PATTERN)
                    logger.info(f"[REDIS-RELAY] Listening on {CHANNEL_PATTERN}")
                message = pubsub.get_message(timeout=_LISTEN_TIMEOUT_SECONDS)
            except (RedisError, OSError) as e:
                self._error_count += 1
                logger.error(f"[REDIS-RELAY] Listener error, reconnecting: {e}")
                self._close_pubsub(pubsub)
                pubsub = None
                self._stopped.wait(_RETRY_DELAY_SECONDS)
                continue
            if message:
                self.handle_message(message, handler)
        self._close_pubsub(pubsub)

    def handle_message(self, message: Dict[str, Any], handler: RemoteHandler) -> bool:
        """
        Decode one pub/sub message and deliver it unless it is our own echo.

        Returns:
            True if the event was handed to ``handler``
        """
        if message.get("type") not in ("message", "pmessage"):
            return False
        channel = str(message.get("channel") or "")
        if not channel.startswith(CHANNEL_PREFIX):
            return False
        try:
            envelope = json.loads(message.get("data") or "")
            origin, event = envelope["origin"], envelope["event"]
        except (TypeError, ValueError, KeyError) as e:
            logger.warning(f"[REDIS-RELAY] Ignoring malformed message on {channel}: {e}")
            return False
        if origin == self.origin or not isinstance(event, dict):
            return False
        self._received_count += 1
        handler(channel[len(CHANNEL_PREFIX):], event)
        return True

    @staticmethod
    def _close_pubsub(pubsub: Any) -> None:
        if pubsub is None:
            return
        try:
            pubsub.close()
        except (RedisError, OSError) as e:
            logger.debug(f"[REDIS-RELAY] Error closing pubsub: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "connected": self._redis is not None,
            "listening": self._listener is not None and self._listener.is_alive(),
            "publish_count": self._publish_count,
            "error_count": self._error_count,
            "drop_count": self._drop_count,
            "received_count": self._received_count,
        }

    def close(self) -> None:
        if self._redis is None:
            return
        self._stopped.set()
        for thread in (self._publisher, self._listener):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=_LISTEN_TIMEOUT_SECONDS + 1.0)
        try:
            self._redis.close()
        except (RedisError, OSError) as e:
            logger.warning(f"[REDIS-RELAY] Error closing Redis client: {e}")
        finally:
            self._redis = None
