"""
Tests for the in-process realtime broadcaster.

Covers per-conversation fan-out, per-subscriber FIFO, drop-on-full for slow
subscribers, handler isolation, idempotent unsubscribe and the Redis relay
between processes.
"""

from datetime import datetime, timezone
import json
import threading
import time
from unittest.mock import MagicMock

import pytest

from bangbuy.services.messaging.broadcaster import RealtimeBroadcaster
from bangbuy.services.messaging.events import build_read_event, build_typing_event
from bangbuy.services.messaging.redis_relay import RedisRelay, conversation_channel


def _event(n):
    return {"type": "INSERT", "payload": {"n": n}}


class TestFanOut:
    def test_delivers_only_to_topic_subscribers(self, broadcaster):
        first, second, other = [], [], []
        subs = [
            broadcaster.subscribe("c1", first.append),
            broadcaster.subscribe("c1", second.append),
            broadcaster.subscribe("c2", other.append),
        ]

        assert broadcaster.publish("c1", _event(1)) == 2
        for sub in subs:
            sub.wait_until_idle()

        assert first == second == [_event(1)]
        assert other == []

    def test_publish_without_subscribers(self, broadcaster):
        assert broadcaster.publish("empty", _event(1)) == 0
        assert broadcaster.get_stats()["publish_count"] == 1

    def test_per_subscriber_fifo(self, broadcaster):
        received = []
        sub = broadcaster.subscribe("c1", received.append, queue_size=100)

        for n in range(50):
            broadcaster.publish("c1", _event(n))
        sub.wait_until_idle()

        assert [e["payload"]["n"] for e in received] == list(range(50))


class TestSlowSubscribers:
    def test_full_queue_drops_without_blocking_others(self):
        broadcaster = RealtimeBroadcaster(queue_size=2)
        entered, release = threading.Event(), threading.Event()
        slow_received, fast_received = [], []

        def slow_handler(event):
            entered.set()
            release.wait(5)
            slow_received.append(event)

        try:
            slow = broadcaster.subscribe("c1", slow_handler)
            fast = broadcaster.subscribe("c1", fast_received.append, queue_size=10)

            broadcaster.publish("c1", _event(0))
            assert entered.wait(2)
            for n in range(1, 4):
                broadcaster.publish("c1", _event(n))
            fast.wait_until_idle()

            assert [e["payload"]["n"] for e in fast_received] == [0, 1, 2, 3]
            assert slow.dropped == 1
            assert broadcaster.get_stats()["drop_count"] == 1

            release.set()
            slow.wait_until_idle()
            assert [e["payload"]["n"] for e in slow_received] == [0, 1, 2]
        finally:
            release.set()
            broadcaster.close()

    def test_handler_exception_does_not_stop_delivery(self, broadcaster):
        received = []

        def flaky(event):
            if event["payload"]["n"] == 0:
                raise RuntimeError("render failed")
            received.append(event)

        sub = broadcaster.subscribe("c1", flaky)
        broadcaster.publish("c1", _event(0))
        broadcaster.publish("c1", _event(1))
        sub.wait_until_idle()

        assert received == [_event(1)]


class TestUnsubscribe:
    def test_unsubscribe_is_idempotent(self, broadcaster):
        received = []
        sub = broadcaster.subscribe("c1", received.append)

        broadcaster.unsubscribe(sub)
        broadcaster.unsubscribe(sub)
        broadcaster.unsubscribe(None)

        assert sub.closed
        assert broadcaster.subscriber_count("c1") == 0
        assert broadcaster.publish("c1", _event(1)) == 0
        assert received == []

    def test_close_from_inside_handler(self, broadcaster):
        closed = threading.Event()
        holder = {}

        def handler(event):
            holder["sub"].close()
            closed.set()

        holder["sub"] = broadcaster.subscribe("c1", handler)
        broadcaster.publish("c1", _event(1))

        assert closed.wait(2)
        assert broadcaster.subscriber_count("c1") == 0

    def test_close_shuts_every_subscription(self):
        broadcaster = RealtimeBroadcaster()
        subs = [broadcaster.subscribe(f"c{n}", lambda e: None) for n in range(3)]

        broadcaster.close()

        assert all(sub.closed for sub in subs)
        assert broadcaster.get_stats()["subscriptions"] == 0


def _envelope(origin, event):
    return json.dumps({"origin": origin, "event": event})


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.publish.return_value = 1
    client.pubsub.return_value.get_message.return_value = None
    return client


class TestRelay:
    def test_events_are_mirrored_to_relay(self):
        relay = MagicMock()
        broadcaster = RealtimeBroadcaster(relay=relay)
        event = build_read_event("c1", "u1", datetime(2026, 1, 1, tzinfo=timezone.utc))

        broadcaster.publish("c1", event)
        broadcaster.close()

        relay.start_listener.assert_called_once_with(broadcaster.deliver_remote)
        relay.publish.assert_called_once_with("c1", event)
        relay.close.assert_called_once()

    def test_remote_events_are_not_relayed_again(self, broadcaster):
        broadcaster.relay = MagicMock()
        received = []
        sub = broadcaster.subscribe("c1", received.append)

        assert broadcaster.deliver_remote("c1", _event(1)) == 1
        sub.wait_until_idle()

        assert received == [_event(1)]
        broadcaster.relay.publish.assert_not_called()

    def test_redis_relay_publishes_json_envelope(self, redis_client):
        relay = RedisRelay(redis_client)
        event = build_typing_event("c1", "u1", True)

        assert relay.publish("c1", event) is True
        assert relay.flush()

        channel, body = redis_client.publish.call_args.args
        assert channel == conversation_channel("c1") == "conversation:c1"
        assert json.loads(body) == {"origin": relay.origin, "event": event}
        assert relay.get_stats()["publish_count"] == 1
        relay.close()

    def test_hung_redis_never_blocks_publish(self, redis_client):
        """Publishing only enqueues; a stuck Redis call fills the outbox and drops."""
        entered, release = threading.Event(), threading.Event()

        def stuck_publish(channel, body):
            entered.set()
            release.wait(5)
            return 0

        redis_client.publish.side_effect = stuck_publish
        relay = RedisRelay(redis_client, queue_size=1)

        assert relay.publish("c1", _event(1)) is True
        assert entered.wait(2)
        started = time.monotonic()
        assert relay.publish("c1", _event(2)) is True
        assert relay.publish("c1", _event(3)) is False
        assert time.monotonic() - started < 0.5
        assert relay.get_stats()["drop_count"] == 1

        release.set()
        assert relay.flush()
        relay.close()

    def test_redis_failures_are_swallowed(self, redis_client):
        redis_client.publish.side_effect = ConnectionError("redis down")
        relay = RedisRelay(redis_client)

        assert relay.publish("c1", _event(1)) is True
        assert relay.flush()
        assert relay.get_stats()["error_count"] == 1

        relay.close()
        relay.close()
        redis_client.close.assert_called_once()
        assert relay.publish("c1", _event(2)) is False

    def test_from_url_sets_socket_timeouts(self, monkeypatch):
        from bangbuy.services.messaging import redis_relay

        from_url = MagicMock()
        monkeypatch.setattr(redis_relay.Redis, "from_url", from_url)

        relay = RedisRelay.from_url("redis://localhost:6379/0", socket_timeout=1.5)

        kwargs = from_url.call_args.kwargs
        assert kwargs["socket_timeout"] == 1.5
        assert kwargs["socket_connect_timeout"] == 1.5
        relay.close()


class TestRelayInbound:
    def test_foreign_event_is_delivered(self, redis_client):
        relay = RedisRelay(redis_client)
        delivered = []
        message = {
            "type": "pmessage",
            "pattern": "conversation:*",
            "channel": "conversation:c9",
            "data": _envelope("other-process", _event(1)),
        }

        assert relay.handle_message(message, lambda cid, event: delivered.append((cid, event)))
        assert delivered == [("c9", _event(1))]
        relay.close()

    @pytest.mark.parametrize(
        "message",
        [
            {"type": "pmessage", "channel": "conversation:c9", "data": "not json"},
            {"type": "pmessage", "channel": "conversation:c9", "data": json.dumps({"event": {}})},
            {"type": "pmessage", "channel": "user:u1", "data": _envelope("other", _event(1))},
            {"type": "psubscribe", "channel": "conversation:*", "data": 1},
        ],
    )
    def test_malformed_or_unrelated_messages_are_ignored(self, redis_client, message):
        relay = RedisRelay(redis_client)
        handler = MagicMock()

        assert relay.handle_message(message, handler) is False
        handler.assert_not_called()
        relay.close()

    def test_own_echo_is_ignored(self, redis_client):
        relay = RedisRelay(redis_client)
        handler = MagicMock()
        echo = {"type": "pmessage", "channel": "conversation:c1", "data": _envelope(relay.origin, _event(1))}

        assert relay.handle_message(echo, handler) is False
        handler.assert_not_called()
        relay.close()

    def test_listener_feeds_local_subscribers(self, redis_client):
        """Events published by another process reach this process's subscribers."""
        inbound = [
            {
                "type": "pmessage",
                "pattern": "conversation:*",
                "channel": "conversation:c1",
                "data": _envelope("other-process", _event(7)),
            }
        ]
        subscribed = threading.Event()

        def get_message(timeout=None):
            if subscribed.is_set() and inbound:
                return inbound.pop(0)
            time.sleep(0.01)
            return None

        pubsub = redis_client.pubsub.return_value
        pubsub.get_message.side_effect = get_message
        relay = RedisRelay(redis_client)
        broadcaster = RealtimeBroadcaster(relay=relay)
        got = threading.Event()
        received = []

        def handler(event):
            received.append(event)
            got.set()

        broadcaster.subscribe("c1", handler)
        subscribed.set()

        assert got.wait(2)
        assert received == [_event(7)]
        pubsub.psubscribe.assert_called_once_with("conversation:*")
        redis_client.publish.assert_not_called()
        broadcaster.close()
        pubsub.close.assert_called()


@pytest.mark.parametrize("is_typing,expected", [(True, "TYPING_START"), (False, "TYPING_STOP")])
def test_typing_event_type(is_typing, expected):
    event = build_typing_event("c1", "u1", is_typing)
    assert event["type"] == expected
    assert event["schema_version"] == 1
    assert event["conversation_id"] == "c1"
