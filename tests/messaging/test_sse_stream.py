"""Tests for the conversation SSE generator."""

import asyncio
import json

from bangbuy.services.messaging.sse_stream import create_conversation_stream, format_event


def _run(coro):
    return asyncio.run(coro)


class TestConversationStream:
    def test_connected_then_events_then_heartbeat(self, broadcaster):
        async def scenario():
            stream = create_conversation_stream(broadcaster, "c1", "u1", heartbeat_interval=0.1)
            connected = await stream.__anext__()
            broadcaster.publish("c1", {"type": "INSERT", "payload": {"n": 1}})
            event = await asyncio.wait_for(stream.__anext__(), timeout=2)
            heartbeat = await asyncio.wait_for(stream.__anext__(), timeout=2)
            await stream.aclose()
            return connected, event, heartbeat

        connected, event, heartbeat = _run(scenario())

        assert connected["event"] == "connected"
        assert json.loads(connected["data"])["conversation_id"] == "c1"
        assert event["event"] == "INSERT"
        assert json.loads(event["data"])["payload"] == {"n": 1}
        assert heartbeat["event"] == "heartbeat"

    def test_closing_stream_unsubscribes(self, broadcaster):
        async def scenario():
            stream = create_conversation_stream(broadcaster, "c1", "u1", heartbeat_interval=5)
            await stream.__anext__()
            subscribed = broadcaster.subscriber_count("c1")
            await stream.aclose()
            return subscribed

        assert _run(scenario()) == 1
        assert broadcaster.subscriber_count("c1") == 0

    def test_only_own_conversation_events(self, broadcaster):
        async def scenario():
            stream = create_conversation_stream(broadcaster, "c1", "u1", heartbeat_interval=0.2)
            await stream.__anext__()
            broadcaster.publish("c2", {"type": "INSERT", "payload": {}})
            nxt = await asyncio.wait_for(stream.__anext__(), timeout=2)
            await stream.aclose()
            return nxt

        assert _run(scenario())["event"] == "heartbeat"


def test_format_event():
    formatted = format_event({"type": "READ", "payload": {"user_id": "u1"}})
    assert formatted["event"] == "READ"
    assert json.loads(formatted["data"])["payload"]["user_id"] == "u1"
