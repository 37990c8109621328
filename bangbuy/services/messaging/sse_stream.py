# bangbuy/services/messaging/sse_stream.py
"""
Server-Sent Events stream for one conversation.

Bridges a thread-based broadcaster subscription into the event loop with
``loop.call_soon_threadsafe``. The generator holds no database session.

Event order on the wire:
- connected (once)
- INSERT / READ / TYPING_START / TYPING_STOP as they are published
- heartbeat while idle
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
from typing import Any, AsyncGenerator, Dict

from .broadcaster import RealtimeBroadcaster

logger = logging.getLogger(__name__)


def format_event(event: Dict[str, Any]) -> Dict[str, str]:
    """Convert a broadcaster event to an sse-starlette message dict."""
    return {"event": str(event.get("type", "message")), "data": json.dumps(event)}


async def create_conversation_stream(
    broadcaster: RealtimeBroadcaster,
    conversation_id: str,
    user_id: str,
    heartbeat_interval: float,
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Yield SSE message dicts for a conversation until the client disconnects.

    Args:
        broadcaster: The injected realtime broker
        conversation_id: Conversation topic to follow
        user_id: Viewer, used for logging only (access is checked by the route)
        heartbeat_interval: Seconds of silence before a heartbeat is sent
    """
    loop = asyncio.get_running_loop()
    inbox: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()

    def forward(event: Dict[str, Any]) -> None:
        loop.call_soon_threadsafe(inbox.put_nowait, event)

    subscription = broadcaster.subscribe(conversation_id, forward)
    logger.info(
        "[SSE-STREAM] Subscribed",
        extra={"conversation_id": conversation_id, "user_id": user_id},
    )
    try:
        yield {
            "event": "connected",
            "data": json.dumps(
                {
                    "conversation_id": conversation_id,
                    "user_id": user_id,
                    "status": "connected",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ),
        }
        while True:
            try:
                event = await asyncio.wait_for(inbox.get(), timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                yield {
                    "event": "heartbeat",
                    "data": json.dumps(
                        {"type": "heartbeat", "timestamp": datetime.now(timezone.utc).isoformat()}
                    ),
                }
                continue
            yield format_event(event)
    except asyncio.CancelledError:
        logger.info(f"[SSE-STREAM] Stream cancelled for conversation {conversation_id}")
        raise
    finally:
        broadcaster.unsubscribe(subscription)
