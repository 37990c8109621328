# bangbuy/services/messaging/events.py
"""
Realtime event type definitions and builders.

All events follow this structure:
{
    "type": str,             # Event type identifier
    "schema_version": int,   # Schema version (currently 1)
    "conversation_id": str,  # Topic the event was published on
    "timestamp": str,        # ISO 8601 timestamp
    "payload": dict          # Event-specific data
}

Events are non-durable hints. A viewer that misses one reconciles by
re-fetching conversation state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class EventType(str, Enum):
    """Valid realtime event types."""

    INSERT = "INSERT"
    READ = "READ"
    TYPING_START = "TYPING_START"
    TYPING_STOP = "TYPING_STOP"


# Current schema version - increment when payload structure changes
SCHEMA_VERSION = 1


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def build_event(
    event_type: EventType, conversation_id: str, payload: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Build a properly structured event.

    Args:
        event_type: The type of event
        conversation_id: Conversation topic
        payload: Event-specific payload data
    """
    return {
        "type": event_type.value,
        "schema_version": SCHEMA_VERSION,
        "conversation_id": conversation_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }


def build_insert_event(
    conversation_id: str,
    message_id: str,
    sender_id: str,
    content: str,
    message_type: str,
    created_at: datetime,
    client_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build an INSERT event; ``client_id`` lets the sender reconcile its optimistic entry."""
    return build_event(
        EventType.INSERT,
        conversation_id,
        {
            "message": {
                "id": message_id,
                "conversation_id": conversation_id,
                "sender_id": sender_id,
                "content": content,
                "message_type": message_type,
                "created_at": _iso(created_at),
                "client_id": client_id,
            }
        },
    )


def build_read_event(conversation_id: str, user_id: str, last_read_at: datetime) -> Dict[str, Any]:
    return build_event(
        EventType.READ,
        conversation_id,
        {"user_id": user_id, "last_read_at": _iso(last_read_at)},
    )


def build_typing_event(
    conversation_id: str,
    user_id: str,
    is_typing: bool,
    expires_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    event_type = EventType.TYPING_START if is_typing else EventType.TYPING_STOP
    return build_event(
        event_type,
        conversation_id,
        {"user_id": user_id, "is_typing": is_typing, "expires_at": _iso(expires_at)},
    )
