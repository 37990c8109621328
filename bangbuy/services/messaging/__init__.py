"""
Realtime messaging: broadcaster, events, Redis relay and SSE bridge.

``DeliveryTracker`` is the client-side helper for in-process callers that
want the PENDING/SENT/FAILED lifecycle and ``resend`` around
``MessageService.send``.
"""

from .broadcaster import RealtimeBroadcaster, Subscription
from .delivery import DeliveryState, DeliveryTracker, OutgoingMessage
from .events import EventType

__all__ = [
    "DeliveryState",
    "DeliveryTracker",
    "EventType",
    "OutgoingMessage",
    "RealtimeBroadcaster",
    "Subscription",
]
