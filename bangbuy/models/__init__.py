"""
Database models for the BangBuy messaging core.

The models are organized by functionality:
- User profiles and notification preferences
- Conversations with per-participant read cursors
- Messages
- Notification dedupe records
"""

from .conversation import Conversation
from .message import MESSAGE_TYPE_FIRST_MESSAGE, MESSAGE_TYPE_NORMAL, Message
from .notification import DedupeRecord
from .user import UserProfile

__all__ = [
    "Conversation",
    "DedupeRecord",
    "MESSAGE_TYPE_FIRST_MESSAGE",
    "MESSAGE_TYPE_NORMAL",
    "Message",
    "UserProfile",
]
