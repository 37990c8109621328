"""
Repository layer for the BangBuy messaging core.

Repositories own data access only; services own transactions.
"""

from .base_repository import BaseRepository
from .conversation_repository import ConversationRepository
from .dedupe_record_repository import DedupeRecordRepository
from .factory import RepositoryFactory
from .message_repository import MessageRepository
from .user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "ConversationRepository",
    "DedupeRecordRepository",
    "MessageRepository",
    "RepositoryFactory",
    "UserRepository",
]
