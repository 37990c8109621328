# bangbuy/repositories/factory.py
"""
Repository Factory for the BangBuy messaging core.

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from .conversation_repository import ConversationRepository
    from .dedupe_record_repository import DedupeRecordRepository
    from .message_repository import MessageRepository
    from .user_repository import UserRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_conversation_repository(db: Session) -> "ConversationRepository":
        from .conversation_repository import ConversationRepository

        return ConversationRepository(db)

    @staticmethod
    def create_message_repository(db: Session) -> "MessageRepository":
        from .message_repository import MessageRepository

        return MessageRepository(db)

    @staticmethod
    def create_user_repository(db: Session) -> "UserRepository":
        from .user_repository import UserRepository

        return UserRepository(db)

    @staticmethod
    def create_dedupe_record_repository(db: Session) -> "DedupeRecordRepository":
        from .dedupe_record_repository import DedupeRecordRepository

        return DedupeRecordRepository(db)
