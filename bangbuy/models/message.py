# bangbuy/models/message.py
"""
Message model for the chat system.

Messages are append-only. The only column written after insert is
``email_notified_at``, set once the first-message email is confirmed sent.
"""

from sqlalchemy import Column, ForeignKey, Index, String, text
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .types import UTCDateTime, utcnow

MESSAGE_TYPE_NORMAL = "NORMAL"
MESSAGE_TYPE_FIRST_MESSAGE = "FIRST_MESSAGE"
MESSAGE_TYPES = (MESSAGE_TYPE_NORMAL, MESSAGE_TYPE_FIRST_MESSAGE)


class Message(Base):
    """
    A single chat message inside a conversation.

    At most one FIRST_MESSAGE row exists per conversation, enforced by a
    partial unique index. ``client_id`` is the caller's correlation id and is
    deliberately not unique.
    """

    __tablename__ = "messages"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    conversation_id = Column(
        String(26), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id = Column(String(26), nullable=False)
    content = Column(String(1000), nullable=False)
    message_type = Column(String(20), nullable=False, default=MESSAGE_TYPE_NORMAL)
    client_id = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    email_notified_at = Column(UTCDateTime, nullable=True)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
        Index(
            "uq_messages_first_message_per_conversation",
            "conversation_id",
            unique=True,
            sqlite_where=text("message_type = 'FIRST_MESSAGE'"),
            postgresql_where=text("message_type = 'FIRST_MESSAGE'"),
        ),
        Index(
            "idx_messages_first_message_pending",
            "created_at",
            sqlite_where=text("message_type = 'FIRST_MESSAGE' AND email_notified_at IS NULL"),
            postgresql_where=text("message_type = 'FIRST_MESSAGE' AND email_notified_at IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, conversation={self.conversation_id}, type={self.message_type})>"
