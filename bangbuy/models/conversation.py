# bangbuy/models/conversation.py
"""
Conversation model for per-user-pair messaging.

Each unordered pair of users has exactly one conversation. The pair is stored
in fixed slots: ``participant_a_id`` always holds the lexicographically smaller
user id, so (A, B) and (B, A) map to the same row and the unique constraint can
catch creation races.

Design decisions:
- Read cursors live on the conversation row, one per slot; unread counts are
  always derived from messages, never stored
- Conversations are never deleted; a participant can only hide one
- ``first_message_notification_sent_at`` is the claim column for the
  first-message email and the only mutual-exclusion point in the core
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import CheckConstraint, Column, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .types import UTCDateTime, utcnow


class Conversation(Base):
    """
    Two-party messaging thread with independent read cursors.

    Attributes:
        id: ULID primary key
        participant_a_id: Slot 1, the smaller user id
        participant_b_id: Slot 2, the larger user id
        participant_a_last_read_at / participant_b_last_read_at: Read high-water marks
        participant_a_hidden_at / participant_b_hidden_at: Per-user archive markers
        source_type / source_id / source_title: What the conversation is about
        last_message_at: When the most recent message was sent
        first_message_notification_sent_at: Claim for the first-message email
        first_message_notification_attempts: Failed dispatch attempts so far
        first_message_notification_failed_at: Set once the email is given up
    """

    __tablename__ = "conversations"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    participant_a_id = Column(String(26), nullable=False)
    participant_b_id = Column(String(26), nullable=False)

    participant_a_last_read_at = Column(UTCDateTime, nullable=True)
    participant_b_last_read_at = Column(UTCDateTime, nullable=True)
    participant_a_hidden_at = Column(UTCDateTime, nullable=True)
    participant_b_hidden_at = Column(UTCDateTime, nullable=True)

    source_type = Column(String(20), nullable=True)
    source_id = Column(String(64), nullable=True)
    source_title = Column(String(200), nullable=True)

    last_message_at = Column(UTCDateTime, nullable=True)

    first_message_notification_sent_at = Column(UTCDateTime, nullable=True)
    first_message_notification_attempts = Column(Integer, nullable=False, default=0)
    first_message_notification_failed_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    messages = relationship(
        "Message",
        back_populates="conversation",
        order_by="Message.created_at",
        lazy="noload",
    )

    __table_args__ = (
        UniqueConstraint("participant_a_id", "participant_b_id", name="uq_conversations_pair"),
        CheckConstraint("participant_a_id < participant_b_id", name="ck_conversations_slot_order"),
        Index("idx_conversations_participant_a", "participant_a_id"),
        Index("idx_conversations_participant_b", "participant_b_id"),
        Index("idx_conversations_last_message", "last_message_at"),
    )

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, a={self.participant_a_id}, b={self.participant_b_id})>"

    @staticmethod
    def ordered_pair(user_a: str, user_b: str) -> Tuple[str, str]:
        """Return the pair in storage slot order (smaller id first)."""
        return (user_a, user_b) if user_a < user_b else (user_b, user_a)

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.participant_a_id, self.participant_b_id)

    def slot_for(self, user_id: str) -> str:
        """
        Get the storage slot ("a" or "b") of a participant.

        Raises:
            ValueError: If the user is not a participant
        """
        if user_id == self.participant_a_id:
            return "a"
        if user_id == self.participant_b_id:
            return "b"
        raise ValueError(f"User {user_id} is not a participant of conversation {self.id}")

    def get_other_user_id(self, current_user_id: str) -> str:
        if current_user_id == self.participant_a_id:
            return str(self.participant_b_id)
        return str(self.participant_a_id)

    def last_read_at_for(self, user_id: str) -> Optional[datetime]:
        return getattr(self, f"participant_{self.slot_for(user_id)}_last_read_at")

    def hidden_at_for(self, user_id: str) -> Optional[datetime]:
        return getattr(self, f"participant_{self.slot_for(user_id)}_hidden_at")
