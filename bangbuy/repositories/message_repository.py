# bangbuy/repositories/message_repository.py
"""
Message Repository for the chat system.

Messages are append-only. The single post-insert write is the
``email_notified_at`` confirmation for FIRST_MESSAGE rows.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, cast

from sqlalchemy import String, and_, case, func, literal, or_, select, update
from sqlalchemy.orm import Session, aliased

from ..models.conversation import Conversation
from ..models.message import MESSAGE_TYPE_FIRST_MESSAGE, MESSAGE_TYPE_NORMAL, Message
from ..models.notification import DEDUPE_STATUS_FAILED, DedupeRecord
from ..models.types import UTCDateTime
from ..models.user import UserProfile
from .base_repository import BaseRepository


class MessageRepository(BaseRepository[Message]):
    """
    Repository for Message data access.

    Implements:
    - First-message detection and race-safe insert
    - History paging for re-fetch on reconnect
    - Latest-message previews for the inbox
    - Candidate scans for the first-message and every-message email batches
    """

    def __init__(self, db: Session):
        super().__init__(db, Message)

    def has_messages(self, conversation_id: str) -> bool:
        query = self.db.query(Message.id).filter(Message.conversation_id == conversation_id).limit(1)
        return self._execute_scalar(query) is not None

    def insert_message(self, values: Dict[str, Any]) -> bool:
        """
        Insert a message row.

        For FIRST_MESSAGE rows this returns False when another sender already
        holds the conversation's first message (partial unique index).
        """
        return self._insert_if_absent(values)

    def get_fresh(self, message_id: str) -> Optional[Message]:
        result = self.db.query(Message).filter(Message.id == message_id).populate_existing().first()
        return cast(Optional[Message], result)

    def list_for_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        before: Optional[datetime] = None,
    ) -> List[Message]:
        """
        Page through a conversation's history.

        Returns up to ``limit`` messages older than ``before`` (newest page when
        omitted), ordered oldest first for display.
        """
        query = self.db.query(Message).filter(Message.conversation_id == conversation_id)
        if before is not None:
            query = query.filter(Message.created_at < literal(before, UTCDateTime))
        query = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)
        rows = cast(List[Message], self._execute_query(query))
        rows.reverse()
        return rows

    def latest_for_conversations(self, conversation_ids: Sequence[str]) -> Dict[str, Message]:
        """Most recent message per conversation, for inbox previews."""
        if not conversation_ids:
            return {}
        latest = (
            self.db.query(
                Message.conversation_id.label("conversation_id"),
                func.max(Message.created_at).label("latest_at"),
            )
            .filter(Message.conversation_id.in_(list(conversation_ids)))
            .group_by(Message.conversation_id)
            .subquery()
        )
        query = (
            self.db.query(Message)
            .join(
                latest,
                and_(
                    Message.conversation_id == latest.c.conversation_id,
                    Message.created_at == latest.c.latest_at,
                ),
            )
            .order_by(Message.id.asc())
        )
        result: Dict[str, Message] = {}
        for message in self._execute_query(query):
            result[message.conversation_id] = message
        return result

    def find_pending_first_messages(self, limit: int) -> List[Message]:
        """
        Scan for first messages that still need their notification email.

        Skips conversations that are currently claimed or were given up.
        Oldest first so a backlog drains in arrival order.
        """
        conversation = aliased(Conversation)
        query = (
            self.db.query(Message)
            .join(conversation, conversation.id == Message.conversation_id)
            .filter(
                Message.message_type == MESSAGE_TYPE_FIRST_MESSAGE,
                Message.email_notified_at.is_(None),
                conversation.first_message_notification_sent_at.is_(None),
                conversation.first_message_notification_failed_at.is_(None),
            )
            .order_by(Message.created_at.asc(), Message.id.asc())
            .limit(limit)
        )
        return cast(List[Message], self._execute_query(query))

    def mark_email_notified(self, message_id: str, at: datetime) -> bool:
        """Set email_notified_at once; a second confirmation is a no-op."""
        stmt = (
            update(Message)
            .where(Message.id == message_id, Message.email_notified_at.is_(None))
            .values(email_notified_at=at)
            .execution_options(synchronize_session=False)
        )
        return self._execute_rowcount(stmt) == 1

    def find_every_message_candidates(
        self, since: datetime, category: str, key_prefix: str, limit: int
    ) -> List[Tuple[Message, str]]:
        """
        Replies whose recipient opted in to an email for every message.

        Returns ``(message, recipient_id)`` pairs for NORMAL messages created
        at or after ``since`` that the recipient has not read yet and that
        have no decided dedupe record ``{key_prefix}{message_id}`` in
        ``category``. A ``failed`` record does not hide the message.
        """
        sender_is_a = Conversation.participant_a_id == Message.sender_id
        recipient_id = case(
            (sender_is_a, Conversation.participant_b_id), else_=Conversation.participant_a_id
        )
        recipient_cursor = case(
            (sender_is_a, Conversation.participant_b_last_read_at),
            else_=Conversation.participant_a_last_read_at,
        )
        handled = (
            select(DedupeRecord.id)
            .where(
                DedupeRecord.category == category,
                DedupeRecord.dedupe_key == literal(key_prefix, String) + Message.id,
                DedupeRecord.status != DEDUPE_STATUS_FAILED,
            )
            .exists()
        )
        query = (
            self.db.query(Message, recipient_id.label("recipient_id"))
            .join(Conversation, Conversation.id == Message.conversation_id)
            .join(UserProfile, UserProfile.id == recipient_id)
            .filter(
                Message.message_type == MESSAGE_TYPE_NORMAL,
                Message.created_at >= literal(since, UTCDateTime),
                or_(recipient_cursor.is_(None), Message.created_at > recipient_cursor),
                UserProfile.notify_msg_every_message_email.is_(True),
                UserProfile.email.isnot(None),
                func.trim(UserProfile.email) != "",
                ~handled,
            )
            .order_by(Message.created_at.asc(), Message.id.asc())
            .limit(limit)
        )
        return [(message, str(recipient)) for message, recipient in self._execute_query(query)]
