# bangbuy/repositories/conversation_repository.py
"""
Conversation Repository for per-user-pair messaging.

Provides data access for conversations, their read cursors, and the
first-message notification claim. Every write that has to stay correct under
concurrent writers is a single conditional UPDATE; callers read the affected
row count to learn whether they won.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence, cast

from sqlalchemy import and_, case, func, literal, or_, update
from sqlalchemy.orm import Query, Session

from ..models.conversation import Conversation
from ..models.message import Message
from ..models.types import UTCDateTime
from .base_repository import BaseRepository


def _slot_column(slot: str, suffix: str):  # type: ignore[no-untyped-def]
    return getattr(Conversation, f"participant_{slot}_{suffix}")


class ConversationRepository(BaseRepository[Conversation]):
    """
    Repository for Conversation entity operations.

    Handles:
    - Idempotent creation for a user pair
    - Inbox listing and unread counts (always recomputed)
    - Monotonic read cursor moves
    - The claim/release protocol for the first-message email
    """

    def __init__(self, db: Session):
        super().__init__(db, Conversation)

    # Pair lookup and creation

    def find_by_pair(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """Find the conversation for an unordered pair of users."""
        slot_a, slot_b = Conversation.ordered_pair(user_a, user_b)
        result = (
            self.db.query(Conversation)
            .filter(
                Conversation.participant_a_id == slot_a,
                Conversation.participant_b_id == slot_b,
            )
            .populate_existing()
            .first()
        )
        return cast(Optional[Conversation], result)

    def insert_pair(
        self,
        conversation_id: str,
        user_a: str,
        user_b: str,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        source_title: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Insert the conversation row unless the pair already exists.

        Returns:
            True if this call created the row
        """
        slot_a, slot_b = Conversation.ordered_pair(user_a, user_b)
        values = {
            "id": conversation_id,
            "participant_a_id": slot_a,
            "participant_b_id": slot_b,
            "source_type": source_type,
            "source_id": source_id,
            "source_title": source_title,
            "first_message_notification_attempts": 0,
        }
        if now is not None:
            values["created_at"] = now
            values["updated_at"] = now
        return self._insert_if_absent(values)

    def fill_source_if_unset(
        self,
        conversation_id: str,
        source_type: str,
        source_id: Optional[str],
        source_title: Optional[str],
    ) -> bool:
        """Attach what the conversation is about; never overwrites an existing source."""
        stmt = (
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.source_type.is_(None))
            .values(source_type=source_type, source_id=source_id, source_title=source_title)
        )
        return self._execute_rowcount(stmt) == 1

    def reload(self, conversation_id: str) -> Optional[Conversation]:
        """Fetch the row again, discarding any stale identity-map state."""
        result = (
            self.db.query(Conversation)
            .filter(Conversation.id == conversation_id)
            .populate_existing()
            .first()
        )
        return cast(Optional[Conversation], result)

    # Inbox

    def find_for_user(
        self,
        user_id: str,
        limit: int = 50,
        cursor: Optional[datetime] = None,
        include_hidden: bool = False,
    ) -> Sequence[Conversation]:
        """
        Find conversations where a user is a participant, most recent activity first.

        Hidden conversations are left out unless a message arrived after the hide.

        Args:
            user_id: The user ID to find conversations for
            limit: Maximum number of conversations to return
            cursor: Only return conversations whose activity is older than this
            include_hidden: Return hidden conversations as well
        """
        activity = func.coalesce(Conversation.last_message_at, Conversation.created_at)
        query: Query = self.db.query(Conversation).filter(
            or_(
                Conversation.participant_a_id == user_id,
                Conversation.participant_b_id == user_id,
            )
        )

        if not include_hidden:
            query = query.filter(
                or_(
                    and_(
                        Conversation.participant_a_id == user_id,
                        or_(
                            Conversation.participant_a_hidden_at.is_(None),
                            Conversation.last_message_at > Conversation.participant_a_hidden_at,
                        ),
                    ),
                    and_(
                        Conversation.participant_b_id == user_id,
                        or_(
                            Conversation.participant_b_hidden_at.is_(None),
                            Conversation.last_message_at > Conversation.participant_b_hidden_at,
                        ),
                    ),
                )
            )

        if cursor is not None:
            query = query.filter(activity < literal(cursor, UTCDateTime))

        query = query.order_by(activity.desc(), Conversation.id.desc())
        return cast(Sequence[Conversation], self._execute_query(query.limit(limit)))

    def _cursor_for_user(self, user_id: str):  # type: ignore[no-untyped-def]
        return case(
            (Conversation.participant_a_id == user_id, Conversation.participant_a_last_read_at),
            else_=Conversation.participant_b_last_read_at,
        )

    def _unread_query(self, user_id: str) -> Query:
        read_cursor = self._cursor_for_user(user_id)
        return (
            self.db.query(func.count(Message.id))
            .join(Conversation, Conversation.id == Message.conversation_id)
            .filter(
                or_(
                    Conversation.participant_a_id == user_id,
                    Conversation.participant_b_id == user_id,
                ),
                Message.sender_id != user_id,
                or_(read_cursor.is_(None), Message.created_at > read_cursor),
            )
        )

    def count_unread(self, conversation_id: str, user_id: str) -> int:
        """
        Count messages from the other participant newer than the user's read cursor.

        Computed from the committed rows on every call.
        """
        query = self._unread_query(user_id).filter(Message.conversation_id == conversation_id)
        return int(self._execute_scalar(query) or 0)

    def count_total_unread(self, user_id: str) -> int:
        return int(self._execute_scalar(self._unread_query(user_id)) or 0)

    def unread_counts_for(self, user_id: str, conversation_ids: List[str]) -> Dict[str, int]:
        """Unread counts for several conversations in one grouped query."""
        if not conversation_ids:
            return {}
        read_cursor = self._cursor_for_user(user_id)
        query = (
            self.db.query(Message.conversation_id, func.count(Message.id))
            .join(Conversation, Conversation.id == Message.conversation_id)
            .filter(
                Message.conversation_id.in_(conversation_ids),
                Message.sender_id != user_id,
                or_(read_cursor.is_(None), Message.created_at > read_cursor),
            )
            .group_by(Message.conversation_id)
        )
        counts = {cid: 0 for cid in conversation_ids}
        for conversation_id, count in self._execute_query(query):
            counts[conversation_id] = int(count)
        return counts

    def find_stale_unread(self, user_id: str, older_than: datetime) -> List[Message]:
        """
        Latest unread message per conversation that has waited since before ``older_than``.

        Only messages from the other participant newer than the user's read
        cursor count. Oldest conversation first.
        """
        read_cursor = self._cursor_for_user(user_id)
        latest = (
            self.db.query(
                Message.conversation_id.label("conversation_id"),
                func.max(Message.created_at).label("latest_at"),
            )
            .join(Conversation, Conversation.id == Message.conversation_id)
            .filter(
                or_(
                    Conversation.participant_a_id == user_id,
                    Conversation.participant_b_id == user_id,
                ),
                Message.sender_id != user_id,
                or_(read_cursor.is_(None), Message.created_at > read_cursor),
                Message.created_at < literal(older_than, UTCDateTime),
            )
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
            .filter(Message.sender_id != user_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        result: Dict[str, Message] = {}
        for message in self._execute_query(query):
            result[message.conversation_id] = message
        return list(result.values())

    # Per-participant state

    def advance_read_cursor(self, conversation_id: str, slot: str, at: datetime) -> bool:
        """
        Move a read cursor forward to ``at``.

        The WHERE clause refuses backward moves, so concurrent calls converge on
        the latest timestamp.

        Returns:
            True if the cursor moved
        """
        column = _slot_column(slot, "last_read_at")
        stmt = (
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                or_(column.is_(None), column < literal(at, UTCDateTime)),
            )
            .values({column: at})
            .execution_options(synchronize_session=False)
        )
        return self._execute_rowcount(stmt) == 1

    def set_hidden(self, conversation_id: str, slot: str, at: datetime) -> bool:
        column = _slot_column(slot, "hidden_at")
        stmt = (
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values({column: at})
            .execution_options(synchronize_session=False)
        )
        return self._execute_rowcount(stmt) == 1

    def touch_last_message_at(self, conversation_id: str, at: datetime) -> bool:
        """Advance last_message_at for inbox ordering (never backwards)."""
        stmt = (
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                or_(
                    Conversation.last_message_at.is_(None),
                    Conversation.last_message_at < literal(at, UTCDateTime),
                ),
            )
            .values(last_message_at=at, updated_at=at)
            .execution_options(synchronize_session=False)
        )
        return self._execute_rowcount(stmt) == 1

    # First-message notification claim

    def claim_first_message_notification(self, conversation_id: str, claimed_at: datetime) -> bool:
        """
        Claim the right to send the first-message email.

        Conditional on the claim column still being NULL and the conversation
        not having been given up. Zero affected rows means another worker holds
        (or already consumed) the claim.
        """
        stmt = (
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.first_message_notification_sent_at.is_(None),
                Conversation.first_message_notification_failed_at.is_(None),
            )
            .values(first_message_notification_sent_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        return self._execute_rowcount(stmt) == 1

    def release_first_message_claim(
        self,
        conversation_id: str,
        claimed_at: datetime,
        failed_at: datetime,
        max_attempts: int,
        give_up: bool = False,
    ) -> bool:
        """
        Undo our own claim after a failed dispatch and count the attempt.

        Only the holder of ``claimed_at`` can release. ``failed_at`` is written
        when ``give_up`` is set or the attempt count reaches ``max_attempts``;
        a conversation with ``failed_at`` set is never scanned again.
        """
        attempts = Conversation.first_message_notification_attempts
        if give_up:
            failed_value = literal(failed_at, UTCDateTime)
        else:
            failed_value = case(
                (attempts + 1 >= max_attempts, literal(failed_at, UTCDateTime)),
                else_=Conversation.first_message_notification_failed_at,
            )
        stmt = (
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.first_message_notification_sent_at == literal(claimed_at, UTCDateTime),
            )
            .values(
                first_message_notification_sent_at=None,
                first_message_notification_attempts=attempts + 1,
                first_message_notification_failed_at=failed_value,
            )
            .execution_options(synchronize_session=False)
        )
        return self._execute_rowcount(stmt) == 1
