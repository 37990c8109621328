# bangbuy/services/conversation_service.py
"""
Conversation Service for per-user-pair messaging.

Handles business logic for conversations including:
- Idempotent creation for a pair of users
- Inbox listing with recomputed unread counts and previews
- Monotonic read cursors, broadcast after commit
- Hiding (the only form of archiving; rows are never deleted)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session
import ulid

from ..core.constants import DEFAULT_QUERY_LIMIT, MAX_QUERY_LIMIT, PREVIEW_LENGTH, SOURCE_TYPES
from ..core.exceptions import (
    ForbiddenException,
    NotFoundException,
    RepositoryException,
    ValidationException,
)
from ..models.conversation import Conversation
from ..repositories.conversation_repository import ConversationRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.message_repository import MessageRepository
from .base import BaseService
from .messaging.broadcaster import RealtimeBroadcaster
from .messaging.events import build_read_event

logger = logging.getLogger(__name__)


@dataclass
class MessagePreview:
    id: str
    content: str
    sender_id: str
    created_at: datetime
    is_from_me: bool


@dataclass
class ConversationSummary:
    """Inbox row: a conversation seen from one participant's side."""

    id: str
    other_user_id: str
    unread_count: int
    last_message: Optional[MessagePreview]
    last_message_at: Optional[datetime]
    created_at: datetime
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    source_title: Optional[str] = None


@dataclass
class MarkReadResult:
    moved: bool
    last_read_at: Optional[datetime]
    unread_count: int


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None or limit < 1:
        return DEFAULT_QUERY_LIMIT
    return min(limit, MAX_QUERY_LIMIT)


class ConversationService(BaseService):
    """
    Service for managing two-party conversations and their read state.

    Unread counts are derived from messages on every call and never stored.
    """

    def __init__(
        self,
        db: Session,
        broadcaster: Optional[RealtimeBroadcaster] = None,
        conversation_repository: Optional[ConversationRepository] = None,
        message_repository: Optional[MessageRepository] = None,
    ):
        super().__init__(db)
        self.broadcaster = broadcaster
        self.conversation_repository = (
            conversation_repository or RepositoryFactory.create_conversation_repository(db)
        )
        self.message_repository = message_repository or RepositoryFactory.create_message_repository(
            db
        )

    # Access helpers

    def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        """
        Load a conversation the user participates in.

        Raises:
            NotFoundException: If the conversation does not exist
            ForbiddenException: If the user is not a participant
        """
        conversation = self.conversation_repository.reload(conversation_id)
        if conversation is None:
            raise NotFoundException(
                f"Conversation {conversation_id} not found", code="CONVERSATION_NOT_FOUND"
            )
        if not conversation.is_participant(user_id):
            raise ForbiddenException(
                "You are not a participant in this conversation", code="NOT_A_PARTICIPANT"
            )
        return conversation

    # Operations

    @BaseService.measure_operation("get_or_create_conversation")
    def get_or_create(
        self,
        user_a: str,
        user_b: str,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        source_title: Optional[str] = None,
    ) -> Tuple[Conversation, bool]:
        """
        Get the pair's conversation, creating it on first contact.

        Safe under concurrent callers in either argument order: the insert is
        insert-if-absent on the pair's unique key and losers re-read the row.

        Returns:
            Tuple of (conversation, created) where created is True if new
        """
        user_a = (user_a or "").strip()
        user_b = (user_b or "").strip()
        if not user_a or not user_b:
            raise ValidationException("Both participants are required", code="MISSING_PARTICIPANT")
        if user_a == user_b:
            raise ValidationException(
                "Cannot start a conversation with yourself", code="SELF_CONVERSATION"
            )
        if source_type is not None and source_type not in SOURCE_TYPES:
            raise ValidationException(
                f"Unknown source type '{source_type}'",
                code="INVALID_SOURCE_TYPE",
                details={"allowed": list(SOURCE_TYPES)},
            )

        created = False
        with self.transaction():
            existing = self.conversation_repository.find_by_pair(user_a, user_b)
            if existing is None:
                created = self.conversation_repository.insert_pair(
                    str(ulid.ULID()),
                    user_a,
                    user_b,
                    source_type=source_type,
                    source_id=source_id,
                    source_title=source_title,
                )

        conversation = self.conversation_repository.find_by_pair(user_a, user_b)
        if conversation is None:
            raise RepositoryException(f"Conversation for {user_a}/{user_b} missing after insert")

        if not created and source_type is not None and conversation.source_type is None:
            with self.transaction():
                self.conversation_repository.fill_source_if_unset(
                    conversation.id, source_type, source_id, source_title
                )
            conversation = self.conversation_repository.reload(conversation.id) or conversation

        if created:
            self.log_operation("conversation_created", conversation_id=conversation.id)
        return conversation, created

    @BaseService.measure_operation("list_conversations_for_user")
    def list_for_user(
        self,
        user_id: str,
        limit: Optional[int] = None,
        cursor: Optional[datetime] = None,
        include_hidden: bool = False,
    ) -> List[ConversationSummary]:
        """
        List a user's conversations, most recent activity first.

        Each entry carries the unread count and a preview of the latest message.
        """
        conversations = self.conversation_repository.find_for_user(
            user_id, limit=clamp_limit(limit), cursor=cursor, include_hidden=include_hidden
        )
        ids = [c.id for c in conversations]
        unread = self.conversation_repository.unread_counts_for(user_id, ids)
        latest = self.message_repository.latest_for_conversations(ids)

        summaries: List[ConversationSummary] = []
        for conversation in conversations:
            message = latest.get(conversation.id)
            preview = None
            if message is not None:
                preview = MessagePreview(
                    id=message.id,
                    content=message.content[:PREVIEW_LENGTH],
                    sender_id=message.sender_id,
                    created_at=message.created_at,
                    is_from_me=message.sender_id == user_id,
                )
            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    other_user_id=conversation.get_other_user_id(user_id),
                    unread_count=unread.get(conversation.id, 0),
                    last_message=preview,
                    last_message_at=conversation.last_message_at,
                    created_at=conversation.created_at,
                    source_type=conversation.source_type,
                    source_id=conversation.source_id,
                    source_title=conversation.source_title,
                )
            )
        return summaries

    @BaseService.measure_operation("mark_conversation_read")
    def mark_read(
        self,
        conversation_id: str,
        user_id: str,
        at: Optional[datetime] = None,
    ) -> MarkReadResult:
        """
        Advance the user's read cursor to ``at`` (default now).

        The cursor never moves backwards. The READ event is published after the
        commit and on a best-effort basis: a publish failure leaves the cursor
        moved.
        """
        conversation = self.get_conversation(conversation_id, user_id)
        slot = conversation.slot_for(user_id)
        at = at or datetime.now(timezone.utc)
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)

        with self.transaction():
            moved = self.conversation_repository.advance_read_cursor(conversation_id, slot, at)

        refreshed = self.conversation_repository.reload(conversation_id) or conversation
        last_read_at = refreshed.last_read_at_for(user_id)
        unread = self.conversation_repository.count_unread(conversation_id, user_id)

        if moved and self.broadcaster is not None and last_read_at is not None:
            try:
                self.broadcaster.publish(
                    conversation_id, build_read_event(conversation_id, user_id, last_read_at)
                )
            except Exception as e:
                self.logger.warning(
                    f"[BROADCAST] READ publish failed for {conversation_id}: {e}",
                    extra={"conversation_id": conversation_id, "user_id": user_id},
                )

        return MarkReadResult(moved=moved, last_read_at=last_read_at, unread_count=unread)

    @BaseService.measure_operation("hide_conversation")
    def hide(self, conversation_id: str, user_id: str) -> Conversation:
        """Hide the conversation from the user's inbox until new activity arrives."""
        conversation = self.get_conversation(conversation_id, user_id)
        with self.transaction():
            self.conversation_repository.set_hidden(
                conversation_id, conversation.slot_for(user_id), datetime.now(timezone.utc)
            )
        return self.conversation_repository.reload(conversation_id) or conversation

    @BaseService.measure_operation("unread_count")
    def unread_count(self, conversation_id: str, user_id: str) -> int:
        self.get_conversation(conversation_id, user_id)
        return self.conversation_repository.count_unread(conversation_id, user_id)

    @BaseService.measure_operation("total_unread_count")
    def total_unread_count(self, user_id: str) -> int:
        return self.conversation_repository.count_total_unread(user_id)
