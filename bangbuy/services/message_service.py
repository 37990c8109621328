# bangbuy/services/message_service.py
"""
Message Service: validate, persist and fan out chat messages.

Send pipeline:
1. Reject empty or over-length content
2. Decide whether this is the conversation's first message
3. Persist with the matching message_type
4. Publish an INSERT event on the conversation topic
5. Return the persisted message

Step 2 is a query-then-insert; the partial unique index on FIRST_MESSAGE
rows turns a lost race into a NORMAL insert instead of an error.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import List, Optional

from sqlalchemy.orm import Session
import ulid

from ..core.config import settings
from ..core.exceptions import RepositoryException, ValidationException
from ..models.message import MESSAGE_TYPE_FIRST_MESSAGE, MESSAGE_TYPE_NORMAL, Message
from ..repositories.conversation_repository import ConversationRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.message_repository import MessageRepository
from .base import BaseService
from .conversation_service import ConversationService, clamp_limit
from .messaging.broadcaster import RealtimeBroadcaster
from .messaging.events import build_insert_event

logger = logging.getLogger(__name__)

MAX_CLIENT_ID_LENGTH = 64


class MessageService(BaseService):
    """Service for sending and reading messages."""

    def __init__(
        self,
        db: Session,
        broadcaster: Optional[RealtimeBroadcaster] = None,
        conversation_repository: Optional[ConversationRepository] = None,
        message_repository: Optional[MessageRepository] = None,
        max_length: Optional[int] = None,
    ):
        super().__init__(db)
        self.broadcaster = broadcaster
        self.conversation_repository = (
            conversation_repository or RepositoryFactory.create_conversation_repository(db)
        )
        self.message_repository = message_repository or RepositoryFactory.create_message_repository(
            db
        )
        self.max_length = max_length or settings.message_max_length
        self.conversations = ConversationService(
            db,
            broadcaster=broadcaster,
            conversation_repository=self.conversation_repository,
            message_repository=self.message_repository,
        )

    def validate_content(self, content: Optional[str]) -> str:
        """Trim and bound message content."""
        text = (content or "").strip()
        if not text:
            raise ValidationException("Message content cannot be empty", code="EMPTY_MESSAGE")
        if len(text) > self.max_length:
            raise ValidationException(
                f"Message content exceeds {self.max_length} characters",
                code="MESSAGE_TOO_LONG",
                details={"max_length": self.max_length, "length": len(text)},
            )
        return text

    @BaseService.measure_operation("send_message")
    def send(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        client_id: Optional[str] = None,
    ) -> Message:
        """
        Persist a message and publish it to the conversation's live viewers.

        Raises:
            ValidationException: Empty or over-length content
            NotFoundException: Unknown conversation
            ForbiddenException: Sender is not a participant
            RepositoryException: Storage failure (retryable)
        """
        text = self.validate_content(content)
        if client_id is not None and len(client_id) > MAX_CLIENT_ID_LENGTH:
            raise ValidationException("client_id is too long", code="INVALID_CLIENT_ID")
        self.conversations.get_conversation(conversation_id, sender_id)

        is_first = not self.message_repository.has_messages(conversation_id)
        now = datetime.now(timezone.utc)
        message_id = str(ulid.ULID())
        values = {
            "id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": text,
            "message_type": MESSAGE_TYPE_FIRST_MESSAGE if is_first else MESSAGE_TYPE_NORMAL,
            "client_id": client_id,
            "created_at": now,
        }

        with self.transaction():
            inserted = self.message_repository.insert_message(values)
            if not inserted and is_first:
                self.logger.debug(
                    "Lost first-message race; storing as NORMAL",
                    extra={"conversation_id": conversation_id},
                )
                values["message_type"] = MESSAGE_TYPE_NORMAL
                inserted = self.message_repository.insert_message(values)
            if not inserted:
                raise RepositoryException(f"Failed to insert message {message_id}")
            self.conversation_repository.touch_last_message_at(conversation_id, now)

        message = self.message_repository.get_fresh(message_id)
        if message is None:
            raise RepositoryException(f"Message {message_id} missing after insert")

        if self.broadcaster is not None:
            try:
                self.broadcaster.publish(
                    conversation_id,
                    build_insert_event(
                        conversation_id=conversation_id,
                        message_id=message.id,
                        sender_id=message.sender_id,
                        content=message.content,
                        message_type=message.message_type,
                        created_at=message.created_at,
                        client_id=message.client_id,
                    ),
                )
            except Exception as e:
                self.logger.warning(f"[BROADCAST] INSERT publish failed for {conversation_id}: {e}")

        return message

    @BaseService.measure_operation("list_messages")
    def list_messages(
        self,
        conversation_id: str,
        user_id: str,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> List[Message]:
        """History page (oldest first) for display or re-fetch after reconnect."""
        self.conversations.get_conversation(conversation_id, user_id)
        return self.message_repository.list_for_conversation(
            conversation_id, limit=clamp_limit(limit), before=before
        )
