# bangbuy/services/message_email_service.py
"""
Unread-reminder and every-message email batches.

Both batches dispatch through the dedupe gate of DedupedEmailService, so the
dedupe record alone decides whether an email goes out:

- Unread reminder, key ``unread-reminder:{conversation}:{latest_message_id}``.
  A user whose latest unread message in a conversation has waited longer
  than ``notify_msg_unread_hours`` gets one reminder for that message. A
  newer unread message makes a new key, but a conversation is reminded at
  most once per UNREAD_REMINDER_COOLDOWN_HOURS.
- Every message, key ``every-message:{message_id}``. Unread replies from the
  last ``every_message_lookback_hours`` are emailed to recipients who opted in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import DEFAULT_UNREAD_REMINDER_HOURS, UNREAD_REMINDER_COOLDOWN_HOURS
from ..core.exceptions import PreferenceSkip, RepositoryException, ServiceException
from ..models.message import Message
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.conversation_repository import ConversationRepository
from ..repositories.dedupe_record_repository import DedupeRecordRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.message_repository import MessageRepository
from ..repositories.user_repository import UserRepository
from .base import BaseService
from .deduped_email_service import (
    STATUS_FAILED,
    STATUS_SENT,
    STATUS_SKIPPED,
    DedupedEmailService,
)
from .email import EmailService
from .email_templates import EmailTemplateRenderer, RenderedEmail
from .notification_preference_service import (
    CATEGORY_MESSAGE_EVERY,
    CATEGORY_MESSAGE_UNREAD_REMINDER,
)

logger = logging.getLogger(__name__)

LOG_TAG = "[MESSAGE-EMAIL]"

UNREAD_REMINDER_KEY_PREFIX = "unread-reminder:"
EVERY_MESSAGE_KEY_PREFIX = "every-message:"


def unread_reminder_dedupe_key(conversation_id: str, message_id: str) -> str:
    return f"{UNREAD_REMINDER_KEY_PREFIX}{conversation_id}:{message_id}"


def every_message_dedupe_key(message_id: str) -> str:
    return f"{EVERY_MESSAGE_KEY_PREFIX}{message_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PendingMessage:
    """Detached snapshot of a message row, safe to use across commits."""

    message_id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime

    @classmethod
    def from_message(cls, message: Message) -> "PendingMessage":
        return cls(
            message_id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            content=message.content,
            created_at=message.created_at,
        )


@dataclass(frozen=True)
class ReminderRecipient:
    user_id: str
    unread_hours: int


@dataclass
class MessageEmailOutcome:
    message_id: str
    conversation_id: str
    recipient_id: str
    status: str
    reason: Optional[str] = None
    provider_message_id: Optional[str] = None


@dataclass
class MessageEmailBatchSummary:
    candidates: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0
    enabled: bool = True
    details: List[MessageEmailOutcome] = field(default_factory=list)

    def record(self, outcome: MessageEmailOutcome) -> None:
        self.candidates += 1
        self.details.append(outcome)
        if outcome.status == STATUS_SENT:
            self.sent += 1
        elif outcome.status == STATUS_SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1


class MessageEmailService(DedupedEmailService):
    """Scheduled email digests for messages that are still unread."""

    def __init__(
        self,
        db: Session,
        email_service: Optional[EmailService] = None,
        renderer: Optional[EmailTemplateRenderer] = None,
        dedupe_repository: Optional[DedupeRecordRepository] = None,
        user_repository: Optional[UserRepository] = None,
        conversation_repository: Optional[ConversationRepository] = None,
        message_repository: Optional[MessageRepository] = None,
    ):
        super().__init__(
            db,
            email_service=email_service,
            renderer=renderer,
            dedupe_repository=dedupe_repository,
            user_repository=user_repository,
        )
        self.conversation_repository = (
            conversation_repository or RepositoryFactory.create_conversation_repository(db)
        )
        self.message_repository = message_repository or RepositoryFactory.create_message_repository(
            db
        )

    def _disabled(self, summary: MessageEmailBatchSummary) -> bool:
        if settings.enable_message_email_notifications:
            return False
        self.logger.info(f"{LOG_TAG} Disabled by ENABLE_MESSAGE_EMAIL_NOTIFICATIONS")
        summary.enabled = False
        return True

    def _log_summary(self, batch: str, summary: MessageEmailBatchSummary) -> None:
        self.logger.info(
            f"{LOG_TAG} {batch} batch complete",
            extra={
                "candidates": summary.candidates,
                "sent": summary.sent,
                "skipped": summary.skipped,
                "errors": summary.errors,
            },
        )

    # Unread reminders

    @BaseService.measure_operation("run_unread_reminder_batch")
    def run_unread_reminder_batch(
        self, limit: Optional[int] = None, now: Optional[datetime] = None
    ) -> MessageEmailBatchSummary:
        """
        Remind users about messages they left unread past their threshold.

        ``limit`` bounds the number of users examined. A failed scan is
        counted as one error and never raised.
        """
        summary = MessageEmailBatchSummary()
        if self._disabled(summary):
            return summary
        now = now or _utcnow()

        try:
            recipients = [
                ReminderRecipient(
                    user_id=profile.id,
                    unread_hours=profile.notify_msg_unread_hours or DEFAULT_UNREAD_REMINDER_HOURS,
                )
                for profile in self.user_repository.find_reminder_recipients(
                    limit or settings.unread_reminder_batch_limit
                )
            ]
            self.db.rollback()
        except RepositoryException as e:
            self.logger.error(f"{LOG_TAG} Reminder recipient scan failed: {e}")
            self.db.rollback()
            summary.errors += 1
            return summary

        for recipient in recipients:
            threshold = now - timedelta(hours=recipient.unread_hours)
            try:
                stale = [
                    PendingMessage.from_message(m)
                    for m in self.conversation_repository.find_stale_unread(recipient.user_id, threshold)
                ]
                self.db.rollback()
            except RepositoryException as e:
                self.logger.error(f"{LOG_TAG} Unread scan failed for {recipient.user_id}: {e}")
                self.db.rollback()
                summary.errors += 1
                continue
            for message in stale:
                summary.record(self._remind(recipient, message, now))

        self._log_summary("Unread reminder", summary)
        return summary

    def _within_cooldown(self, user_id: str, conversation_id: str, now: datetime) -> bool:
        last = self.dedupe_repository.last_sent_at(
            CATEGORY_MESSAGE_UNREAD_REMINDER,
            user_id,
            f"{UNREAD_REMINDER_KEY_PREFIX}{conversation_id}:",
        )
        return last is not None and now - last < timedelta(hours=UNREAD_REMINDER_COOLDOWN_HOURS)

    def _remind(
        self, recipient: ReminderRecipient, message: PendingMessage, now: datetime
    ) -> MessageEmailOutcome:
        try:
            cooling_down = self._within_cooldown(recipient.user_id, message.conversation_id, now)
        except RepositoryException as e:
            self.db.rollback()
            self.logger.error(f"{LOG_TAG} Cooldown lookup failed for {message.conversation_id}: {e}")
            return MessageEmailOutcome(
                message.message_id, message.conversation_id, recipient.user_id,
                status=STATUS_FAILED, reason="storage_error",
            )
        if cooling_down:
            self.db.rollback()
            prometheus_metrics.record_notification_outcome(CATEGORY_MESSAGE_UNREAD_REMINDER, STATUS_SKIPPED)
            return MessageEmailOutcome(
                message.message_id, message.conversation_id, recipient.user_id,
                status=STATUS_SKIPPED, reason="cooldown",
            )

        waiting_hours = max(1, int((now - message.created_at).total_seconds() // 3600))
        return self._dispatch(
            CATEGORY_MESSAGE_UNREAD_REMINDER,
            unread_reminder_dedupe_key(message.conversation_id, message.message_id),
            recipient.user_id,
            message,
            lambda recipient_name, sender_name: self.renderer.unread_reminder(
                recipient_name=recipient_name,
                sender_name=sender_name,
                content=message.content,
                conversation_id=message.conversation_id,
                waiting_hours=waiting_hours,
            ),
        )

    # Every message

    @BaseService.measure_operation("run_every_message_batch")
    def run_every_message_batch(
        self, limit: Optional[int] = None, now: Optional[datetime] = None
    ) -> MessageEmailBatchSummary:
        """Email each recent unread reply to recipients who asked for every message."""
        summary = MessageEmailBatchSummary()
        if self._disabled(summary):
            return summary
        since = (now or _utcnow()) - timedelta(hours=settings.every_message_lookback_hours)

        try:
            candidates = [
                (PendingMessage.from_message(m), recipient_id)
                for m, recipient_id in self.message_repository.find_every_message_candidates(
                    since,
                    CATEGORY_MESSAGE_EVERY,
                    EVERY_MESSAGE_KEY_PREFIX,
                    limit or settings.every_message_batch_limit,
                )
            ]
            self.db.rollback()
        except RepositoryException as e:
            self.logger.error(f"{LOG_TAG} Every-message scan failed: {e}")
            self.db.rollback()
            summary.errors += 1
            return summary

        for message, recipient_id in candidates:
            summary.record(
                self._dispatch(
                    CATEGORY_MESSAGE_EVERY,
                    every_message_dedupe_key(message.message_id),
                    recipient_id,
                    message,
                    lambda recipient_name, sender_name, message=message: (
                        self.renderer.new_reply(
                            recipient_name=recipient_name,
                            sender_name=sender_name,
                            content=message.content,
                            conversation_id=message.conversation_id,
                        )
                    ),
                )
            )

        self._log_summary("Every-message", summary)
        return summary

    # Shared dispatch

    def _dispatch(
        self,
        category: str,
        dedupe_key: str,
        recipient_id: str,
        message: PendingMessage,
        render: Callable[[str, str], RenderedEmail],
    ) -> MessageEmailOutcome:
        outcome = MessageEmailOutcome(
            message.message_id, message.conversation_id, recipient_id, status=STATUS_FAILED
        )
        try:
            recipient = self.user_repository.get_by_id(recipient_id)
            address = self.preferences.resolve_email_recipient(recipient, category)
            sender = self.user_repository.get_by_id(message.sender_id)
            rendered = render(
                recipient.name_for_email if recipient else "there",
                (sender.display_name if sender else None) or "Someone",
            )
            result = self._send_once(category, dedupe_key, recipient_id, address, rendered)
        except PreferenceSkip as skip:
            self.db.rollback()
            self.logger.info(f"{LOG_TAG} Skipped {dedupe_key}: {skip.reason}")
            prometheus_metrics.record_notification_outcome(category, STATUS_SKIPPED)
            outcome.status, outcome.reason = STATUS_SKIPPED, skip.reason
            return outcome
        except RepositoryException as e:
            self.db.rollback()
            self.logger.error(f"{LOG_TAG} Storage failure for {dedupe_key}: {e}")
            outcome.reason = "storage_error"
            return outcome
        except ServiceException as e:
            self.db.rollback()
            self.logger.error(f"{LOG_TAG} Could not prepare {dedupe_key}: {e.message}")
            prometheus_metrics.record_notification_outcome(category, STATUS_FAILED)
            outcome.reason = "prepare_failed"
            return outcome

        outcome.status, outcome.reason = result.status, result.reason
        outcome.provider_message_id = result.provider_message_id
        return outcome
