# bangbuy/services/first_message_notification_service.py
"""
First-message email notifications, sent at most once per conversation.

The message insert and the external email cannot commit atomically, so each
candidate goes through claim -> act -> confirm/rollback:

1. Claim: conditional UPDATE of conversation.first_message_notification_sent_at
   from NULL to now, committed on its own. Zero rows means another worker
   holds the claim and this one skips.
2. Resolve the recipient. No address or notifications off is a terminal
   skip and the claim is kept.
3. Act: dispatch with dedupe key ``first-message:{conversation}:{message}``.
4. Confirm (message.email_notified_at = now) or roll the claim back so a
   later batch retries. Attempts are counted and the conversation is given up
   after ``first_message_max_attempts`` transient failures or one permanent one.

The database's conditional write is the only lock, so any number of batch
workers can run concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import List, Optional

from sqlalchemy.orm import Session
import ulid

from ..core.config import settings
from ..core.exceptions import (
    ConflictException,
    PreferenceSkip,
    RepositoryException,
    ServiceException,
    ValidationException,
)
from ..models.message import Message
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.conversation_repository import ConversationRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.message_repository import MessageRepository
from ..repositories.user_repository import UserRepository
from .base import BaseService
from .email import EmailDispatchResult, EmailMessage, EmailService
from .email_templates import EmailTemplateRenderer
from .notification_preference_service import (
    CATEGORY_MESSAGE_NEW_THREAD,
    NotificationPreferenceService,
)

logger = logging.getLogger(__name__)

LOG_TAG = "[FIRST-MESSAGE-EMAIL]"

STATUS_SENT = "sent"
STATUS_SKIPPED = "skipped"
STATUS_ERROR = "error"


def first_message_dedupe_key(conversation_id: str, message_id: str) -> str:
    return f"first-message:{conversation_id}:{message_id}"


@dataclass(frozen=True)
class FirstMessageCandidate:
    """Detached snapshot of a candidate row, safe to use across commits."""

    message_id: str
    conversation_id: str
    sender_id: str
    content: str

    @classmethod
    def from_message(cls, message: Message) -> "FirstMessageCandidate":
        return cls(
            message_id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            content=message.content,
        )


@dataclass
class CandidateOutcome:
    message_id: str
    conversation_id: str
    status: str
    reason: Optional[str] = None
    provider_message_id: Optional[str] = None


@dataclass
class FirstMessageBatchSummary:
    candidates: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0
    enabled: bool = True
    details: List[CandidateOutcome] = field(default_factory=list)

    def record(self, outcome: CandidateOutcome) -> None:
        self.details.append(outcome)
        if outcome.status == STATUS_SENT:
            self.sent += 1
        elif outcome.status == STATUS_SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FirstMessageNotificationService(BaseService):
    """Drives first-message candidates through the claim/act/confirm protocol."""

    def __init__(
        self,
        db: Session,
        email_service: Optional[EmailService] = None,
        renderer: Optional[EmailTemplateRenderer] = None,
        conversation_repository: Optional[ConversationRepository] = None,
        message_repository: Optional[MessageRepository] = None,
        user_repository: Optional[UserRepository] = None,
        max_attempts: Optional[int] = None,
    ):
        super().__init__(db)
        self.email_service = email_service or EmailService()
        self.renderer = renderer or EmailTemplateRenderer()
        self.conversation_repository = (
            conversation_repository or RepositoryFactory.create_conversation_repository(db)
        )
        self.message_repository = message_repository or RepositoryFactory.create_message_repository(
            db
        )
        self.user_repository = user_repository or RepositoryFactory.create_user_repository(db)
        self.preferences = NotificationPreferenceService(db, self.user_repository)
        self.max_attempts = max_attempts or settings.first_message_max_attempts

    @BaseService.measure_operation("run_first_message_batch")
    def run_first_message_batch(self, limit: Optional[int] = None) -> FirstMessageBatchSummary:
        """
        Scan for unsent first messages and notify their recipients.

        Never raises for a single bad candidate. A failure of the scan itself
        is reported as one error.
        """
        summary = FirstMessageBatchSummary()
        if not settings.enable_message_email_notifications:
            self.logger.info(f"{LOG_TAG} Disabled by ENABLE_MESSAGE_EMAIL_NOTIFICATIONS")
            summary.enabled = False
            return summary

        batch_limit = limit or settings.first_message_batch_limit
        try:
            candidates = [
                FirstMessageCandidate.from_message(m)
                for m in self.message_repository.find_pending_first_messages(batch_limit)
            ]
            self.db.rollback()
        except RepositoryException as e:
            self.logger.error(f"{LOG_TAG} Candidate scan failed: {e}")
            self.db.rollback()
            summary.errors += 1
            return summary

        summary.candidates = len(candidates)
        self.logger.info(f"{LOG_TAG} Found {len(candidates)} candidate(s)")

        for message in candidates:
            outcome = self._process_candidate(message)
            summary.record(outcome)
            prometheus_metrics.record_notification_outcome(CATEGORY_MESSAGE_NEW_THREAD, outcome.status)

        self.logger.info(
            f"{LOG_TAG} Batch complete",
            extra={
                "candidates": summary.candidates,
                "sent": summary.sent,
                "skipped": summary.skipped,
                "errors": summary.errors,
            },
        )
        return summary

    # Protocol steps

    def _claim(self, conversation_id: str, claimed_at: datetime) -> None:
        """
        Raises:
            ConflictException: Another worker already holds or consumed the claim
        """
        with self.transaction():
            won = self.conversation_repository.claim_first_message_notification(
                conversation_id, claimed_at
            )
        if not won:
            raise ConflictException(
                f"First-message notification for {conversation_id} claimed elsewhere",
                code="claimed_elsewhere",
            )

    def _release(self, conversation_id: str, claimed_at: datetime, give_up: bool) -> None:
        try:
            with self.transaction():
                released = self.conversation_repository.release_first_message_claim(
                    conversation_id,
                    claimed_at=claimed_at,
                    failed_at=_utcnow(),
                    max_attempts=self.max_attempts,
                    give_up=give_up,
                )
        except RepositoryException as e:
            self.logger.error(
                f"{LOG_TAG} Could not release claim; conversation stays claimed: {e}",
                extra={"conversation_id": conversation_id},
            )
            return
        if not released:
            self.logger.warning(
                f"{LOG_TAG} Claim was no longer ours at release",
                extra={"conversation_id": conversation_id},
            )

    def _build_email(self, message: FirstMessageCandidate) -> EmailMessage:
        """
        Raises:
            ValidationException: Conversation, sender or recipient missing
            PreferenceSkip: Recipient cannot or should not be emailed
        """
        conversation = self.conversation_repository.reload(message.conversation_id)
        if conversation is None or not conversation.is_participant(message.sender_id):
            raise ValidationException(
                f"Conversation {message.conversation_id} is missing or does not include the sender"
            )
        recipient_id = conversation.get_other_user_id(message.sender_id)
        recipient = self.user_repository.get_by_id(recipient_id)
        if recipient is None:
            raise ValidationException(f"Recipient {recipient_id} not found", code="RECIPIENT_NOT_FOUND")
        address = self.preferences.resolve_email_recipient(recipient, CATEGORY_MESSAGE_NEW_THREAD)

        sender = self.user_repository.get_by_id(message.sender_id)
        sender_name = (sender.display_name if sender else None) or "Someone"
        rendered = self.renderer.new_message(
            recipient_name=recipient.name_for_email,
            sender_name=sender_name,
            content=message.content,
            conversation_id=conversation.id,
        )
        return EmailMessage(
            to=address,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            category=CATEGORY_MESSAGE_NEW_THREAD,
            dedupe_key=first_message_dedupe_key(conversation.id, message.message_id),
            user_id=recipient_id,
        )

    def _process_candidate(self, message: FirstMessageCandidate) -> CandidateOutcome:
        conversation_id = message.conversation_id
        outcome = CandidateOutcome(
            message_id=message.message_id, conversation_id=conversation_id, status=STATUS_ERROR
        )
        claimed_at = _utcnow()

        try:
            self._claim(conversation_id, claimed_at)
        except ConflictException as e:
            self.logger.debug(f"{LOG_TAG} {e.message}")
            outcome.status, outcome.reason = STATUS_SKIPPED, e.code
            return outcome
        except RepositoryException as e:
            self.logger.error(f"{LOG_TAG} Claim failed for {conversation_id}: {e}")
            outcome.reason = "claim_failed"
            return outcome

        try:
            email = self._build_email(message)
        except PreferenceSkip as skip:
            self.db.rollback()
            self.logger.info(
                f"{LOG_TAG} Skipped: {skip.reason}",
                extra={"conversation_id": conversation_id, "message_id": message.message_id},
            )
            outcome.status, outcome.reason = STATUS_SKIPPED, skip.reason
            return outcome
        except ValidationException as e:
            self.db.rollback()
            self.logger.error(f"{LOG_TAG} Invalid candidate {message.message_id}: {e.message}")
            self._release(conversation_id, claimed_at, give_up=True)
            outcome.reason = "validation_error"
            return outcome
        except Exception as e:
            self.db.rollback()
            self.logger.exception(f"{LOG_TAG} Could not prepare email for {message.message_id}: {e}")
            self._release(conversation_id, claimed_at, give_up=False)
            outcome.reason = "prepare_failed"
            return outcome

        self.db.rollback()
        result: EmailDispatchResult = self.email_service.send(email)

        if result.success:
            try:
                with self.transaction():
                    self.message_repository.mark_email_notified(message.message_id, _utcnow())
            except RepositoryException as e:
                # Email already went out; keeping the claim prevents a second send.
                self.logger.error(f"{LOG_TAG} Sent but confirmation failed for {message.message_id}: {e}")
            outcome.status = STATUS_SENT
            outcome.provider_message_id = result.message_id
            return outcome

        give_up = not result.retryable
        self._release(conversation_id, claimed_at, give_up=give_up)
        outcome.reason = "permanent_failure" if give_up else "transient_failure"
        self.logger.warning(
            f"{LOG_TAG} Dispatch failed ({outcome.reason}) for {message.message_id}: {result.error}",
            extra={"conversation_id": conversation_id, "provider_code": result.provider_code},
        )
        return outcome

    @BaseService.measure_operation("send_test_notification")
    def send_test_notification(self, to_email: Optional[str] = None) -> EmailDispatchResult:
        """Send one synthetic notification for operational smoke-testing."""
        to_address = to_email or settings.test_email
        try:
            rendered = self.renderer.test_notification()
        except ServiceException as e:
            self.logger.error(f"{LOG_TAG} Test notification to {to_address} not sent: {e.message}")
            return EmailDispatchResult(success=False, error=e.message, provider_code=e.code)
        message = EmailMessage(
            to=to_address,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            category="test",
            dedupe_key=f"test:{ulid.ULID()}",
        )
        self.logger.info(f"{LOG_TAG} Sending test notification to {message.to}")
        return self.email_service.send(message)
