# bangbuy/services/deduped_email_service.py
"""
Dedupe-gated email dispatch shared by offer, reminder and every-message emails.

``_send_once`` reserves ``(category, dedupe_key)`` in
notification_dedupe_records, dispatches, and records the outcome:

- reserved -> dispatch -> ``sent``
- transient failure -> ``failed`` (a later trigger may reserve it again)
- permanent failure -> ``rejected`` (terminal, like ``sent``)
- already pending, sent or rejected -> skipped with reason ``duplicate``
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.dedupe_record_repository import DedupeRecordRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.user_repository import UserRepository
from .base import BaseService
from .email import EmailMessage, EmailService
from .email_templates import EmailTemplateRenderer, RenderedEmail
from .notification_preference_service import NotificationPreferenceService

STATUS_SENT = "sent"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


@dataclass
class DedupedEmailResult:
    status: str  # sent | skipped | failed
    reason: Optional[str] = None
    provider_message_id: Optional[str] = None
    dedupe_key: Optional[str] = None


class DedupedEmailService(BaseService):
    """Base for services whose emails are made idempotent by a dedupe record."""

    def __init__(
        self,
        db: Session,
        email_service: Optional[EmailService] = None,
        renderer: Optional[EmailTemplateRenderer] = None,
        dedupe_repository: Optional[DedupeRecordRepository] = None,
        user_repository: Optional[UserRepository] = None,
    ):
        super().__init__(db)
        self.email_service = email_service or EmailService()
        self.renderer = renderer or EmailTemplateRenderer()
        self.dedupe_repository = (
            dedupe_repository or RepositoryFactory.create_dedupe_record_repository(db)
        )
        self.user_repository = user_repository or RepositoryFactory.create_user_repository(db)
        self.preferences = NotificationPreferenceService(db, self.user_repository)

    def _send_once(
        self,
        category: str,
        dedupe_key: str,
        recipient_id: str,
        address: str,
        rendered: RenderedEmail,
    ) -> DedupedEmailResult:
        """
        Reserve, dispatch and record one email.

        Raises:
            RepositoryException: Reservation or outcome could not be stored
        """
        with self.transaction():
            reserved = self.dedupe_repository.try_reserve(category, dedupe_key, user_id=recipient_id)
        if not reserved:
            self.logger.info(f"[EMAIL] Already handled: {dedupe_key}")
            prometheus_metrics.record_notification_outcome(category, STATUS_SKIPPED)
            return DedupedEmailResult(status=STATUS_SKIPPED, reason="duplicate", dedupe_key=dedupe_key)

        self.db.rollback()
        result = self.email_service.send(
            EmailMessage(
                to=address,
                subject=rendered.subject,
                html=rendered.html,
                text=rendered.text,
                category=category,
                dedupe_key=dedupe_key,
                user_id=recipient_id,
            )
        )

        with self.transaction():
            if result.success:
                self.dedupe_repository.mark_sent(category, dedupe_key, result.message_id)
            else:
                self.dedupe_repository.mark_failed(
                    category,
                    dedupe_key,
                    result.error or "unknown error",
                    permanent=not result.retryable,
                )

        if result.success:
            prometheus_metrics.record_notification_outcome(category, STATUS_SENT)
            return DedupedEmailResult(
                status=STATUS_SENT, provider_message_id=result.message_id, dedupe_key=dedupe_key
            )
        prometheus_metrics.record_notification_outcome(category, STATUS_FAILED)
        return DedupedEmailResult(
            status=STATUS_FAILED,
            reason="transient_failure" if result.retryable else "permanent_failure",
            dedupe_key=dedupe_key,
        )
