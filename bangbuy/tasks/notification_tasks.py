# bangbuy/tasks/notification_tasks.py
"""
Celery tasks for notification emails.

- ``notifications.first_message_batch`` runs the first-message scan on the
  beat schedule (or on demand from the cron endpoint).
- ``notifications.unread_reminder_batch`` and ``notifications.every_message_batch``
  email users about messages they have not read.
- ``notifications.send_offer_email`` sends one offer lifecycle email.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from celery.utils.log import get_task_logger
from sqlalchemy.orm import Session

from ..database import SessionLocal
from ..services.action_email_service import ActionEmailService, OfferNotification
from ..services.first_message_notification_service import FirstMessageNotificationService
from ..services.message_email_service import MessageEmailBatchSummary, MessageEmailService
from .celery_app import celery_app

logger = get_task_logger(__name__)


@contextmanager
def _session_scope() -> Iterator[Session]:
    """Provide transactional scope for use in tasks."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="notifications.first_message_batch", max_retries=0, queue="notifications")
def run_first_message_batch(limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Scan for unsent first messages and email their recipients.

    Returns the batch summary without per-candidate details.
    """
    with _session_scope() as session:
        summary = FirstMessageNotificationService(session).run_first_message_batch(limit=limit)
    result = {
        "enabled": summary.enabled,
        "candidates": summary.candidates,
        "sent": summary.sent,
        "skipped": summary.skipped,
        "errors": summary.errors,
    }
    if summary.candidates or summary.errors:
        logger.info("First-message batch: %s", result)
    return result


def _summary_dict(summary: MessageEmailBatchSummary) -> Dict[str, Any]:
    return {
        "enabled": summary.enabled,
        "candidates": summary.candidates,
        "sent": summary.sent,
        "skipped": summary.skipped,
        "errors": summary.errors,
    }


@celery_app.task(name="notifications.unread_reminder_batch", max_retries=0, queue="notifications")
def run_unread_reminder_batch(limit: Optional[int] = None) -> Dict[str, Any]:
    with _session_scope() as session:
        summary = MessageEmailService(session).run_unread_reminder_batch(limit=limit)
    result = _summary_dict(summary)
    if summary.candidates or summary.errors:
        logger.info("Unread reminder batch: %s", result)
    return result


@celery_app.task(name="notifications.every_message_batch", max_retries=0, queue="notifications")
def run_every_message_batch(limit: Optional[int] = None) -> Dict[str, Any]:
    with _session_scope() as session:
        summary = MessageEmailService(session).run_every_message_batch(limit=limit)
    result = _summary_dict(summary)
    if summary.candidates or summary.errors:
        logger.info("Every-message batch: %s", result)
    return result


@celery_app.task(name="notifications.send_offer_email", max_retries=0, queue="notifications")
def send_offer_email(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Send an offer lifecycle email; duplicate events are skipped by dedupe key."""
    event = OfferNotification(**payload)
    with _session_scope() as session:
        result = ActionEmailService(session).send_offer_notification(event)
    logger.info("Offer email %s: %s (%s)", result.dedupe_key, result.status, result.reason)
    return {"status": result.status, "reason": result.reason, "dedupe_key": result.dedupe_key}
