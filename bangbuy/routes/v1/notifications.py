# bangbuy/routes/v1/notifications.py
"""
Notification routes - API v1

Endpoints:
    GET /settings                -> Caller's email notification settings
    PATCH /settings              -> Partial update of the caller's settings
    POST /offers                 -> Offer lifecycle email (deduplicated per action and offer)
    GET|POST /first-message-batch -> Cron trigger for first-message emails
    GET|POST /unread-reminder-batch -> Cron trigger for unread reminders
    GET|POST /every-message-batch -> Cron trigger for every-message emails

The cron triggers require ``Authorization: Bearer <CRON_SECRET>``. With
``?force_test=1`` the first-message trigger skips candidate scanning and
sends one synthetic email to ``TEST_EMAIL`` (or ``?to=``) for operational
smoke-testing.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...api.dependencies.auth import get_current_user_id, verify_cron_secret
from ...api.dependencies.services import (
    get_action_email_service,
    get_first_message_notification_service,
    get_message_email_service,
    get_notification_preference_service,
)
from ...core.config import settings
from ...core.exceptions import DomainException, ForbiddenException
from ...schemas.notifications import (
    ActionEmailResponse,
    CandidateOutcomeResponse,
    FirstMessageBatchResponse,
    ForceTestResult,
    MessageEmailBatchResponse,
    MessageEmailOutcomeResponse,
    NotificationSettingsResponse,
    NotificationSettingsUpdate,
    OfferNotificationRequest,
)
from ...services.action_email_service import ActionEmailService, OfferNotification
from ...services.first_message_notification_service import FirstMessageNotificationService
from ...services.message_email_service import MessageEmailBatchSummary, MessageEmailService
from ...services.notification_preference_service import (
    CATEGORY_OFFER_CREATED,
    NotificationPreferenceService,
)
from .errors import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notifications-v1"])


@router.get("/settings", response_model=NotificationSettingsResponse)
def get_notification_settings(
    user_id: str = Depends(get_current_user_id),
    service: NotificationPreferenceService = Depends(get_notification_preference_service),
) -> NotificationSettingsResponse:
    try:
        return NotificationSettingsResponse(**service.get_settings(user_id))
    except DomainException as e:
        handle_domain_exception(e)


@router.patch("/settings", response_model=NotificationSettingsResponse)
def update_notification_settings(
    request: NotificationSettingsUpdate,
    user_id: str = Depends(get_current_user_id),
    service: NotificationPreferenceService = Depends(get_notification_preference_service),
) -> NotificationSettingsResponse:
    try:
        updated = service.update_settings(user_id, request.model_dump(exclude_none=True))
    except DomainException as e:
        handle_domain_exception(e)
    return NotificationSettingsResponse(**updated)


@router.post("/offers", response_model=ActionEmailResponse)
def notify_offer_event(
    request: OfferNotificationRequest,
    user_id: str = Depends(get_current_user_id),
    service: ActionEmailService = Depends(get_action_email_service),
) -> ActionEmailResponse:
    """
    Email the other party about an offer event.

    Only the party who performed the action may report it: the shopper for
    offer_created, the buyer for offer_accepted and offer_rejected.
    """
    actor_id = request.shopper_id if request.action == CATEGORY_OFFER_CREATED else request.buyer_id
    try:
        if actor_id != user_id:
            raise ForbiddenException(
                "Only the acting party can report this offer event", code="NOT_OFFER_ACTOR"
            )
        result = service.send_offer_notification(OfferNotification(**request.model_dump()))
    except DomainException as e:
        handle_domain_exception(e)
    return ActionEmailResponse(
        status=result.status,
        reason=result.reason,
        provider_message_id=result.provider_message_id,
        dedupe_key=result.dedupe_key,
    )


@router.api_route(
    "/first-message-batch",
    methods=["GET", "POST"],
    response_model=FirstMessageBatchResponse,
    dependencies=[Depends(verify_cron_secret)],
)
def run_first_message_batch(
    force_test: bool = Query(False, description="Send one synthetic email instead of scanning"),
    to: Optional[str] = Query(None, description="Recipient for force_test (defaults to TEST_EMAIL)"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    service: FirstMessageNotificationService = Depends(get_first_message_notification_service),
) -> FirstMessageBatchResponse:
    """Run one first-message batch. Safe to call concurrently and repeatedly."""
    if force_test:
        recipient = to or settings.test_email
        result = service.send_test_notification(recipient)
        sent = 1 if result.success else 0
        return FirstMessageBatchResponse(
            mode="test",
            enabled=settings.enable_message_email_notifications,
            candidates=1,
            sent=sent,
            errors=1 - sent,
            test_result=ForceTestResult(
                success=result.success,
                to=recipient,
                message_id=result.message_id,
                error=result.error,
            ),
        )

    summary = service.run_first_message_batch(limit=limit)
    return FirstMessageBatchResponse(
        mode="batch",
        enabled=summary.enabled,
        candidates=summary.candidates,
        sent=summary.sent,
        skipped=summary.skipped,
        errors=summary.errors,
        details=[CandidateOutcomeResponse.model_validate(d) for d in summary.details],
    )


def _message_email_response(summary: MessageEmailBatchSummary) -> MessageEmailBatchResponse:
    return MessageEmailBatchResponse(
        enabled=summary.enabled,
        candidates=summary.candidates,
        sent=summary.sent,
        skipped=summary.skipped,
        errors=summary.errors,
        details=[MessageEmailOutcomeResponse.model_validate(d) for d in summary.details],
    )


@router.api_route(
    "/unread-reminder-batch",
    methods=["GET", "POST"],
    response_model=MessageEmailBatchResponse,
    dependencies=[Depends(verify_cron_secret)],
)
def run_unread_reminder_batch(
    limit: Optional[int] = Query(None, ge=1, le=5000, description="Users examined"),
    service: MessageEmailService = Depends(get_message_email_service),
) -> MessageEmailBatchResponse:
    return _message_email_response(service.run_unread_reminder_batch(limit=limit))


@router.api_route(
    "/every-message-batch",
    methods=["GET", "POST"],
    response_model=MessageEmailBatchResponse,
    dependencies=[Depends(verify_cron_secret)],
)
def run_every_message_batch(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    service: MessageEmailService = Depends(get_message_email_service),
) -> MessageEmailBatchResponse:
    return _message_email_response(service.run_every_message_batch(limit=limit))
