# bangbuy/services/action_email_service.py
"""
Offer lifecycle emails guarded by a dedupe record.

Each event computes ``{action}:{offer_id}`` and reserves it in
notification_dedupe_records before dispatch. An existing pending, sent or rejected
record short-circuits to ``skipped``; the record is the decision, so no
claim rollback is involved. A transient failure leaves the record ``failed``
and the next trigger for the same event may try again; a permanent rejection
leaves it ``rejected``, which is terminal like ``sent``.

Recipients:
- offer_created  -> buyer (owner of the request)
- offer_accepted -> shopper (author of the offer)
- offer_rejected -> shopper
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from ..core.config import settings
from ..core.exceptions import PreferenceSkip, ServiceException, ValidationException
from ..monitoring.prometheus_metrics import prometheus_metrics
from .base import BaseService
from .deduped_email_service import (
    STATUS_FAILED,
    STATUS_SKIPPED,
    DedupedEmailResult,
    DedupedEmailService,
)
from .notification_preference_service import (
    CATEGORY_OFFER_ACCEPTED,
    CATEGORY_OFFER_CREATED,
    CATEGORY_OFFER_REJECTED,
)

logger = logging.getLogger(__name__)

OFFER_ACTIONS = (CATEGORY_OFFER_CREATED, CATEGORY_OFFER_ACCEPTED, CATEGORY_OFFER_REJECTED)

ActionEmailResult = DedupedEmailResult


@dataclass
class OfferNotification:
    """An offer lifecycle event reported by the marketplace."""

    action: str
    offer_id: str
    buyer_id: str
    shopper_id: str
    wish_id: Optional[str] = None
    wish_title: Optional[str] = None
    price: Optional[str] = None
    currency: Optional[str] = None
    note: Optional[str] = None
    conversation_id: Optional[str] = None


def offer_dedupe_key(action: str, offer_id: str) -> str:
    return f"{action}:{offer_id}"


class ActionEmailService(DedupedEmailService):
    def _validate(self, event: OfferNotification) -> None:
        if event.action not in OFFER_ACTIONS:
            raise ValidationException(
                f"Unknown offer action '{event.action}'",
                code="INVALID_ACTION",
                details={"allowed": list(OFFER_ACTIONS)},
            )
        for field_name in ("offer_id", "buyer_id", "shopper_id"):
            if not (getattr(event, field_name) or "").strip():
                raise ValidationException(f"{field_name} is required", code="MISSING_FIELD")

    def _action_url(self, event: OfferNotification) -> str:
        if event.action == CATEGORY_OFFER_ACCEPTED and event.conversation_id:
            return f"{settings.site_url}/chat?conversation={event.conversation_id}"
        if event.wish_id:
            return f"{settings.site_url}/wish/{event.wish_id}"
        return settings.site_url

    @BaseService.measure_operation("send_offer_notification")
    def send_offer_notification(self, event: OfferNotification) -> ActionEmailResult:
        """
        Email the party affected by an offer event, at most once per (action, offer).

        Raises:
            ValidationException: Unknown action or missing ids (not retried)
        """
        self._validate(event)
        action = event.action
        if action == CATEGORY_OFFER_CREATED:
            recipient_id, actor_id = event.buyer_id, event.shopper_id
        else:
            recipient_id, actor_id = event.shopper_id, event.buyer_id
        dedupe_key = offer_dedupe_key(action, event.offer_id)

        recipient = self.user_repository.get_by_id(recipient_id)
        try:
            address = self.preferences.resolve_email_recipient(recipient, action)
        except PreferenceSkip as skip:
            self.logger.info(f"[EMAIL] Offer email skipped: {skip.reason}", extra={"dedupe_key": dedupe_key})
            prometheus_metrics.record_notification_outcome(action, STATUS_SKIPPED)
            return ActionEmailResult(status=STATUS_SKIPPED, reason=skip.reason, dedupe_key=dedupe_key)

        actor = self.user_repository.get_by_id(actor_id)
        try:
            rendered = self.renderer.offer(
                action,
                recipient_name=recipient.name_for_email if recipient else "there",
                actor_name=(actor.display_name if actor else None) or "Someone",
                wish_title=event.wish_title or "your request",
                action_url=self._action_url(event),
                price=event.price,
                currency=event.currency,
                note=event.note,
            )
        except ServiceException as e:
            self.db.rollback()
            self.logger.error(f"[EMAIL] Offer email not prepared for {dedupe_key}: {e.message}")
            prometheus_metrics.record_notification_outcome(action, STATUS_FAILED)
            return ActionEmailResult(status=STATUS_FAILED, reason="prepare_failed", dedupe_key=dedupe_key)

        return self._send_once(action, dedupe_key, recipient_id, address, rendered)
