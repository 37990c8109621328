# bangbuy/services/notification_preference_service.py
"""
Notification preference service.

Reads and updates the per-user email toggles and decides whether a given
notification category may be emailed to a user.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.constants import MAX_UNREAD_REMINDER_HOURS, MIN_UNREAD_REMINDER_HOURS
from ..core.exceptions import NotFoundException, PreferenceSkip, ValidationException
from ..models.user import UserProfile
from ..repositories.factory import RepositoryFactory
from ..repositories.user_repository import PREFERENCE_FIELDS, UserRepository
from .base import BaseService

logger = logging.getLogger(__name__)

CATEGORY_MESSAGE_NEW_THREAD = "message_new_thread"
CATEGORY_MESSAGE_UNREAD_REMINDER = "message_unread_reminder"
CATEGORY_MESSAGE_EVERY = "message_every"
CATEGORY_OFFER_CREATED = "offer_created"
CATEGORY_OFFER_ACCEPTED = "offer_accepted"
CATEGORY_OFFER_REJECTED = "offer_rejected"

# Notification category -> preference column that gates it
CATEGORY_PREFERENCE_FIELDS: Dict[str, str] = {
    CATEGORY_MESSAGE_NEW_THREAD: "notify_msg_new_thread_email",
    CATEGORY_MESSAGE_UNREAD_REMINDER: "notify_msg_unread_reminder_email",
    CATEGORY_MESSAGE_EVERY: "notify_msg_every_message_email",
    CATEGORY_OFFER_CREATED: "notify_offer_created_email",
    CATEGORY_OFFER_ACCEPTED: "notify_offer_result_email",
    CATEGORY_OFFER_REJECTED: "notify_offer_result_email",
}


def clamp_unread_hours(value: Any) -> int:
    try:
        hours = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationException(
            "notify_msg_unread_hours must be an integer", code="INVALID_UNREAD_HOURS"
        ) from exc
    return max(MIN_UNREAD_REMINDER_HOURS, min(MAX_UNREAD_REMINDER_HOURS, hours))


class NotificationPreferenceService(BaseService):
    def __init__(self, db: Session, user_repository: Optional[UserRepository] = None):
        super().__init__(db)
        self.user_repository = user_repository or RepositoryFactory.create_user_repository(db)

    def _get_profile(self, user_id: str) -> UserProfile:
        profile = self.user_repository.get_by_id(user_id)
        if profile is None:
            raise NotFoundException(f"User {user_id} not found", code="USER_NOT_FOUND")
        return profile

    @BaseService.measure_operation("get_notification_settings")
    def get_settings(self, user_id: str) -> Dict[str, Any]:
        profile = self._get_profile(user_id)
        return {field: getattr(profile, field) for field in PREFERENCE_FIELDS}

    @BaseService.measure_operation("update_notification_settings")
    def update_settings(self, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial update of preference fields.

        Unknown keys are ignored; ``notify_msg_unread_hours`` is clamped to 1..72.
        """
        updates = {k: v for k, v in changes.items() if k in PREFERENCE_FIELDS and v is not None}
        if "notify_msg_unread_hours" in updates:
            updates["notify_msg_unread_hours"] = clamp_unread_hours(
                updates["notify_msg_unread_hours"]
            )
        self._get_profile(user_id)
        with self.transaction():
            self.user_repository.update_preferences(user_id, **updates)
        self.log_operation("notification_settings_updated", user_id=user_id, fields=sorted(updates))
        return self.get_settings(user_id)

    def resolve_email_recipient(self, profile: Optional[UserProfile], category: str) -> str:
        """
        Return the address to email for ``category``.

        Raises:
            ValidationException: Unknown category
            PreferenceSkip: Recipient has no address or opted out
        """
        field = CATEGORY_PREFERENCE_FIELDS.get(category)
        if field is None:
            raise ValidationException(f"Unknown notification category '{category}'")
        if profile is None:
            raise PreferenceSkip("recipient_not_found")
        if not getattr(profile, field, False):
            raise PreferenceSkip("preference_disabled")
        email = (profile.email or "").strip()
        if not email:
            raise PreferenceSkip("no_email")
        return email
