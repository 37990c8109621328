# bangbuy/repositories/user_repository.py
"""
UserProfile Repository.

Read access to profiles plus updates of the notification preference columns.
"""

from typing import Any, List, Optional, cast

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.user import UserProfile
from .base_repository import BaseRepository

PREFERENCE_FIELDS = (
    "notify_msg_new_thread_email",
    "notify_msg_unread_reminder_email",
    "notify_msg_every_message_email",
    "notify_msg_unread_hours",
    "notify_offer_created_email",
    "notify_offer_result_email",
)


class UserRepository(BaseRepository[UserProfile]):
    def __init__(self, db: Session):
        super().__init__(db, UserProfile)

    def update_preferences(self, user_id: str, **changes: Any) -> Optional[UserProfile]:
        """Apply preference changes; keys outside the preference columns are ignored."""
        filtered = {key: value for key, value in changes.items() if key in PREFERENCE_FIELDS}
        if not filtered:
            return cast(Optional[UserProfile], self.get_by_id(user_id))
        return cast(Optional[UserProfile], self.update(user_id, **filtered))

    def find_reminder_recipients(self, limit: int) -> List[UserProfile]:
        """Users who want unread reminders and have an address on file."""
        query = (
            self.db.query(UserProfile)
            .filter(
                UserProfile.notify_msg_unread_reminder_email.is_(True),
                UserProfile.email.isnot(None),
                func.trim(UserProfile.email) != "",
            )
            .order_by(UserProfile.id.asc())
            .limit(limit)
        )
        return cast(List[UserProfile], self._execute_query(query))
