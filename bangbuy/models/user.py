# bangbuy/models/user.py
"""
User profile model.

Profiles are owned by the external identity/profile system. The messaging
core reads the contact address and display name, and owns the notification
preference columns that users can edit from their settings page.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, Integer, String
import ulid

from ..core.constants import (
    DEFAULT_UNREAD_REMINDER_HOURS,
    MAX_UNREAD_REMINDER_HOURS,
    MIN_UNREAD_REMINDER_HOURS,
)
from ..database import Base
from .types import UTCDateTime, utcnow


class UserProfile(Base):
    """
    Messaging view of a marketplace user.

    Attributes:
        id: ULID primary key (issued by the identity provider)
        email: Contact address; None means the user cannot be emailed
        display_name: Name shown in emails and conversation lists
        notify_msg_new_thread_email: Email on the first message of a new conversation
        notify_msg_unread_reminder_email: Reminder digests for unread messages
        notify_msg_every_message_email: Email on every message
        notify_msg_unread_hours: Hours of unread before a reminder (1..72)
        notify_offer_created_email: Email buyers when a shopper makes an offer
        notify_offer_result_email: Email shoppers when an offer is accepted or rejected
    """

    __tablename__ = "user_profiles"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    email = Column(String(255), nullable=True)
    display_name = Column(String(100), nullable=True)

    notify_msg_new_thread_email = Column(Boolean, nullable=False, default=True)
    notify_msg_unread_reminder_email = Column(Boolean, nullable=False, default=True)
    notify_msg_every_message_email = Column(Boolean, nullable=False, default=False)
    notify_msg_unread_hours = Column(Integer, nullable=False, default=DEFAULT_UNREAD_REMINDER_HOURS)
    notify_offer_created_email = Column(Boolean, nullable=False, default=True)
    notify_offer_result_email = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            f"notify_msg_unread_hours BETWEEN {MIN_UNREAD_REMINDER_HOURS} AND {MAX_UNREAD_REMINDER_HOURS}",
            name="ck_user_profiles_unread_hours",
        ),
    )

    def __repr__(self) -> str:
        return f"<UserProfile(id={self.id}, email={self.email})>"

    @property
    def name_for_email(self) -> str:
        return self.display_name or "there"
