# bangbuy/models/notification.py
"""
Notification dedupe records.

One row per (category, dedupe_key). The unique constraint is what makes any
outbound notification idempotent: inserting the row is the decision to send.
"""

from __future__ import annotations

from sqlalchemy import CheckConstraint, Column, Index, String, Text, UniqueConstraint
import ulid

from ..database import Base
from .types import UTCDateTime, utcnow

DEDUPE_STATUS_PENDING = "pending"
DEDUPE_STATUS_SENT = "sent"
DEDUPE_STATUS_FAILED = "failed"
DEDUPE_STATUS_REJECTED = "rejected"
DEDUPE_STATUSES = (
    DEDUPE_STATUS_PENDING,
    DEDUPE_STATUS_SENT,
    DEDUPE_STATUS_FAILED,
    DEDUPE_STATUS_REJECTED,
)


class DedupeRecord(Base):
    """Record of an outbound notification decision keyed by category and dedupe key."""

    __tablename__ = "notification_dedupe_records"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    category = Column(String(50), nullable=False)
    dedupe_key = Column(String(255), nullable=False)
    user_id = Column(String(26), nullable=True)
    status = Column(String(20), nullable=False, default=DEDUPE_STATUS_PENDING)
    provider_message_id = Column(String(255), nullable=True)
    last_error = Column(Text, nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("category", "dedupe_key", name="uq_notification_dedupe_category_key"),
        CheckConstraint(
            "status IN ('pending', 'sent', 'failed', 'rejected')",
            name="ck_notification_dedupe_status",
        ),
        Index("idx_notification_dedupe_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<DedupeRecord(category={self.category}, key={self.dedupe_key}, status={self.status})>"
