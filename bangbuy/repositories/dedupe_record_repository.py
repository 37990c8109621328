# bangbuy/repositories/dedupe_record_repository.py
"""
Repository for notification dedupe records.

Provides the insert-if-absent gate used before any action email is
dispatched, plus the status updates recorded after dispatch.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, cast

from sqlalchemy import Select, func, select, update
from sqlalchemy.orm import Session
import ulid

from ..models.notification import (
    DEDUPE_STATUS_FAILED,
    DEDUPE_STATUS_PENDING,
    DEDUPE_STATUS_REJECTED,
    DEDUPE_STATUS_SENT,
    DedupeRecord,
)
from .base_repository import BaseRepository


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class DedupeRecordRepository(BaseRepository[DedupeRecord]):
    """Data access helper for notification_dedupe_records rows."""

    def __init__(self, db: Session):
        super().__init__(db, DedupeRecord)

    def try_reserve(self, category: str, dedupe_key: str, user_id: Optional[str] = None) -> bool:
        """
        Reserve (category, dedupe_key) for a send.

        Inserts a pending row when absent. A row left ``failed`` by an earlier
        attempt is taken over again; a ``pending``, ``sent`` or ``rejected`` row
        means the notification was already decided and the caller must not
        dispatch.

        Returns:
            True if the caller now owns the send
        """
        now = _now_utc()
        inserted = self._insert_if_absent(
            {
                "id": str(ulid.ULID()),
                "category": category,
                "dedupe_key": dedupe_key,
                "user_id": user_id,
                "status": DEDUPE_STATUS_PENDING,
                "created_at": now,
                "updated_at": now,
            }
        )
        if inserted:
            return True

        stmt = (
            update(DedupeRecord)
            .where(
                DedupeRecord.category == category,
                DedupeRecord.dedupe_key == dedupe_key,
                DedupeRecord.status == DEDUPE_STATUS_FAILED,
            )
            .values(status=DEDUPE_STATUS_PENDING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return self._execute_rowcount(stmt) == 1

    def mark_sent(self, category: str, dedupe_key: str, provider_message_id: Optional[str]) -> bool:
        now = _now_utc()
        stmt = (
            update(DedupeRecord)
            .where(DedupeRecord.category == category, DedupeRecord.dedupe_key == dedupe_key)
            .values(
                status=DEDUPE_STATUS_SENT,
                provider_message_id=provider_message_id,
                last_error=None,
                sent_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return self._execute_rowcount(stmt) == 1

    def mark_failed(
        self, category: str, dedupe_key: str, error: str, permanent: bool = False
    ) -> bool:
        """Record a failed dispatch. Permanent rejections are stored as terminal."""
        status = DEDUPE_STATUS_REJECTED if permanent else DEDUPE_STATUS_FAILED
        stmt = (
            update(DedupeRecord)
            .where(DedupeRecord.category == category, DedupeRecord.dedupe_key == dedupe_key)
            .values(status=status, last_error=error[:2000], updated_at=_now_utc())
            .execution_options(synchronize_session=False)
        )
        return self._execute_rowcount(stmt) == 1

    def last_sent_at(self, category: str, user_id: str, key_prefix: str) -> Optional[datetime]:
        """When the user was last sent a ``category`` email whose key starts with ``key_prefix``."""
        query = self.db.query(func.max(DedupeRecord.sent_at)).filter(
            DedupeRecord.category == category,
            DedupeRecord.user_id == user_id,
            DedupeRecord.status == DEDUPE_STATUS_SENT,
            DedupeRecord.dedupe_key.startswith(key_prefix, autoescape=True),
        )
        return cast(Optional[datetime], self._execute_scalar(query))

    def get_by_key(self, category: str, dedupe_key: str) -> Optional[DedupeRecord]:
        stmt: Select[Any] = (
            select(DedupeRecord)
            .where(DedupeRecord.category == category, DedupeRecord.dedupe_key == dedupe_key)
            .execution_options(populate_existing=True)
        )
        result = self.db.execute(stmt)
        return cast(Optional[DedupeRecord], result.scalar_one_or_none())
