"""Tests for NotificationPreferenceService."""

import pytest

from bangbuy.core.exceptions import NotFoundException, PreferenceSkip, ValidationException
from bangbuy.services.notification_preference_service import (
    CATEGORY_MESSAGE_NEW_THREAD,
    CATEGORY_OFFER_ACCEPTED,
    NotificationPreferenceService,
)


class TestSettings:
    def test_defaults(self, db, user_x):
        prefs = NotificationPreferenceService(db).get_settings(user_x.id)

        assert prefs == {
            "notify_msg_new_thread_email": True,
            "notify_msg_unread_reminder_email": True,
            "notify_msg_every_message_email": False,
            "notify_msg_unread_hours": 12,
            "notify_offer_created_email": True,
            "notify_offer_result_email": True,
        }

    def test_partial_update_ignores_unknown_keys(self, db, user_x):
        service = NotificationPreferenceService(db)

        prefs = service.update_settings(
            user_x.id, {"notify_msg_new_thread_email": False, "email": "hijack@example.com"}
        )

        assert prefs["notify_msg_new_thread_email"] is False
        assert prefs["notify_offer_created_email"] is True
        assert service.user_repository.get_by_id(user_x.id).email == user_x.email

    @pytest.mark.parametrize("hours,expected", [(0, 1), (-5, 1), (24, 24), (500, 72), ("6", 6)])
    def test_unread_hours_are_clamped(self, db, user_x, hours, expected):
        prefs = NotificationPreferenceService(db).update_settings(
            user_x.id, {"notify_msg_unread_hours": hours}
        )
        assert prefs["notify_msg_unread_hours"] == expected

    def test_non_numeric_hours_rejected(self, db, user_x):
        with pytest.raises(ValidationException):
            NotificationPreferenceService(db).update_settings(
                user_x.id, {"notify_msg_unread_hours": "soon"}
            )

    def test_unknown_user(self, db):
        service = NotificationPreferenceService(db)
        with pytest.raises(NotFoundException):
            service.get_settings("nobody")
        with pytest.raises(NotFoundException):
            service.update_settings("nobody", {"notify_msg_new_thread_email": False})


class TestResolveRecipient:
    def test_returns_trimmed_address(self, db, make_user):
        profile = make_user(email="  kim@example.com ")
        address = NotificationPreferenceService(db).resolve_email_recipient(
            profile, CATEGORY_MESSAGE_NEW_THREAD
        )
        assert address == "kim@example.com"

    @pytest.mark.parametrize(
        "profile_kwargs,category,reason",
        [
            ({"notify_msg_new_thread_email": False}, CATEGORY_MESSAGE_NEW_THREAD, "preference_disabled"),
            ({"notify_offer_result_email": False}, CATEGORY_OFFER_ACCEPTED, "preference_disabled"),
            ({"email": None}, CATEGORY_MESSAGE_NEW_THREAD, "no_email"),
        ],
    )
    def test_skips(self, db, make_user, profile_kwargs, category, reason):
        profile = make_user(**profile_kwargs)
        with pytest.raises(PreferenceSkip) as exc_info:
            NotificationPreferenceService(db).resolve_email_recipient(profile, category)
        assert exc_info.value.reason == reason

    def test_missing_profile(self, db):
        with pytest.raises(PreferenceSkip) as exc_info:
            NotificationPreferenceService(db).resolve_email_recipient(None, CATEGORY_MESSAGE_NEW_THREAD)
        assert exc_info.value.reason == "recipient_not_found"

    def test_unknown_category(self, db, user_x):
        with pytest.raises(ValidationException):
            NotificationPreferenceService(db).resolve_email_recipient(user_x, "weekly_digest")
