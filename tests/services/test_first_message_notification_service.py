"""
Tests for the first-message email batch.

The batch must notify the recipient of each conversation's first message at
most once, no matter how many workers run it or how often dispatch fails.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from bangbuy.core.config import settings
from bangbuy.core.exceptions import PermanentDispatchError, TransientDispatchError
from bangbuy.repositories.conversation_repository import ConversationRepository
from bangbuy.repositories.message_repository import MessageRepository
from bangbuy.services.email import EmailService
from bangbuy.services.email_templates import EmailTemplateRenderer
from bangbuy.services.first_message_notification_service import (
    FirstMessageNotificationService,
    first_message_dedupe_key,
)
from bangbuy.services.message_service import MessageService

GHOST_USER_ID = "01HGHOSTGHOSTGHOSTGHOSTGHO"


@pytest.fixture
def notifier(db, email_service, enable_notifications):
    return FirstMessageNotificationService(db, email_service=email_service, max_attempts=3)


@pytest.fixture
def start_conversation(db, make_conversation):
    """Create a conversation and send its first message; returns (conversation, message)."""

    def _start(sender, recipient_id, content="Hi, can you buy this for me?"):
        conversation = make_conversation(sender.id, recipient_id)
        message = MessageService(db).send(conversation.id, sender.id, content)
        return conversation, message

    return _start


def _conversation(db, conversation_id):
    return ConversationRepository(db).reload(conversation_id)


class TestBatchSwitch:
    def test_disabled_batch_sends_nothing(
        self, db, email_service, fake_provider, monkeypatch, user_x, user_y, start_conversation
    ):
        monkeypatch.setattr(settings, "enable_message_email_notifications", False)
        start_conversation(user_x, user_y.id)

        summary = FirstMessageNotificationService(db, email_service=email_service).run_first_message_batch()

        assert summary.enabled is False
        assert summary.candidates == 0
        assert fake_provider.attempts == 0


class TestHappyPath:
    def test_notifies_each_first_message_once(
        self, db, notifier, fake_provider, user_x, user_y, make_user, start_conversation
    ):
        other = make_user(display_name="Olive")
        conversation, message = start_conversation(user_x, user_y.id)
        start_conversation(other, user_x.id, content="x" * 120)
        MessageService(db).send(conversation.id, user_y.id, "a reply is not a candidate")

        summary = notifier.run_first_message_batch()

        assert (summary.candidates, summary.sent, summary.skipped, summary.errors) == (2, 2, 0, 0)
        to_y = fake_provider.sent_to(user_y.email)
        assert len(to_y) == 1
        assert to_y[0].subject == "Xavier sent you a message on BangBuy"
        assert to_y[0].dedupe_key == first_message_dedupe_key(conversation.id, message.id)
        assert f"/chat?conversation={conversation.id}" in to_y[0].html
        assert ("x" * 77 + "...") in fake_provider.sent_to(user_x.email)[0].text

        confirmed = MessageRepository(db).get_fresh(message.id)
        assert confirmed.email_notified_at is not None
        assert _conversation(db, conversation.id).first_message_notification_sent_at is not None

    def test_second_run_is_a_no_op(self, notifier, fake_provider, user_x, user_y, start_conversation):
        start_conversation(user_x, user_y.id)
        notifier.run_first_message_batch()

        summary = notifier.run_first_message_batch()

        assert summary.candidates == 0
        assert len(fake_provider.sent) == 1

    def test_limit_bounds_the_batch(
        self, notifier, fake_provider, user_x, make_user, start_conversation
    ):
        for _ in range(3):
            start_conversation(user_x, make_user().id)

        assert notifier.run_first_message_batch(limit=2).sent == 2
        assert notifier.run_first_message_batch(limit=2).sent == 1


class TestRecipientSkips:
    @pytest.mark.parametrize(
        "profile_kwargs,reason",
        [
            ({"notify_msg_new_thread_email": False}, "preference_disabled"),
            ({"email": None}, "no_email"),
            ({"email": "   "}, "no_email"),
        ],
    )
    def test_skip_is_terminal(
        self, db, notifier, fake_provider, user_x, make_user, start_conversation,
        profile_kwargs, reason,
    ):
        recipient = make_user(**profile_kwargs)
        conversation, _ = start_conversation(user_x, recipient.id)

        summary = notifier.run_first_message_batch()

        assert summary.skipped == 1
        assert summary.details[0].reason == reason
        assert fake_provider.attempts == 0
        assert _conversation(db, conversation.id).first_message_notification_sent_at is not None
        assert notifier.run_first_message_batch().candidates == 0

    def test_missing_recipient_gives_up(self, db, notifier, fake_provider, user_x, start_conversation):
        conversation, _ = start_conversation(user_x, GHOST_USER_ID)

        summary = notifier.run_first_message_batch()

        assert summary.errors == 1
        assert summary.details[0].reason == "validation_error"
        refreshed = _conversation(db, conversation.id)
        assert refreshed.first_message_notification_sent_at is None
        assert refreshed.first_message_notification_failed_at is not None
        assert notifier.run_first_message_batch().candidates == 0


class TestDispatchFailures:
    def test_transient_failure_releases_claim_for_retry(
        self, db, notifier, fake_provider, user_x, user_y, start_conversation
    ):
        conversation, _ = start_conversation(user_x, user_y.id)
        fake_provider.fail_next(TransientDispatchError("provider unavailable", provider_code="503"))

        first = notifier.run_first_message_batch()

        assert first.errors == 1
        assert first.details[0].reason == "transient_failure"
        refreshed = _conversation(db, conversation.id)
        assert refreshed.first_message_notification_sent_at is None
        assert refreshed.first_message_notification_attempts == 1

        second = notifier.run_first_message_batch()
        assert second.sent == 1
        assert len(fake_provider.sent_to(user_y.email)) == 1

    def test_unexpected_provider_error_counts_as_transient(
        self, notifier, fake_provider, user_x, user_y, start_conversation
    ):
        start_conversation(user_x, user_y.id)
        fake_provider.fail_next(RuntimeError("connection reset"))

        summary = notifier.run_first_message_batch()

        assert summary.details[0].reason == "transient_failure"
        assert notifier.run_first_message_batch().sent == 1

    def test_attempts_are_bounded(self, db, notifier, fake_provider, user_x, user_y, start_conversation):
        conversation, _ = start_conversation(user_x, user_y.id)
        fake_provider.fail_always(TransientDispatchError("still down"))

        for _ in range(3):
            assert notifier.run_first_message_batch().errors == 1
        fake_provider.recover()

        assert notifier.run_first_message_batch().candidates == 0
        assert fake_provider.attempts == 3
        refreshed = _conversation(db, conversation.id)
        assert refreshed.first_message_notification_attempts == 3
        assert refreshed.first_message_notification_failed_at is not None

    def test_permanent_failure_is_not_retried(
        self, db, notifier, fake_provider, user_x, user_y, start_conversation
    ):
        conversation, _ = start_conversation(user_x, user_y.id)
        fake_provider.fail_next(PermanentDispatchError("invalid recipient", provider_code="422"))

        summary = notifier.run_first_message_batch()

        assert summary.details[0].reason == "permanent_failure"
        assert _conversation(db, conversation.id).first_message_notification_failed_at is not None
        assert notifier.run_first_message_batch().candidates == 0
        assert fake_provider.attempts == 1

    def test_timeout_is_a_transient_failure(
        self, db, fake_provider, enable_notifications, user_x, user_y, start_conversation
    ):
        conversation, _ = start_conversation(user_x, user_y.id)
        fake_provider.delay = 0.5
        slow_service = EmailService(provider=fake_provider, timeout_seconds=0.05)

        summary = FirstMessageNotificationService(
            db, email_service=slow_service
        ).run_first_message_batch()

        assert summary.details[0].reason == "transient_failure"
        assert _conversation(db, conversation.id).first_message_notification_sent_at is None


class TestClaims:
    def test_candidate_claimed_elsewhere_is_skipped(
        self, db, session_factory, notifier, fake_provider, user_x, user_y, start_conversation
    ):
        conversation, message = start_conversation(user_x, user_y.id)
        stale = MessageRepository(db).find_pending_first_messages(10)
        notifier.message_repository.find_pending_first_messages = lambda limit: stale

        other = session_factory()
        try:
            ConversationRepository(other).claim_first_message_notification(
                conversation.id, datetime.now(timezone.utc)
            )
            other.commit()
        finally:
            other.close()

        summary = notifier.run_first_message_batch()

        assert summary.skipped == 1
        assert summary.details[0].reason == "claimed_elsewhere"
        assert fake_provider.attempts == 0

    def test_concurrent_workers_send_at_most_once(
        self, session_factory, email_service, fake_provider, enable_notifications,
        user_x, make_user, start_conversation,
    ):
        recipients = [make_user() for _ in range(6)]
        for recipient in recipients:
            start_conversation(user_x, recipient.id)
        fake_provider.fail_next(TransientDispatchError("flaky"), times=2)

        def run_worker(_):
            session = session_factory()
            try:
                return FirstMessageNotificationService(
                    session, email_service=email_service
                ).run_first_message_batch()
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=4) as pool:
            summaries = list(pool.map(run_worker, range(4)))
        final = run_worker(None)

        assert sum(s.sent for s in summaries) + final.sent == len(recipients)
        for recipient in recipients:
            assert len(fake_provider.sent_to(recipient.email)) == 1


class TestTestNotification:
    def test_sends_to_requested_address(self, notifier, fake_provider):
        result = notifier.send_test_notification("ops@example.com")

        assert result.success is True
        assert fake_provider.sent[0].to == "ops@example.com"
        assert fake_provider.sent[0].subject == "[TEST] BangBuy notification check"

    def test_defaults_to_configured_address(self, notifier, fake_provider, monkeypatch):
        monkeypatch.setattr(settings, "test_email", "ops-default@example.com")

        notifier.send_test_notification()

        assert fake_provider.sent[0].to == "ops-default@example.com"


@pytest.fixture
def broken_renderer(tmp_path):
    (tmp_path / "email").mkdir()
    for name in ("new_message.html", "test.html"):
        (tmp_path / "email" / name).write_text("{% block content %}never closed")
    return EmailTemplateRenderer(tmp_path)


class TestRenderFailures:
    def test_broken_template_is_reported_per_candidate(
        self, db, email_service, enable_notifications, fake_provider, broken_renderer,
        user_x, user_y, start_conversation,
    ):
        """A render failure releases the claim and the batch carries on."""
        conversation, _ = start_conversation(user_x, user_y.id)
        service = FirstMessageNotificationService(
            db, email_service=email_service, renderer=broken_renderer, max_attempts=3
        )

        summary = service.run_first_message_batch()

        assert (summary.candidates, summary.sent, summary.errors) == (1, 0, 1)
        assert summary.details[0].reason == "prepare_failed"
        assert fake_provider.attempts == 0
        refreshed = _conversation(db, conversation.id)
        assert refreshed.first_message_notification_sent_at is None
        assert refreshed.first_message_notification_failed_at is None

    def test_broken_test_template_returns_failed_result(self, db, email_service, fake_provider, broken_renderer):
        service = FirstMessageNotificationService(db, email_service=email_service, renderer=broken_renderer)

        result = service.send_test_notification("ops@example.com")

        assert result.success is False
        assert result.provider_code == "TEMPLATE_RENDER_FAILED"
        assert fake_provider.attempts == 0
