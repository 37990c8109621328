"""Tests for offer lifecycle emails and their dedupe records."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from bangbuy.core.exceptions import (
    PermanentDispatchError,
    TransientDispatchError,
    ValidationException,
)
from bangbuy.models.notification import (
    DEDUPE_STATUS_FAILED,
    DEDUPE_STATUS_REJECTED,
    DEDUPE_STATUS_SENT,
)
from bangbuy.repositories.dedupe_record_repository import DedupeRecordRepository
from bangbuy.services.action_email_service import ActionEmailService, OfferNotification
from bangbuy.services.email_templates import EmailTemplateRenderer


@pytest.fixture
def buyer(make_user):
    return make_user(display_name="Bora")


@pytest.fixture
def shopper(make_user):
    return make_user(display_name="Sami")


@pytest.fixture
def action_emails(db, email_service):
    return ActionEmailService(db, email_service=email_service)


def _offer(action, buyer, shopper, **overrides):
    values = {
        "action": action,
        "offer_id": "offer-1",
        "buyer_id": buyer.id,
        "shopper_id": shopper.id,
        "wish_id": "wish-9",
        "wish_title": "Camera",
        "price": "120.00",
        "currency": "USD",
    }
    values.update(overrides)
    return OfferNotification(**values)


class TestRecipients:
    def test_offer_created_emails_the_buyer(self, db, action_emails, fake_provider, buyer, shopper):
        result = action_emails.send_offer_notification(_offer("offer_created", buyer, shopper))

        assert result.status == "sent"
        assert result.dedupe_key == "offer_created:offer-1"
        [email] = fake_provider.sent
        assert email.to == buyer.email
        assert email.subject == 'New offer on "Camera"'
        assert "Price: 120.00 USD" in email.text
        assert "/wish/wish-9" in email.text

        record = DedupeRecordRepository(db).get_by_key("offer_created", "offer_created:offer-1")
        assert record.status == DEDUPE_STATUS_SENT
        assert record.provider_message_id == result.provider_message_id

    @pytest.mark.parametrize("action", ["offer_accepted", "offer_rejected"])
    def test_offer_result_emails_the_shopper(self, action_emails, fake_provider, buyer, shopper, action):
        result = action_emails.send_offer_notification(_offer(action, buyer, shopper))

        assert result.status == "sent"
        assert [m.to for m in fake_provider.sent] == [shopper.email]

    def test_accepted_links_to_conversation(self, action_emails, fake_provider, buyer, shopper):
        action_emails.send_offer_notification(
            _offer("offer_accepted", buyer, shopper, conversation_id="conv-7")
        )

        assert "/chat?conversation=conv-7" in fake_provider.sent[0].text


class TestDedupe:
    def test_repeat_event_is_skipped(self, action_emails, fake_provider, buyer, shopper):
        event = _offer("offer_created", buyer, shopper)
        action_emails.send_offer_notification(event)

        again = action_emails.send_offer_notification(event)

        assert (again.status, again.reason) == ("skipped", "duplicate")
        assert fake_provider.attempts == 1

    def test_actions_on_one_offer_are_independent(self, action_emails, fake_provider, buyer, shopper):
        action_emails.send_offer_notification(_offer("offer_created", buyer, shopper))
        result = action_emails.send_offer_notification(_offer("offer_accepted", buyer, shopper))

        assert result.status == "sent"
        assert len(fake_provider.sent) == 2

    def test_failed_attempt_can_be_retried(self, db, action_emails, fake_provider, buyer, shopper):
        event = _offer("offer_created", buyer, shopper)
        fake_provider.fail_next(TransientDispatchError("timeout"))

        failed = action_emails.send_offer_notification(event)
        assert (failed.status, failed.reason) == ("failed", "transient_failure")
        record = DedupeRecordRepository(db).get_by_key("offer_created", failed.dedupe_key)
        assert record.status == DEDUPE_STATUS_FAILED
        assert "timeout" in record.last_error

        assert action_emails.send_offer_notification(event).status == "sent"
        assert len(fake_provider.sent) == 1

    def test_permanent_failure_is_never_retried(
        self, db, action_emails, fake_provider, buyer, shopper
    ):
        """A provider rejection is terminal: later triggers do not dispatch again."""
        event = _offer("offer_created", buyer, shopper)
        fake_provider.fail_next(PermanentDispatchError("invalid to", provider_code="422"))

        result = action_emails.send_offer_notification(event)
        assert (result.status, result.reason) == ("failed", "permanent_failure")
        record = DedupeRecordRepository(db).get_by_key("offer_created", result.dedupe_key)
        assert record.status == DEDUPE_STATUS_REJECTED

        again = action_emails.send_offer_notification(event)

        assert (again.status, again.reason) == ("skipped", "duplicate")
        assert fake_provider.attempts == 1
        assert fake_provider.sent == []

    def test_concurrent_triggers_send_once(
        self, session_factory, email_service, fake_provider, buyer, shopper
    ):
        event = _offer("offer_created", buyer, shopper)

        def trigger(_):
            session = session_factory()
            try:
                return ActionEmailService(session, email_service=email_service).send_offer_notification(event)
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(trigger, range(8)))

        assert [r.status for r in results].count("sent") == 1
        assert len(fake_provider.sent) == 1


class TestSkipsAndValidation:
    def test_opted_out_recipient_is_skipped_without_record(
        self, db, action_emails, fake_provider, make_user, buyer
    ):
        shopper = make_user(notify_offer_result_email=False)

        result = action_emails.send_offer_notification(_offer("offer_rejected", buyer, shopper))

        assert (result.status, result.reason) == ("skipped", "preference_disabled")
        assert fake_provider.attempts == 0
        assert DedupeRecordRepository(db).get_by_key("offer_rejected", result.dedupe_key) is None

    def test_unknown_recipient_is_skipped(self, action_emails, shopper):
        event = OfferNotification(
            action="offer_created", offer_id="offer-2", buyer_id="missing", shopper_id=shopper.id
        )

        result = action_emails.send_offer_notification(event)

        assert (result.status, result.reason) == ("skipped", "recipient_not_found")

    def test_rejects_unknown_action(self, action_emails, buyer, shopper):
        with pytest.raises(ValidationException):
            action_emails.send_offer_notification(_offer("offer_withdrawn", buyer, shopper))

    def test_rejects_missing_offer_id(self, action_emails, buyer, shopper):
        with pytest.raises(ValidationException):
            action_emails.send_offer_notification(_offer("offer_created", buyer, shopper, offer_id=" "))


class TestRenderFailures:
    def test_broken_template_is_reported_not_raised(
        self, db, email_service, fake_provider, buyer, shopper, tmp_path
    ):
        """A template error comes back as a failed result and reserves nothing."""
        (tmp_path / "email").mkdir()
        (tmp_path / "email" / "offer_created.html").write_text("{% block content %}unclosed")
        service = ActionEmailService(
            db, email_service=email_service, renderer=EmailTemplateRenderer(tmp_path)
        )

        result = service.send_offer_notification(_offer("offer_created", buyer, shopper))

        assert (result.status, result.reason) == ("failed", "prepare_failed")
        assert fake_provider.attempts == 0
        assert DedupeRecordRepository(db).get_by_key("offer_created", result.dedupe_key) is None
