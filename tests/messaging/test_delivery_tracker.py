"""Tests for the PENDING -> SENT / FAILED delivery tracker."""

from types import SimpleNamespace

import pytest

from bangbuy.core.exceptions import NotFoundException, ValidationException
from bangbuy.services.messaging.delivery import DeliveryState, DeliveryTracker


class FlakySender:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    def __call__(self, conversation_id, sender_id, content, client_id):
        self.calls.append(client_id)
        if self.failures:
            self.failures -= 1
            raise ConnectionError("network down")
        return SimpleNamespace(id=f"msg-{len(self.calls)}")


class TestDeliveryTracker:
    def test_successful_send(self):
        tracker = DeliveryTracker(FlakySender())

        entry = tracker.submit("c1", "u1", "hello", client_id="tmp-1")

        assert entry.state == DeliveryState.SENT
        assert entry.message_id == "msg-1"
        assert entry.attempts == 1
        assert tracker.pending() == []

    def test_failure_then_resend_keeps_client_id(self):
        sender = FlakySender(failures=1)
        tracker = DeliveryTracker(sender)

        failed = tracker.submit("c1", "u1", "hello", client_id="tmp-1")
        assert failed.state == DeliveryState.FAILED
        assert failed.error == "network down"
        assert [e.client_id for e in tracker.failed()] == ["tmp-1"]

        sent = tracker.resend("tmp-1")
        assert sent.state == DeliveryState.SENT
        assert sent.attempts == 2
        assert sender.calls == ["tmp-1", "tmp-1"]

    def test_generates_client_id(self):
        entry = DeliveryTracker(FlakySender()).submit("c1", "u1", "hello")
        assert len(entry.client_id) == 26

    def test_duplicate_client_id_rejected(self):
        tracker = DeliveryTracker(FlakySender())
        tracker.submit("c1", "u1", "hello", client_id="tmp-1")
        with pytest.raises(ValidationException):
            tracker.submit("c1", "u1", "again", client_id="tmp-1")

    def test_resend_requires_failed_state(self):
        tracker = DeliveryTracker(FlakySender())
        tracker.submit("c1", "u1", "hello", client_id="tmp-1")

        with pytest.raises(ValidationException):
            tracker.resend("tmp-1")
        with pytest.raises(NotFoundException):
            tracker.resend("unknown")

    def test_snapshots_are_copies(self):
        tracker = DeliveryTracker(FlakySender(failures=1))
        snapshot = tracker.submit("c1", "u1", "hello", client_id="tmp-1")
        snapshot.state = DeliveryState.SENT

        assert tracker.get("tmp-1").state == DeliveryState.FAILED
        tracker.forget("tmp-1")
        assert tracker.get("tmp-1") is None

    def test_works_with_message_service(self, db, user_x, user_y, make_conversation):
        from bangbuy.services.message_service import MessageService

        conversation = make_conversation(user_x.id, user_y.id)
        tracker = DeliveryTracker(MessageService(db).send)

        entry = tracker.submit(conversation.id, user_x.id, "hi", client_id="tmp-9")
        rejected = tracker.submit(conversation.id, user_x.id, "   ", client_id="tmp-10")

        assert entry.state == DeliveryState.SENT
        assert rejected.state == DeliveryState.FAILED

    def test_resend_through_message_service_after_storage_failure(
        self, db, user_x, user_y, make_conversation, monkeypatch
    ):
        """A FAILED send is resent through the service and stored with its client_id."""
        from bangbuy.core.exceptions import RepositoryException
        from bangbuy.services.message_service import MessageService

        conversation = make_conversation(user_x.id, user_y.id)
        service = MessageService(db)
        original_insert = service.message_repository.insert_message
        outage = {"remaining": 1}

        def flaky_insert(values):
            if outage["remaining"]:
                outage["remaining"] -= 1
                raise RepositoryException("database unavailable")
            return original_insert(values)

        monkeypatch.setattr(service.message_repository, "insert_message", flaky_insert)
        tracker = DeliveryTracker.for_message_service(service)

        failed = tracker.submit(conversation.id, user_x.id, "are you there?", client_id="tmp-42")
        assert failed.state == DeliveryState.FAILED
        assert "database unavailable" in failed.error

        sent = tracker.resend("tmp-42")

        assert sent.state == DeliveryState.SENT
        assert sent.attempts == 2
        [stored] = service.list_messages(conversation.id, user_x.id)
        assert stored.id == sent.message_id
        assert stored.client_id == "tmp-42"
