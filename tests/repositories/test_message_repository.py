"""Tests for MessageRepository."""

from datetime import datetime, timedelta, timezone

import ulid

from bangbuy.models.message import MESSAGE_TYPE_FIRST_MESSAGE, MESSAGE_TYPE_NORMAL
from bangbuy.repositories.conversation_repository import ConversationRepository
from bangbuy.repositories.dedupe_record_repository import DedupeRecordRepository
from bangbuy.repositories.message_repository import MessageRepository

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _message(conversation_id, sender_id, created_at, message_type=MESSAGE_TYPE_NORMAL, content="hi"):
    return {
        "id": str(ulid.ULID()),
        "conversation_id": conversation_id,
        "sender_id": sender_id,
        "content": content,
        "message_type": message_type,
        "created_at": created_at,
    }


class TestMessageRepositoryInsert:
    def test_only_one_first_message_per_conversation(self, db, user_x, user_y, make_conversation):
        conversation = make_conversation(user_x.id, user_y.id)
        repo = MessageRepository(db)

        assert repo.insert_message(
            _message(conversation.id, user_x.id, T0, MESSAGE_TYPE_FIRST_MESSAGE)
        )
        assert not repo.insert_message(
            _message(conversation.id, user_y.id, T0, MESSAGE_TYPE_FIRST_MESSAGE)
        )
        assert repo.insert_message(_message(conversation.id, user_y.id, T0, MESSAGE_TYPE_NORMAL))
        db.commit()

        assert repo.count(conversation_id=conversation.id) == 2
        assert repo.has_messages(conversation.id)


class TestMessageRepositoryHistory:
    def test_list_returns_oldest_first_and_pages_backwards(
        self, db, user_x, user_y, make_conversation
    ):
        conversation = make_conversation(user_x.id, user_y.id)
        repo = MessageRepository(db)
        for i in range(5):
            repo.insert_message(
                _message(conversation.id, user_x.id, T0 + timedelta(minutes=i), content=f"m{i}")
            )
        db.commit()

        page = repo.list_for_conversation(conversation.id, limit=2)
        assert [m.content for m in page] == ["m3", "m4"]

        older = repo.list_for_conversation(conversation.id, limit=10, before=page[0].created_at)
        assert [m.content for m in older] == ["m0", "m1", "m2"]

    def test_latest_for_conversations(self, db, user_x, user_y, make_user, make_conversation):
        other = make_user()
        first = make_conversation(user_x.id, user_y.id)
        second = make_conversation(user_x.id, other.id)
        repo = MessageRepository(db)
        repo.insert_message(_message(first.id, user_x.id, T0, content="old"))
        repo.insert_message(_message(first.id, user_y.id, T0 + timedelta(minutes=1), content="new"))
        db.commit()

        latest = repo.latest_for_conversations([first.id, second.id])
        assert latest[first.id].content == "new"
        assert second.id not in latest


class TestMessageRepositoryFirstMessageScan:
    def test_scan_skips_notified_claimed_and_failed(self, db, make_user, make_conversation):
        users = [make_user() for _ in range(5)]
        conversations = [make_conversation(users[0].id, u.id) for u in users[1:]]
        repo = MessageRepository(db)
        conversation_repo = ConversationRepository(db)
        messages = []
        for i, conversation in enumerate(conversations):
            values = _message(
                conversation.id, users[0].id, T0 + timedelta(minutes=i), MESSAGE_TYPE_FIRST_MESSAGE
            )
            repo.insert_message(values)
            messages.append(values["id"])
        db.commit()

        repo.mark_email_notified(messages[0], T0)
        conversation_repo.claim_first_message_notification(conversations[1].id, T0)
        conversation_repo.claim_first_message_notification(conversations[2].id, T0)
        conversation_repo.release_first_message_claim(
            conversations[2].id, claimed_at=T0, failed_at=T0, max_attempts=5, give_up=True
        )
        db.commit()

        pending = repo.find_pending_first_messages(limit=10)
        assert [m.id for m in pending] == [messages[3]]

    def test_mark_email_notified_only_once(self, db, user_x, user_y, make_conversation):
        conversation = make_conversation(user_x.id, user_y.id)
        repo = MessageRepository(db)
        values = _message(conversation.id, user_x.id, T0, MESSAGE_TYPE_FIRST_MESSAGE)
        repo.insert_message(values)
        db.commit()

        assert repo.mark_email_notified(values["id"], T0 + timedelta(seconds=1))
        assert not repo.mark_email_notified(values["id"], T0 + timedelta(seconds=2))
        db.commit()

        assert repo.get_fresh(values["id"]).email_notified_at == T0 + timedelta(seconds=1)


class TestMessageRepositoryEveryMessageScan:
    def test_returns_unread_replies_for_opted_in_recipients(
        self, db, user_x, make_user, make_conversation
    ):
        fan = make_user(notify_msg_every_message_email=True)
        conversation = make_conversation(user_x.id, fan.id)
        repo = MessageRepository(db)
        first = _message(conversation.id, fan.id, T0, MESSAGE_TYPE_FIRST_MESSAGE)
        reply = _message(conversation.id, user_x.id, T0 + timedelta(minutes=1))
        handled = _message(conversation.id, user_x.id, T0 + timedelta(minutes=2))
        failed = _message(conversation.id, user_x.id, T0 + timedelta(minutes=3))
        too_old = _message(conversation.id, user_x.id, T0 - timedelta(days=2))
        for values in (first, reply, handled, failed, too_old):
            repo.insert_message(values)
        dedupe = DedupeRecordRepository(db)
        dedupe.try_reserve("message_every", f"every-message:{handled['id']}")
        dedupe.try_reserve("message_every", f"every-message:{failed['id']}")
        dedupe.mark_failed("message_every", f"every-message:{failed['id']}", "timeout")
        db.commit()

        candidates = repo.find_every_message_candidates(
            T0 - timedelta(hours=1), "message_every", "every-message:", limit=10
        )

        assert [(m.id, recipient) for m, recipient in candidates] == [
            (reply["id"], fan.id),
            (failed["id"], fan.id),
        ]

    def test_read_replies_are_excluded(self, db, user_x, make_user, make_conversation):
        fan = make_user(notify_msg_every_message_email=True)
        conversation = make_conversation(user_x.id, fan.id)
        repo = MessageRepository(db)
        repo.insert_message(_message(conversation.id, user_x.id, T0))
        conversations = ConversationRepository(db)
        slot = conversations.reload(conversation.id).slot_for(fan.id)
        conversations.advance_read_cursor(conversation.id, slot, T0 + timedelta(minutes=1))
        db.commit()

        assert repo.find_every_message_candidates(
            T0 - timedelta(hours=1), "message_every", "every-message:", limit=10
        ) == []
