"""
Shared pytest fixtures for the BangBuy messaging core.

Every test gets its own file-backed SQLite database under ``tmp_path`` so that
worker threads in concurrency tests can open their own sessions against the
same data. No test can reach the Resend API: ``resend.Emails.send`` is patched
for the whole session.
"""

import os

os.environ.setdefault("CI", "1")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("IS_TESTING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EMAIL_PROVIDER", "console")

import threading  # noqa: E402
import time  # noqa: E402
from typing import Callable, Iterator, List, Optional  # noqa: E402

from fastapi.testclient import TestClient  # noqa: E402
import pytest  # noqa: E402
import resend  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
import ulid  # noqa: E402

from bangbuy import models  # noqa: E402,F401
from bangbuy.core.config import settings  # noqa: E402
from bangbuy.database import Base, build_engine, get_db  # noqa: E402
from bangbuy.models.conversation import Conversation  # noqa: E402
from bangbuy.models.user import UserProfile  # noqa: E402
from bangbuy.services.email import EmailMessage, EmailProvider, EmailService  # noqa: E402
from bangbuy.services.messaging.broadcaster import RealtimeBroadcaster  # noqa: E402

_AUTO = object()


class FakeEmailProvider(EmailProvider):
    """
    In-memory provider with controllable failure injection.

    ``fail_next(exc, times)`` raises ``exc`` for the next ``times`` sends;
    ``fail_always(exc)`` raises it until ``recover()`` is called.
    """

    name = "fake"

    def __init__(self) -> None:
        self.sent: List[EmailMessage] = []
        self.attempts = 0
        self.delay = 0.0
        self._queued: List[Exception] = []
        self._always: Optional[Exception] = None
        self._lock = threading.Lock()

    def fail_next(self, exc: Exception, times: int = 1) -> None:
        with self._lock:
            self._queued.extend([exc] * times)

    def fail_always(self, exc: Exception) -> None:
        self._always = exc

    def recover(self) -> None:
        with self._lock:
            self._queued.clear()
            self._always = None

    def sent_to(self, address: str) -> List[EmailMessage]:
        with self._lock:
            return [m for m in self.sent if m.to == address]

    def send(self, message: EmailMessage) -> str:
        with self._lock:
            self.attempts += 1
            failure = self._queued.pop(0) if self._queued else self._always
        if self.delay:
            time.sleep(self.delay)
        if failure is not None:
            raise failure
        with self._lock:
            self.sent.append(message)
            return f"fake-{len(self.sent)}"


def _blocked_resend_send(*args, **kwargs):
    raise RuntimeError("Network email dispatch is disabled in tests")


@pytest.fixture(autouse=True)
def block_resend(monkeypatch):
    monkeypatch.setattr(resend.Emails, "send", _blocked_resend_send)


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'bangbuy_test.db'}")
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def make_user(db) -> Callable[..., UserProfile]:
    """Factory for user profiles; email defaults to a unique address."""

    def _make(email=_AUTO, display_name: Optional[str] = None, **preferences) -> UserProfile:
        user_id = str(ulid.ULID())
        profile = UserProfile(
            id=user_id,
            email=f"{user_id.lower()}@example.com" if email is _AUTO else email,
            display_name=display_name,
            **preferences,
        )
        db.add(profile)
        db.commit()
        return profile

    return _make


@pytest.fixture
def user_x(make_user) -> UserProfile:
    return make_user(display_name="Xavier")


@pytest.fixture
def user_y(make_user) -> UserProfile:
    return make_user(display_name="Yolanda")


@pytest.fixture
def make_conversation(db) -> Callable[[str, str], Conversation]:
    from bangbuy.services.conversation_service import ConversationService

    def _make(user_a: str, user_b: str, **source) -> Conversation:
        conversation, _ = ConversationService(db).get_or_create(user_a, user_b, **source)
        return conversation

    return _make


@pytest.fixture
def fake_provider() -> FakeEmailProvider:
    return FakeEmailProvider()


@pytest.fixture
def email_service(fake_provider) -> EmailService:
    return EmailService(provider=fake_provider, timeout_seconds=2.0)


@pytest.fixture
def broadcaster() -> Iterator[RealtimeBroadcaster]:
    instance = RealtimeBroadcaster(queue_size=10)
    yield instance
    instance.close()


@pytest.fixture
def enable_notifications(monkeypatch):
    monkeypatch.setattr(settings, "enable_message_email_notifications", True)


@pytest.fixture
def client(session_factory, email_service) -> Iterator[TestClient]:
    from bangbuy.api.dependencies.services import get_email_service
    from bangbuy.main import app

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_service] = lambda: email_service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[[str], dict]:
    def _headers(user_id: str) -> dict:
        return {"X-User-Id": user_id}

    return _headers
