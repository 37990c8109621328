# bangbuy/services/messaging/delivery.py
"""
Client-facing delivery state machine for outgoing messages.

Each submitted message is tracked by a caller-generated correlation id
(``client_id``) through PENDING -> SENT or PENDING -> FAILED. A FAILED entry
keeps its ``client_id`` so ``resend`` re-enters the send path with it.

This is a client SDK helper for in-process Python callers, such as workers
sending on a user's behalf. HTTP clients keep the same state machine on
their side and reuse ``client_id`` when they POST a retry.
``DeliveryTracker.for_message_service`` binds the tracker to
``MessageService.send``.

Retried sends are new messages as far as storage is concerned: if the
original write succeeded but its acknowledgment was lost, a resend produces
a visible duplicate. ``client_id`` is echoed on both rows so clients can
collapse them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
import logging
import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import ulid

from ...core.exceptions import NotFoundException, ValidationException

if TYPE_CHECKING:
    from ..message_service import MessageService

logger = logging.getLogger(__name__)


class DeliveryState(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


@dataclass
class OutgoingMessage:
    """Snapshot of one tracked outgoing message."""

    client_id: str
    conversation_id: str
    sender_id: str
    content: str
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    message_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# send_fn(conversation_id, sender_id, content, client_id) -> persisted message
SendFunction = Callable[[str, str, str, str], Any]


class DeliveryTracker:
    """
    Thread-safe tracker driving the PENDING/SENT/FAILED lifecycle.

    ``send_fn`` is called outside the lock; any exception it raises moves the
    entry to FAILED and is not re-raised.
    """

    def __init__(self, send_fn: SendFunction) -> None:
        self._send_fn = send_fn
        self._lock = threading.Lock()
        self._entries: Dict[str, OutgoingMessage] = {}

    @classmethod
    def for_message_service(cls, message_service: "MessageService") -> "DeliveryTracker":
        """Track sends made through ``MessageService.send``."""

        def send(conversation_id: str, sender_id: str, content: str, client_id: str) -> Any:
            return message_service.send(conversation_id, sender_id, content, client_id=client_id)

        return cls(send)

    def submit(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        client_id: Optional[str] = None,
    ) -> OutgoingMessage:
        """
        Track and send a new outgoing message.

        Raises:
            ValidationException: If ``client_id`` is already tracked
        """
        client_id = client_id or str(ulid.ULID())
        with self._lock:
            if client_id in self._entries:
                raise ValidationException(
                    f"Message {client_id} is already tracked; use resend",
                    code="DUPLICATE_CLIENT_ID",
                )
            self._entries[client_id] = OutgoingMessage(
                client_id=client_id,
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
            )
        return self._attempt(client_id)

    def resend(self, client_id: str) -> OutgoingMessage:
        """
        Retry a FAILED message under the same correlation id.

        Raises:
            NotFoundException: If the id is unknown
            ValidationException: If the message is not in FAILED state
        """
        with self._lock:
            entry = self._entries.get(client_id)
            if entry is None:
                raise NotFoundException(f"Unknown message {client_id}", code="UNKNOWN_CLIENT_ID")
            if entry.state != DeliveryState.FAILED:
                raise ValidationException(
                    f"Only failed messages can be resent (state={entry.state.value})",
                    code="INVALID_DELIVERY_STATE",
                )
            entry.state = DeliveryState.PENDING
            entry.error = None
            entry.updated_at = datetime.now(timezone.utc)
        return self._attempt(client_id)

    def _attempt(self, client_id: str) -> OutgoingMessage:
        with self._lock:
            entry = self._entries[client_id]
            entry.attempts += 1
            conversation_id, sender_id, content = entry.conversation_id, entry.sender_id, entry.content

        try:
            message = self._send_fn(conversation_id, sender_id, content, client_id)
        except Exception as exc:
            logger.warning(
                "[DELIVERY] Send failed",
                extra={"client_id": client_id, "error": str(exc)},
            )
            with self._lock:
                entry.state = DeliveryState.FAILED
                entry.error = str(exc) or type(exc).__name__
                entry.updated_at = datetime.now(timezone.utc)
                return replace(entry)

        with self._lock:
            entry.state = DeliveryState.SENT
            entry.message_id = getattr(message, "id", None)
            entry.updated_at = datetime.now(timezone.utc)
            return replace(entry)

    def get(self, client_id: str) -> Optional[OutgoingMessage]:
        with self._lock:
            entry = self._entries.get(client_id)
            return replace(entry) if entry else None

    def _in_state(self, state: DeliveryState) -> List[OutgoingMessage]:
        with self._lock:
            return [replace(e) for e in self._entries.values() if e.state == state]

    def pending(self) -> List[OutgoingMessage]:
        return self._in_state(DeliveryState.PENDING)

    def failed(self) -> List[OutgoingMessage]:
        return self._in_state(DeliveryState.FAILED)

    def forget(self, client_id: str) -> None:
        """Stop tracking a message (e.g. once the UI has reconciled it)."""
        with self._lock:
            self._entries.pop(client_id, None)
