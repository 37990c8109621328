# bangbuy/services/typing_presence.py
"""
Ephemeral "is typing" presence per conversation and user.

Entries live only in memory and expire by TTL; nothing is persisted and a
restart simply clears every indicator. Readers check expiry lazily, and an
optional sweeper thread removes expired entries and announces TYPING_STOP so
a client that crashed mid-typing is cleared within one TTL window.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from ..core.config import settings
from .messaging.broadcaster import RealtimeBroadcaster
from .messaging.events import build_typing_event

logger = logging.getLogger(__name__)

TypingKey = Tuple[str, str]


class TypingPresence:
    """
    TTL map of (conversation_id, user_id) -> expiry, guarded by a lock.

    Args:
        broadcaster: Where TYPING_START / TYPING_STOP events are published
        ttl_seconds: Lifetime of one typing signal
        clock: Monotonic clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        broadcaster: Optional[RealtimeBroadcaster] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: Optional[float] = None,
    ) -> None:
        self.broadcaster = broadcaster
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.typing_ttl_seconds
        self.sweep_interval = (
            sweep_interval if sweep_interval is not None else settings.typing_sweep_interval_seconds
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[TypingKey, float] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        key = (conversation_id, user_id)
        expires_at: Optional[datetime] = None
        with self._lock:
            if is_typing:
                self._entries[key] = self._clock() + self.ttl_seconds
                expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.ttl_seconds)
            else:
                self._entries.pop(key, None)
        self._publish(conversation_id, user_id, is_typing, expires_at)

    def is_typing(self, conversation_id: str, user_id: str) -> bool:
        with self._lock:
            expiry = self._entries.get((conversation_id, user_id))
            return expiry is not None and expiry > self._clock()

    def typing_users(self, conversation_id: str) -> List[str]:
        now = self._clock()
        with self._lock:
            return sorted(
                user_id
                for (conv_id, user_id), expiry in self._entries.items()
                if conv_id == conversation_id and expiry > now
            )

    def sweep(self) -> int:
        """Remove expired entries and announce them as stopped. Returns how many expired."""
        now = self._clock()
        with self._lock:
            expired = [key for key, expiry in self._entries.items() if expiry <= now]
            for key in expired:
                del self._entries[key]
        for conversation_id, user_id in expired:
            self._publish(conversation_id, user_id, False, None)
        if expired:
            logger.debug(f"[TYPING] Swept {len(expired)} expired typing signal(s)")
        return len(expired)

    def _publish(
        self,
        conversation_id: str,
        user_id: str,
        is_typing: bool,
        expires_at: Optional[datetime],
    ) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.publish(
            conversation_id, build_typing_event(conversation_id, user_id, is_typing, expires_at)
        )

    def start(self) -> None:
        """Start the background sweeper thread (no-op when already running)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._sweep_loop, name="typing-sweeper", daemon=True)
        self._thread.start()
        logger.info("[TYPING] Sweeper started")

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("[TYPING] Sweep failed")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
