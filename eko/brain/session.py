"""Per-user conversation sessions with idle expiry.

Maps a user id to the agent runtime's session id so the next message from the
same person resumes the same conversation. A background sweeper drops
sessions idle for longer than the timeout.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from config import SESSION_SWEEP_INTERVAL, SESSION_TIMEOUT_SECONDS

logger = logging.getLogger("eko.session")


@dataclass
class ConversationSession:
    user_id: str
    external_session_id: Optional[str] = None
    last_activity_at: float = 0.0


class SessionStore:
    """Thread-safe user_id -> ConversationSession map."""

    def __init__(
        self,
        timeout: float = SESSION_TIMEOUT_SECONDS,
        on_evict: Optional[Callable[[ConversationSession], None]] = None,
    ):
        self._timeout = timeout
        self._on_evict = on_evict
        self._sessions: dict[str, ConversationSession] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, user_id: str) -> Optional[ConversationSession]:
        with self._lock:
            return self._sessions.get(user_id)

    def set_session_id(self, user_id: str, session_id: str) -> ConversationSession:
        """Create or update the user's session with a (new) runtime session id."""
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = ConversationSession(user_id=user_id)
                self._sessions[user_id] = session
            session.external_session_id = session_id
            session.last_activity_at = time.time()
            return session

    def touch(self, user_id: str) -> None:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                session.last_activity_at = time.time()

    def evict(self, user_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None:
            return False
        self._notify(session)
        return True

    def clear(self) -> int:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._notify(session)
        return len(sessions)

    def sweep(self, now: Optional[float] = None) -> list[str]:
        """Drop sessions idle longer than the timeout. Returns evicted user ids."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [s for s in self._sessions.values() if now - s.last_activity_at > self._timeout]
            for s in expired:
                del self._sessions[s.user_id]
        for s in expired:
            logger.info("Cleaning up inactive session for %s", s.user_id)
            self._notify(s)
        return [s.user_id for s in expired]

    def _notify(self, session: ConversationSession) -> None:
        if self._on_evict is None:
            return
        try:
            self._on_evict(session)
        except Exception as e:
            logger.warning("Session evict callback failed for %s: %s", session.user_id, e)

    # ── Sweeper ─────────────────────────────────────────────────────

    def start_sweeper(self, interval: float = SESSION_SWEEP_INTERVAL) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._sweep_loop, args=(interval,), daemon=True, name="session-sweeper")
        self._thread.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error("Session sweep error: %s", e, exc_info=True)
