"""
In-memory session store.

Maps an opaque session id to the upstream credentials captured at login.
Sessions are never persisted and never refreshed in place: a new login
creates a new session. Expired sessions are removed lazily on lookup and
by a background sweep every 15 minutes.
"""
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from background import PeriodicTask
from config import get_settings

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 6 * 60 * 60
SESSION_SWEEP_INTERVAL_SECONDS = 15 * 60
SESSION_ID_BYTES = 24  # 192 bits


@dataclass(frozen=True)
class Credentials:
    """Upstream Xtream credentials bound to a session."""
    origin: str
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class Session:
    id: str
    credentials: Credentials
    expires_at: float


class SessionStore:
    """Thread-safe map of session id to Session with expiry."""

    def __init__(
        self,
        ttl: float = SESSION_TTL_SECONDS,
        sweep_interval: float = SESSION_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._ttl = ttl
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._sweeper = PeriodicTask("session-sweep", sweep_interval, self.sweep)

    def create(self, credentials: Credentials) -> tuple[str, float]:
        """Store credentials under a fresh random id and return (id, expires_at)."""
        expires_at = self._clock() + self._ttl
        with self._lock:
            sid = secrets.token_hex(SESSION_ID_BYTES)
            while sid in self._sessions:
                sid = secrets.token_hex(SESSION_ID_BYTES)
            self._sessions[sid] = Session(id=sid, credentials=credentials, expires_at=expires_at)
        logger.debug("[SESSION] Created session for %s (active=%d)", credentials.username, len(self))
        return sid, expires_at

    def get(self, sid: Optional[str]) -> Optional[Session]:
        """Return the live session for `sid`, dropping it if it has expired."""
        if not sid:
            return None
        with self._lock:
            session = self._sessions.get(sid)
            if session is None:
                return None
            if session.expires_at <= self._clock():
                del self._sessions[sid]
                return None
            return session

    def delete(self, sid: Optional[str]) -> None:
        if not sid:
            return
        with self._lock:
            self._sessions.pop(sid, None)

    def sweep(self) -> int:
        """Remove every expired session. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.expires_at <= now]
            for sid in expired:
                del self._sessions[sid]
            remaining = len(self._sessions)
        if expired:
            logger.info(
                "[SESSION] Cleanup removed %d expired session(s). Active: %d",
                len(expired), remaining,
            )
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    async def start(self) -> None:
        await self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()

    @property
    def sweeper(self) -> PeriodicTask:
        return self._sweeper


# Singleton instance
_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    """Get the process-wide session store, creating it on first use."""
    global _store
    if _store is None:
        settings = get_settings()
        _store = SessionStore(
            ttl=settings.session_ttl,
            sweep_interval=settings.session_sweep_interval,
        )
    return _store


def reset_session_store() -> None:
    """Drop the singleton (tests and shutdown)."""
    global _store
    _store = None
