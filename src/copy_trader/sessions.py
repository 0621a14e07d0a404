import logging
import threading
import time
from typing import Callable, Optional

from src.copy_trader.config import SESSION_TTL_SECONDS

logger = logging.getLogger(__name__)


class SessionStore:
    """Per-user conversation state, evicted after ttl_seconds of inactivity."""

    def __init__(self, ttl_seconds: float = SESSION_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._sessions: dict[int, dict] = {}
        self._lock = threading.Lock()

    def _evict_locked(self, now: float) -> int:
        expired = [
            uid for uid, s in self._sessions.items()
            if now - s["last_activity"] > self.ttl_seconds
        ]
        for uid in expired:
            del self._sessions[uid]
        return len(expired)

    def get(self, user_id: int) -> Optional[dict]:
        with self._lock:
            now = self.clock()
            self._evict_locked(now)
            session = self._sessions.get(user_id)
            if session is None:
                return None
            session["last_activity"] = now
            return {"state": session["state"], "data": dict(session["data"])}

    def set(self, user_id: int, state: str = None, **data) -> None:
        with self._lock:
            now = self.clock()
            self._evict_locked(now)
            session = self._sessions.setdefault(
                user_id, {"state": None, "data": {}, "last_activity": now}
            )
            if state is not None:
                session["state"] = state
            session["data"].update(data)
            session["last_activity"] = now

    def clear(self, user_id: int) -> None:
        with self._lock:
            self._sessions.pop(user_id, None)

    def purge_expired(self) -> int:
        with self._lock:
            removed = self._evict_locked(self.clock())
        if removed:
            logger.info(f"Evicted {removed} idle sessions")
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
