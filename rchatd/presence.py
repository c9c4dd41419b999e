from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from .constants import STATUS_OFFLINE, STATUS_ONLINE


@dataclass(frozen=True)
class PresenceTransition:
    user_id: str
    online: bool

    @property
    def status(self) -> str:
        return STATUS_ONLINE if self.online else STATUS_OFFLINE


class PresenceRegistry:
    """
    Tracks which connections each user currently holds.

    Writers for the same user are linearized by a per-user lock, so a fast
    disconnect/reconnect cannot report a transition twice. Each user's session
    set is an immutable frozenset swapped in one assignment, so readers never
    take a lock and never see a half-applied change.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("rchatd.presence")
        self._sessions: dict[str, frozenset[str]] = {}
        self._owner: dict[str, str] = {}  # connection id -> user id
        self._user_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user_id] = lock
            return lock

    def add_session(self, user_id: str, connection_id: str) -> PresenceTransition | None:
        """Register a session; returns offline->online only for the first one."""
        with self._lock_for(user_id):
            current = self._sessions.get(user_id, frozenset())
            if connection_id in current:
                return None
            self._owner[connection_id] = user_id
            self._sessions[user_id] = current | {connection_id}

        if current:
            return None
        self.log.debug("Presence online user=%s conn=%s", user_id, connection_id)
        return PresenceTransition(user_id, True)

    def remove_session(self, connection_id: str) -> PresenceTransition | None:
        """Drop a session; returns online->offline only when it was the last one."""
        user_id = self._owner.get(connection_id)
        if user_id is None:
            return None

        with self._lock_for(user_id):
            if self._owner.get(connection_id) != user_id:
                return None
            self._owner.pop(connection_id, None)
            remaining = self._sessions.get(user_id, frozenset()) - {connection_id}
            if remaining:
                self._sessions[user_id] = remaining
                return None
            self._sessions.pop(user_id, None)

        self.log.debug("Presence offline user=%s conn=%s", user_id, connection_id)
        return PresenceTransition(user_id, False)

    def is_online(self, user_id: str) -> bool:
        return bool(self._sessions.get(user_id))

    def active_sessions_of(self, user_id: str) -> frozenset[str]:
        return self._sessions.get(user_id, frozenset())

    def user_of(self, connection_id: str) -> str | None:
        return self._owner.get(connection_id)

    def online_users(self) -> list[str]:
        return sorted(u for u, s in list(self._sessions.items()) if s)

    def get_stats(self) -> dict[str, Any]:
        snapshot = list(self._sessions.values())
        return {
            "users_online": sum(1 for s in snapshot if s),
            "sessions": sum(len(s) for s in snapshot),
        }
