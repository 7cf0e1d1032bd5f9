"""Terminal sessions: the remembered working directory per server.

Sessions are in-memory only and vanish on restart. Nothing outside the
command engine depends on them; file operations always work from the
server root.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """Working directory for one server's command stream."""

    cwd: str

    def to_dict(self) -> dict:
        return {"cwd": self.cwd}


class SessionRegistry:
    """Thread-safe map of server id -> Session with per-server locks.

    The registry lock only guards the dicts themselves. ``lock(server_id)``
    hands out a per-server lock so a caller can run a whole
    read-execute-persist cycle without racing another request for the same
    server, while requests for other servers proceed in parallel. A
    per-server lock only exists while someone holds or waits for it.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._lock_users: dict[str, int] = {}
        self._registry_lock = threading.Lock()

    def _acquire_entry(self, server_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(server_id)
            if lock is None:
                lock = self._locks[server_id] = threading.RLock()
            self._lock_users[server_id] = self._lock_users.get(server_id, 0) + 1
            return lock

    def _release_entry(self, server_id: str) -> None:
        with self._registry_lock:
            users = self._lock_users[server_id] - 1
            if users:
                self._lock_users[server_id] = users
            else:
                del self._lock_users[server_id]
                del self._locks[server_id]

    @contextmanager
    def lock(self, server_id: str) -> Iterator[None]:
        server_lock = self._acquire_entry(server_id)
        try:
            with server_lock:
                yield
        finally:
            self._release_entry(server_id)

    def get(self, server_id: str, default_cwd: str) -> Session:
        """Return the stored session, or a fresh one rooted at ``default_cwd``."""
        with self._registry_lock:
            return self._sessions.get(server_id) or Session(cwd=default_cwd)

    def put(self, server_id: str, session: Session) -> None:
        with self._registry_lock:
            self._sessions[server_id] = session

    def evict(self, server_id: str) -> bool:
        """Forget the session for ``server_id``; waits for an in-flight command."""
        with self.lock(server_id):
            with self._registry_lock:
                removed = self._sessions.pop(server_id, None) is not None
        if removed:
            logger.info("Evicted terminal session for %s", server_id)
        return removed

    def __contains__(self, server_id: str) -> bool:
        with self._registry_lock:
            return server_id in self._sessions

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._sessions)
