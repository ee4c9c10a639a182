"""Per-session mutual exclusion.

Every mutating queue operation runs while holding its session's lock, so
operations on one session are serialised while different sessions proceed in
parallel.  Acquisition is bounded: a caller that cannot get the lock within
the timeout gets a retryable ``SessionBusyError`` instead of blocking.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import config
from errors import SessionBusyError

logger = logging.getLogger(__name__)


class SessionLocks:
    def __init__(self, timeout: float = config.SESSION_LOCK_TIMEOUT) -> None:
        self.timeout = timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, session_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        lock = self._lock_for(session_id)
        wait = self.timeout if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            logger.warning("Timed out after %.1fs waiting for session %s", wait, session_id)
            raise SessionBusyError(
                "Session is busy with another queue operation, please retry",
                {"sessionId": session_id},
            )
        try:
            yield
        finally:
            lock.release()

    def forget(self, session_id: str) -> None:
        """Drop the lock of a finished session (no-op while it is held)."""
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is not None and not lock.locked():
                del self._locks[session_id]
