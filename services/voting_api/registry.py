"""Process-wide registry of active vote sessions."""
import logging
import threading
from typing import Iterable, List

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Ordered collection of active session ids shared by request handlers
    and the reminder loop.

    All access goes through the lock. Callers that need to iterate take a
    snapshot, so concurrent add/remove never disturbs an iteration in
    progress.
    """

    def __init__(self, session_ids: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._session_ids: List[str] = list(session_ids)

    def add(self, session_id: str) -> None:
        with self._lock:
            self._session_ids.append(session_id)
        logger.debug(f"Registered session {session_id}")

    def remove_one(self, session_id: str) -> bool:
        """
        Remove every occurrence of a session id.

        Returns:
            True if at least one entry was removed
        """
        with self._lock:
            before = len(self._session_ids)
            self._session_ids = [s for s in self._session_ids if s != session_id]
            removed = len(self._session_ids) != before
        if removed:
            logger.debug(f"Unregistered session {session_id}")
        return removed

    def remove_all(self) -> int:
        with self._lock:
            count = len(self._session_ids)
            self._session_ids = []
        logger.info(f"Cleared session registry ({count} entries)")
        return count

    def snapshot(self) -> List[str]:
        """Return a point-in-time copy of the registered ids."""
        with self._lock:
            return list(self._session_ids)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._session_ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._session_ids)
