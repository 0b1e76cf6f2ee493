"""In-process ballot store, used for local runs and tests."""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .sessions import BallotNotFound, DuplicateSession, VoteSession

logger = logging.getLogger(__name__)


@dataclass
class Ballot:
    user_id: str
    created_at: datetime
    chosen_option: Optional[str] = None
    reminder_sent: bool = False


class MemoryBallotStore:
    """
    Thread-safe dictionary-backed ballot store.

    A single lock serializes every operation, which makes
    ``set_choice_if_absent`` a true compare-and-set.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self.clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, VoteSession] = {}
        self._ballots: Dict[str, Dict[str, Ballot]] = {}

    def initialize(self):
        logger.info("In-memory ballot store ready")

    def close(self):
        pass

    def check_health(self) -> bool:
        return True

    # Session metadata

    def create_session(self, session_id: str, options: List[str], users: List[str]) -> VoteSession:
        with self._lock:
            if session_id in self._sessions:
                raise DuplicateSession(f"Vote {session_id} already exists")
            session = VoteSession(
                session_id=session_id,
                options=list(options),
                users=list(users),
                created_at=self.clock()
            )
            self._sessions[session_id] = session
            return session

    def get_session(self, session_id: str) -> Optional[VoteSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def list_sessions(self, include_closed: bool = True) -> List[str]:
        with self._lock:
            return [
                s.session_id for s in self._sessions.values()
                if include_closed or not s.closed
            ]

    def mark_closed(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.closed = True
            return True

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            self._ballots.pop(session_id, None)

    def delete_all_sessions(self) -> int:
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
            return count

    # Ballots

    def provision(self, session_id: str, users: List[str]) -> int:
        now = self.clock()
        with self._lock:
            ballots = self._ballots.setdefault(session_id, {})
            for user in users:
                ballots.setdefault(user, Ballot(user_id=user, created_at=now))
            return len(users)

    def has_ballots(self, session_id: str) -> bool:
        with self._lock:
            return bool(self._ballots.get(session_id))

    def _ballot(self, session_id: str, user: str) -> Ballot:
        ballot = self._ballots.get(session_id, {}).get(user)
        if ballot is None:
            raise BallotNotFound(f"No record found for {user} in vote {session_id}")
        return ballot

    def get_choice(self, session_id: str, user: str) -> Optional[str]:
        with self._lock:
            return self._ballot(session_id, user).chosen_option

    def set_choice_if_absent(self, session_id: str, user: str, option: str) -> bool:
        with self._lock:
            ballot = self._ballots.get(session_id, {}).get(user)
            if ballot is None or ballot.chosen_option is not None:
                return False
            ballot.chosen_option = option
            return True

    def scan_unvoted_unreminded(self, session_id: str, min_age_seconds: float) -> List[str]:
        cutoff = self.clock() - timedelta(seconds=min_age_seconds)
        with self._lock:
            return [
                b.user_id for b in self._ballots.get(session_id, {}).values()
                if b.chosen_option is None and not b.reminder_sent and b.created_at < cutoff
            ]

    def mark_reminded(self, session_id: str, user: str) -> None:
        with self._lock:
            self._ballot(session_id, user).reminder_sent = True

    def aggregate(self, session_id: str) -> Dict[str, int]:
        results: Dict[str, int] = {}
        with self._lock:
            for ballot in self._ballots.get(session_id, {}).values():
                if ballot.chosen_option is not None:
                    results[ballot.chosen_option] = results.get(ballot.chosen_option, 0) + 1
        return results

    def drop(self, session_id: str) -> None:
        with self._lock:
            self._ballots.pop(session_id, None)
