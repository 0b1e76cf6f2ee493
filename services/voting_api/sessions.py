"""
Vote session lifecycle: creation, ballot casting, tallying and teardown.

The manager is the only component that mutates the session registry. It
talks to a ballot store (PostgreSQL or in-memory) and hands outgoing mail
to the notification dispatcher without waiting for delivery.
"""
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol

from prometheus_client import Counter

from .notifier import NotificationDispatcher
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

sessions_created = Counter(
    "vote_sessions_created_total",
    "Total number of vote sessions created"
)
ballots_cast = Counter(
    "ballots_cast_total",
    "Total number of cast attempts by outcome",
    ["result"]
)


class VotingError(Exception):
    """Base class for domain errors surfaced to API callers."""
    status_code = 400


class InvalidInput(VotingError):
    status_code = 400


class InvalidOption(InvalidInput):
    status_code = 400


class SessionNotFound(VotingError):
    status_code = 404


class BallotNotFound(SessionNotFound):
    status_code = 404


class DuplicateSession(VotingError):
    status_code = 409


class SessionClosed(VotingError):
    status_code = 409


class CastResult(str, Enum):
    """Outcome of a cast attempt."""
    RECORDED = "recorded"
    ALREADY_VOTED = "already_voted"


@dataclass
class VoteSession:
    """
    One voting event.

    Attributes:
        session_id: Caller supplied identifier
        options: Deduplicated option labels in first-occurrence order
        users: Deduplicated eligible user identifiers
        closed: Whether the session stopped accepting ballots
        created_at: When the session was stored
    """
    session_id: str
    options: List[str]
    users: List[str]
    closed: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


class BallotStore(Protocol):
    def initialize(self) -> None: ...
    def close(self) -> None: ...
    def check_health(self) -> bool: ...
    def create_session(self, session_id: str, options: List[str], users: List[str]) -> VoteSession: ...
    def get_session(self, session_id: str) -> Optional[VoteSession]: ...
    def list_sessions(self, include_closed: bool = True) -> List[str]: ...
    def mark_closed(self, session_id: str) -> bool: ...
    def delete_session(self, session_id: str) -> None: ...
    def delete_all_sessions(self) -> int: ...
    def provision(self, session_id: str, users: List[str]) -> int: ...
    def has_ballots(self, session_id: str) -> bool: ...
    def get_choice(self, session_id: str, user: str) -> Optional[str]: ...
    def set_choice_if_absent(self, session_id: str, user: str, option: str) -> bool: ...
    def scan_unvoted_unreminded(self, session_id: str, min_age_seconds: float) -> List[str]: ...
    def mark_reminded(self, session_id: str, user: str) -> None: ...
    def aggregate(self, session_id: str) -> Dict[str, int]: ...
    def drop(self, session_id: str) -> None: ...


def remove_duplicates(values: Iterable[str]) -> List[str]:
    """Drop repeated values, keeping the first occurrence of each."""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def validate_session_id(session_id: str) -> str:
    if not session_id or not SESSION_ID_PATTERN.match(session_id):
        raise InvalidInput(
            "Vote id must be 1-64 characters of letters, digits, '_' or '-'"
        )
    return session_id


class VoteSessionManager:
    """Coordinates the ballot store, session registry and notifications."""

    def __init__(
        self,
        store: BallotStore,
        registry: SessionRegistry,
        dispatcher: NotificationDispatcher,
        delete_max_workers: int = 4
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.delete_max_workers = delete_max_workers
        # Serializes create, close and delete-all so the registry tracks the store.
        self._lock = threading.Lock()

    def load_active_sessions(self) -> List[str]:
        """Register every stored session that has not been closed."""
        session_ids = self.store.list_sessions(include_closed=False)
        for session_id in session_ids:
            if session_id not in self.registry:
                self.registry.add(session_id)
        logger.info(
            f"Existing voting systems before application starts: {', '.join(session_ids) or '-'}"
        )
        return session_ids

    def create_session(
        self,
        session_id: str,
        options: Iterable[str],
        users: Iterable[str]
    ) -> VoteSession:
        """
        Create a session, provision its ballots and invite every user.

        Raises:
            InvalidInput: Malformed id or empty option/user list
            DuplicateSession: The id is already in use
        """
        validate_session_id(session_id)
        options = remove_duplicates(options)
        users = remove_duplicates(users)
        logger.info(f"Creating vote {session_id}: options={options}, users={users}")

        if not options:
            raise InvalidInput("At least one option is required")
        if not users:
            raise InvalidInput("At least one user is required")

        with self._lock:
            if session_id in self.registry:
                raise DuplicateSession(f"Vote {session_id} already exists")

            session = self.store.create_session(session_id, options, users)
            try:
                provisioned = self.store.provision(session_id, users)
            except Exception as e:
                logger.error(f"Failed to provision ballots for {session_id}, removing vote: {e}")
                self.store.delete_session(session_id)
                raise
            self.registry.add(session_id)
        sessions_created.inc()
        logger.info(f"Vote {session_id} created with {provisioned} ballots")

        for user in users:
            self.dispatcher.submit(user, session_id, options)

        return session

    def cast_vote(self, session_id: str, user: str, option: str) -> CastResult:
        """
        Record a user's choice once.

        Returns:
            CastResult.RECORDED if this call stored the choice,
            CastResult.ALREADY_VOTED if a choice was already present

        Raises:
            SessionNotFound: Unknown session
            BallotNotFound: User is not eligible in this session
            SessionClosed: Session no longer accepts ballots
            InvalidOption: Option is not one of the session's options
        """
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"No record found for vote {session_id}")
        if session.closed:
            raise SessionClosed(f"Vote {session_id} is closed")
        # Raises BallotNotFound for users outside the session.
        current = self.store.get_choice(session_id, user)
        if option not in session.options:
            raise InvalidOption(
                f"Option {option!r} is not one of: {', '.join(session.options)}"
            )

        if current is not None:
            ballots_cast.labels(result=CastResult.ALREADY_VOTED.value).inc()
            logger.info(f"Repeat vote from {user} in {session_id} ignored")
            return CastResult.ALREADY_VOTED

        if not self.store.set_choice_if_absent(session_id, user, option):
            # Another request won between the read and the write.
            ballots_cast.labels(result=CastResult.ALREADY_VOTED.value).inc()
            logger.info(f"Concurrent vote from {user} in {session_id} lost the race")
            return CastResult.ALREADY_VOTED

        ballots_cast.labels(result=CastResult.RECORDED.value).inc()
        logger.info(f"Vote recorded: vote_id={session_id}, user={user}, option={option}")
        return CastResult.RECORDED

    def tally(self, session_id: str) -> Dict[str, int]:
        """
        Count cast ballots per option.

        Options nobody picked are left out of the result.

        Raises:
            SessionNotFound: No ballots exist for the session
        """
        if not self.store.has_ballots(session_id):
            raise SessionNotFound(f"No record found for vote {session_id}")
        return self.store.aggregate(session_id)

    def close_session(self, session_id: str) -> None:
        """Stop accepting ballots and reminders for a session."""
        with self._lock:
            if not self.store.mark_closed(session_id):
                raise SessionNotFound(f"No record found for vote {session_id}")
            self.registry.remove_one(session_id)
        logger.info(f"Vote {session_id} closed")

    def delete_all_sessions(self) -> int:
        """
        Remove every session, its ballots and its registry entry.

        Ballot drops run in parallel and a failed drop is only logged.

        Returns:
            Number of session metadata rows deleted
        """
        with self._lock:
            session_ids = remove_duplicates(
                self.registry.snapshot() + self.store.list_sessions(include_closed=True)
            )

            with ThreadPoolExecutor(max_workers=self.delete_max_workers) as executor:
                futures = {
                    executor.submit(self.store.drop, session_id): session_id
                    for session_id in session_ids
                }
            for future, session_id in futures.items():
                error = future.exception()
                if error is not None:
                    logger.error(f"Failed to drop ballots for {session_id}: {error}")

            self.registry.remove_all()
            deleted = self.store.delete_all_sessions()
        logger.info(f"Deleted {deleted} vote sessions")
        return deleted
