"""Pytest fixtures for the voting service tests.

Unit tests run against the in-memory ballot store and a recording mail
transport, so no database or SMTP server is needed. PostgreSQL tests live
under tests/integration and are skipped when no database is reachable.
"""

import smtplib
import threading
from datetime import datetime, timedelta
from typing import Generator, List

import pytest
from fastapi.testclient import TestClient

from voting_api.config import Settings
from voting_api.main import create_app
from voting_api.memory_store import MemoryBallotStore
from voting_api.notifier import NotificationDispatcher, Notifier
from voting_api.registry import SessionRegistry
from voting_api.sessions import VoteSessionManager


class FakeClock:
    """Manually advanced clock for staleness checks."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 10, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class RecordingTransport:
    """Mail transport that keeps messages instead of sending them.

    Recipients listed in ``fail_for`` raise an SMTP error on every attempt.
    """

    def __init__(self):
        self.messages = []
        self.attempts = 0
        self.fail_for = set()
        self._lock = threading.Lock()

    def send(self, message):
        with self._lock:
            self.attempts += 1
            if message["To"] in self.fail_for:
                raise smtplib.SMTPRecipientsRefused({message["To"]: (550, b"mailbox unavailable")})
            self.messages.append(message)

    def recipients(self, subject: str = None) -> List[str]:
        with self._lock:
            return [
                m["To"] for m in self.messages
                if subject is None or m["Subject"] == subject
            ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryBallotStore:
    return MemoryBallotStore(clock=clock)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def dispatcher(transport: RecordingTransport) -> Generator[NotificationDispatcher, None, None]:
    """Dispatcher with no retry delay so failing sends finish quickly."""
    notifier = Notifier(transport, sender="noreply@example.com", base_url="http://localhost:4000")
    dispatcher = NotificationDispatcher(notifier, max_workers=4, max_retries=1, retry_delay=0)
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture
def manager(store, registry, dispatcher) -> VoteSessionManager:
    return VoteSessionManager(store, registry, dispatcher, delete_max_workers=2)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        STORAGE_BACKEND="memory",
        NOTIFIER_MAX_RETRIES=0,
        NOTIFIER_RETRY_DELAY=0,
        REMINDER_INTERVAL_SECONDS=0.05
    )


@pytest.fixture
def client(test_settings, store, transport) -> Generator[TestClient, None, None]:
    """HTTP client against an app wired to the in-memory store.

    The reminder loop is not started; reminder tests drive it directly.
    """
    app = create_app(
        settings=test_settings,
        store=store,
        transport=transport,
        start_reminders=False
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def test_app_services(client):
    """Collaborators wired into the running test app."""
    return client.app.state.services


@pytest.fixture
def sample_vote() -> dict:
    """Vote creation payload with repeated options and users."""
    return {
        "voter_id": "v1",
        "options": ["red", "blue", "red"],
        "user_list": ["a@x.com", "b@x.com", "a@x.com"]
    }


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring a running PostgreSQL database"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
