"""Background loop that reminds users who have not voted yet."""
import logging
import threading
from enum import Enum
from typing import Optional

from prometheus_client import Counter

from .notifier import NotificationDispatcher
from .registry import SessionRegistry
from .sessions import BallotStore

logger = logging.getLogger(__name__)

reminders_dispatched = Counter(
    "reminders_dispatched_total",
    "Total number of reminder notifications dispatched"
)


class ReminderState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"


class ReminderLoop:
    """
    Every ``interval`` seconds, walk a snapshot of the registered sessions
    and send one reminder to each user whose ballot is still empty, has not
    been reminded, and is older than ``staleness`` seconds.
    """

    def __init__(
        self,
        store: BallotStore,
        registry: SessionRegistry,
        dispatcher: NotificationDispatcher,
        interval: float = 10.0,
        staleness: float = 60.0
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.interval = interval
        self.staleness = staleness
        self.state = ReminderState.IDLE
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="reminder-loop", daemon=True)
        self._thread.start()
        logger.info(
            f"Reminder loop started (interval={self.interval}s, staleness={self.staleness}s)"
        )

    def stop(self, timeout: Optional[float] = None):
        """Signal the loop to exit and wait for the current pass to finish."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reminder loop stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in reminder loop: {e}", exc_info=True)

    def run_once(self) -> int:
        """
        Make one pass over the registry.

        Returns:
            Number of reminders dispatched
        """
        self.state = ReminderState.SCANNING
        dispatched = 0
        try:
            for session_id in self.registry.snapshot():
                if self._stop_event.is_set():
                    break
                dispatched += self._remind_session(session_id)
        finally:
            self.state = ReminderState.IDLE

        if dispatched:
            logger.info(f"Dispatched {dispatched} reminders")
        return dispatched

    def _remind_session(self, session_id: str) -> int:
        logger.debug(f"Checking for user voting status in {session_id}")
        try:
            users = self.store.scan_unvoted_unreminded(session_id, self.staleness)
        except Exception as e:
            logger.error(f"Error querying pending voters for {session_id}: {e}")
            return 0

        sent = 0
        for user in users:
            self.dispatcher.submit(user, session_id, [])
            try:
                self.store.mark_reminded(session_id, user)
            except Exception as e:
                logger.error(f"Can't update reminder flag for {user} in {session_id}: {e}")
                continue
            reminders_dispatched.inc()
            sent += 1
        return sent
