"""Email notifications for vote invitations and reminders."""
import json
import logging
import smtplib
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from email.message import EmailMessage
from typing import List, Optional, Protocol, Sequence, Set

from prometheus_client import Counter

from .config import Settings

logger = logging.getLogger(__name__)

notifications_sent = Counter(
    "notifications_sent_total",
    "Total number of notification emails handed to the mail transport",
    ["kind", "status"]
)

INVITATION_SUBJECT = "Added to voting system"
REMINDER_SUBJECT = "Reminder to vote"


class NotificationError(Exception):
    """Raised when a notification could not be handed to the mail transport."""
    pass


class MailTransport(Protocol):
    def send(self, message: EmailMessage) -> None:
        ...


class SMTPTransport:
    """SMTP mail transport with STARTTLS and a per-send timeout."""

    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        password: str,
        timeout: float = 10.0
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.password = password
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SMTPTransport":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            sender=settings.EMAIL_SENDER,
            password=settings.EMAIL_PASSWORD,
            timeout=settings.SMTP_TIMEOUT_SECONDS
        )

    def send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            if self.password:
                smtp.login(self.sender, self.password)
            smtp.send_message(message)


class Notifier:
    """Composes invitation and reminder emails for a single recipient."""

    def __init__(self, transport: MailTransport, sender: str, base_url: str):
        self.transport = transport
        self.sender = sender
        self.base_url = base_url.rstrip("/")

    def compose(
        self,
        recipient: str,
        session_id: str,
        options: Sequence[str]
    ) -> EmailMessage:
        """
        Build the message for a recipient.

        A non-empty option list produces an invitation, an empty one a
        reminder.
        """
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient

        if options:
            vote_url = f"{self.base_url}/vote"
            example = json.dumps(
                {"vote_id": session_id, "email": recipient, "option": options[0]}
            )
            message["Subject"] = INVITATION_SUBJECT
            message.set_content(
                "You have been added to the voting system with the following details:\n"
                "\n"
                f"Vote ID: {session_id}\n"
                f"Options: {', '.join(options)}\n"
                "\n"
                "Please cast your vote using the following URL:\n"
                f"{vote_url}\n"
                "\n"
                "Example request:\n"
                f"curl -X POST {vote_url} -H \"Content-Type: application/json\" -d '{example}'\n"
            )
        else:
            message["Subject"] = REMINDER_SUBJECT
            message.set_content(
                f"This is a reminder to vote in the voting system {session_id} "
                "that you have been nominated for.\n"
                f"Please follow the instructions sent in the email with subject "
                f"\"{INVITATION_SUBJECT}\".\n"
            )
        return message

    def notify(self, recipient: str, session_id: str, options: Sequence[str]) -> None:
        """
        Send one invitation or reminder.

        Raises:
            NotificationError: If the transport fails
        """
        message = self.compose(recipient, session_id, options)
        try:
            self.transport.send(message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(
                f"Failed to send {message['Subject']!r} to {recipient}: {e}"
            ) from e
        logger.info(f"Email sent successfully to {recipient} for vote {session_id}")


class NotificationDispatcher:
    """
    Fire-and-forget notification sends on a bounded thread pool.

    Callers never block on delivery and never see a failure; each send is
    retried with exponential backoff and failures end up in the log and the
    ``notifications_sent_total`` counter.
    """

    def __init__(
        self,
        notifier: Notifier,
        max_workers: int = 8,
        max_retries: int = 2,
        retry_delay: float = 1.0
    ):
        self.notifier = notifier
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_workers = max_workers
        self.executor = self._new_executor()
        self._closed = False
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="notifier")

    def start(self) -> None:
        """Replace the worker pool if a previous shutdown closed it."""
        if self._closed:
            self.executor = self._new_executor()
            self._closed = False
            logger.info("Notification dispatcher restarted")

    def submit(
        self,
        recipient: str,
        session_id: str,
        options: Optional[List[str]] = None
    ) -> Future:
        """Queue a notification; the future resolves to True on delivery."""
        future = self.executor.submit(self._deliver, recipient, session_id, list(options or []))
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _discard(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _deliver(self, recipient: str, session_id: str, options: List[str]) -> bool:
        kind = "invitation" if options else "reminder"
        delay = self.retry_delay

        for attempt in range(self.max_retries + 1):
            try:
                self.notifier.notify(recipient, session_id, options)
                notifications_sent.labels(kind=kind, status="success").inc()
                return True
            except NotificationError as e:
                if attempt < self.max_retries:
                    logger.warning(
                        f"{kind} for {recipient} failed (attempt {attempt + 1}), "
                        f"retrying in {delay:.1f}s: {e}"
                    )
                    time.sleep(delay)
                    delay *= 2
                else:
                    logger.error(f"Giving up on {kind} for {recipient}: {e}")
            except Exception as e:
                logger.error(f"Unexpected error sending {kind} to {recipient}: {e}", exc_info=True)
                break

        notifications_sent.labels(kind=kind, status="error").inc()
        return False

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every queued notification to finish.

        Returns:
            True if nothing is left pending
        """
        with self._pending_lock:
            pending = list(self._pending)
        _, not_done = wait_for_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
        self._closed = True
        logger.info("Notification dispatcher shut down")
