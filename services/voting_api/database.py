"""
PostgreSQL ballot store.

Session metadata lives in ``vote_sessions``; every ballot of every session
lives in the single ``ballots`` table keyed by (session_id, user_id).
"""
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional

import psycopg2
import psycopg2.pool
from psycopg2 import errors
from psycopg2.extras import Json, execute_batch

from .config import Settings
from .sessions import BallotNotFound, DuplicateSession, VoteSession

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS vote_sessions (
    session_id VARCHAR(64) PRIMARY KEY,
    options JSONB NOT NULL,
    user_list JSONB NOT NULL,
    closed BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS ballots (
    session_id VARCHAR(64) NOT NULL,
    user_id VARCHAR(255) NOT NULL,
    chosen_option VARCHAR(255),
    reminder_sent BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (session_id, user_id)
);
"""


class StorageError(Exception):
    """Raised when the datastore fails."""
    pass


class PostgresBallotStore:
    """PostgreSQL-backed ballot store on a threaded connection pool."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.connection_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None

    def initialize(self):
        """Create the connection pool and the schema."""
        try:
            self.connection_pool = psycopg2.pool.ThreadedConnectionPool(
                self.settings.DB_POOL_MIN_SIZE,
                self.settings.DB_POOL_MAX_SIZE,
                self.settings.postgres_dsn,
                connect_timeout=10
            )
            logger.info(
                f"Database connection pool created: "
                f"{self.settings.DB_HOST}:{self.settings.DB_PORT}/{self.settings.DB_NAME}"
            )
        except psycopg2.Error as e:
            logger.error(f"Failed to create connection pool: {e}")
            raise StorageError(f"Connection pool creation failed: {e}") from e

        with self._cursor() as cursor:
            cursor.execute(SCHEMA_SQL)
        logger.info("Database schema verified")

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.

        Yields:
            Connection object from the pool.
        """
        connection = None
        try:
            connection = self.connection_pool.getconn()
            yield connection
        finally:
            if connection:
                self.connection_pool.putconn(connection)

    @contextmanager
    def _cursor(self):
        """Cursor inside a transaction; commits on success, rolls back on error."""
        with self.get_connection() as conn:
            try:
                with conn.cursor() as cursor:
                    yield cursor
                conn.commit()
            except psycopg2.Error as e:
                conn.rollback()
                logger.error(f"Database error: {e}")
                raise StorageError(str(e)) from e
            except Exception:
                conn.rollback()
                raise

    def check_health(self) -> bool:
        try:
            with self._cursor() as cursor:
                cursor.execute("SELECT 1")
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self):
        """Close all connections in the pool."""
        if self.connection_pool:
            self.connection_pool.closeall()
            logger.info("Database connection pool closed")

    # Session metadata

    def create_session(self, session_id: str, options: List[str], users: List[str]) -> VoteSession:
        query = """
            INSERT INTO vote_sessions (session_id, options, user_list)
            VALUES (%s, %s, %s)
            RETURNING created_at
        """
        try:
            with self._cursor() as cursor:
                cursor.execute(query, (session_id, Json(options), Json(users)))
                created_at = cursor.fetchone()[0]
        except StorageError as e:
            if isinstance(e.__cause__, errors.UniqueViolation):
                raise DuplicateSession(f"Vote {session_id} already exists") from e
            raise

        return VoteSession(
            session_id=session_id,
            options=list(options),
            users=list(users),
            created_at=created_at
        )

    def get_session(self, session_id: str) -> Optional[VoteSession]:
        query = """
            SELECT session_id, options, user_list, closed, created_at
            FROM vote_sessions
            WHERE session_id = %s
        """
        with self._cursor() as cursor:
            cursor.execute(query, (session_id,))
            row = cursor.fetchone()

        if row is None:
            return None
        return VoteSession(
            session_id=row[0],
            options=row[1],
            users=row[2],
            closed=row[3],
            created_at=row[4]
        )

    def list_sessions(self, include_closed: bool = True) -> List[str]:
        query = "SELECT session_id FROM vote_sessions"
        if not include_closed:
            query += " WHERE NOT closed"
        query += " ORDER BY created_at, session_id"

        with self._cursor() as cursor:
            cursor.execute(query)
            return [row[0] for row in cursor.fetchall()]

    def mark_closed(self, session_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE vote_sessions SET closed = TRUE WHERE session_id = %s",
                (session_id,)
            )
            return cursor.rowcount > 0

    def delete_session(self, session_id: str) -> None:
        """Remove one session and its ballots in a single transaction."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM ballots WHERE session_id = %s", (session_id,))
            cursor.execute("DELETE FROM vote_sessions WHERE session_id = %s", (session_id,))

    def delete_all_sessions(self) -> int:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM vote_sessions")
            return cursor.rowcount

    # Ballots

    def provision(self, session_id: str, users: List[str]) -> int:
        query = """
            INSERT INTO ballots (session_id, user_id)
            VALUES (%s, %s)
            ON CONFLICT (session_id, user_id) DO NOTHING
        """
        with self._cursor() as cursor:
            execute_batch(cursor, query, [(session_id, user) for user in users], page_size=100)
        logger.info(f"Provisioned {len(users)} ballots for vote {session_id}")
        return len(users)

    def has_ballots(self, session_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("SELECT 1 FROM ballots WHERE session_id = %s LIMIT 1", (session_id,))
            return cursor.fetchone() is not None

    def get_choice(self, session_id: str, user: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT chosen_option FROM ballots WHERE session_id = %s AND user_id = %s",
                (session_id, user)
            )
            row = cursor.fetchone()

        if row is None:
            raise BallotNotFound(f"No record found for {user} in vote {session_id}")
        return row[0]

    def set_choice_if_absent(self, session_id: str, user: str, option: str) -> bool:
        query = """
            UPDATE ballots
            SET chosen_option = %s
            WHERE session_id = %s AND user_id = %s AND chosen_option IS NULL
        """
        with self._cursor() as cursor:
            cursor.execute(query, (option, session_id, user))
            return cursor.rowcount == 1

    def scan_unvoted_unreminded(self, session_id: str, min_age_seconds: float) -> List[str]:
        query = """
            SELECT user_id
            FROM ballots
            WHERE session_id = %s
              AND chosen_option IS NULL
              AND NOT reminder_sent
              AND created_at < NOW() - make_interval(secs => %s)
            ORDER BY user_id
        """
        with self._cursor() as cursor:
            cursor.execute(query, (session_id, min_age_seconds))
            return [row[0] for row in cursor.fetchall()]

    def mark_reminded(self, session_id: str, user: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE ballots SET reminder_sent = TRUE WHERE session_id = %s AND user_id = %s",
                (session_id, user)
            )

    def aggregate(self, session_id: str) -> Dict[str, int]:
        query = """
            SELECT chosen_option, COUNT(*)
            FROM ballots
            WHERE session_id = %s AND chosen_option IS NOT NULL
            GROUP BY chosen_option
        """
        with self._cursor() as cursor:
            cursor.execute(query, (session_id,))
            return {option: count for option, count in cursor.fetchall()}

    def drop(self, session_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM ballots WHERE session_id = %s", (session_id,))
            logger.info(f"Dropped {cursor.rowcount} ballots for vote {session_id}")
