"""Configuration management for the Voting API service."""
from typing import Literal, Tuple
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service configuration
    SERVICE_NAME: str = "voting-api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server configuration
    ADDR: str = ":4000"

    # Storage backend
    STORAGE_BACKEND: Literal["postgres", "memory"] = "postgres"

    # PostgreSQL configuration
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "voting_db"
    DB_USER: str = "voting_user"
    DB_PASSWORD: str = "voting_pass"
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 20

    # SMTP configuration
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    EMAIL_SENDER: str = "voting-system@example.com"
    EMAIL_PASSWORD: str = ""
    SMTP_TIMEOUT_SECONDS: float = 10.0

    # Notification dispatch
    NOTIFIER_MAX_WORKERS: int = 8
    NOTIFIER_MAX_RETRIES: int = 2
    NOTIFIER_RETRY_DELAY: float = 1.0
    PUBLIC_BASE_URL: str = "http://localhost:4000"

    # Reminder loop
    REMINDER_INTERVAL_SECONDS: float = 10.0
    REMINDER_STALENESS_SECONDS: float = 60.0

    # Parallel ballot drops on delete-all
    DELETE_MAX_WORKERS: int = 4

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def postgres_dsn(self) -> str:
        """Generate PostgreSQL connection string."""
        return (
            f"host={self.DB_HOST} port={self.DB_PORT} dbname={self.DB_NAME} "
            f"user={self.DB_USER} password={self.DB_PASSWORD}"
        )


def parse_addr(addr: str) -> Tuple[str, int]:
    """
    Split a listen address of the form ``host:port``, ``[ipv6]:port`` or ``:port``.

    An empty host binds every interface.
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Invalid listen address: {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host or "0.0.0.0", int(port)


settings = Settings()
