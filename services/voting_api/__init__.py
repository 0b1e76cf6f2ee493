"""
Voting API service.

This package contains:
- Vote session manager and domain errors
- PostgreSQL and in-memory ballot stores
- Session registry shared by request handlers and the reminder loop
- Email notifier and the bounded notification dispatcher
- FastAPI application and ``voting-api`` entry point
"""

from .registry import SessionRegistry
from .sessions import (
    BallotNotFound,
    CastResult,
    DuplicateSession,
    InvalidInput,
    InvalidOption,
    SessionClosed,
    SessionNotFound,
    VoteSession,
    VoteSessionManager,
    VotingError,
)

__all__ = [
    'SessionRegistry',
    'BallotNotFound',
    'CastResult',
    'DuplicateSession',
    'InvalidInput',
    'InvalidOption',
    'SessionClosed',
    'SessionNotFound',
    'VoteSession',
    'VoteSessionManager',
    'VotingError',
]

__version__ = '1.0.0'
