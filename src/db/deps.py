"""
Database dependency management for the TikTok Shop ledger sync service.

Provides context managers for database session handling.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from .config import DatabaseConfig


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager that yields a database session and ensures proper cleanup.

    Automatically handles:
    - Session creation
    - Transaction commit on success
    - Rollback on exception
    - Session cleanup

    Usage:
        with get_session() as session:
            connection = session.get(TikTokConnection, connection_id)
            # Commit happens automatically if no exception
    """
    session = DatabaseConfig.get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
