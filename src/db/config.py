"""
Database configuration for the TikTok Shop ledger sync service.

Loads environment variables and creates the SQLAlchemy engine and session
factory on first use.
"""

from dotenv import load_dotenv
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker

from ..config.loader import get_database_url

# Load environment variables from .env file
load_dotenv()


class DatabaseConfig:
    """Database configuration singleton."""

    _engine: Engine | None = None
    _session_factory: sessionmaker | None = None

    @classmethod
    def get_database_url(cls) -> str:
        """Get database URL from environment variables."""
        return get_database_url()

    @classmethod
    def get_engine(cls) -> Engine:
        """Get SQLAlchemy engine (singleton)."""
        if cls._engine is None:
            cls._engine = create_engine(
                cls.get_database_url(),
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True,
                echo=False,  # Set to True for SQL debugging
            )
        return cls._engine

    @classmethod
    def get_session_factory(cls) -> sessionmaker:
        """Get session factory."""
        if cls._session_factory is None:
            cls._session_factory = sessionmaker(
                bind=cls.get_engine(),
                autoflush=False,
                autocommit=False,
                expire_on_commit=False,
            )
        return cls._session_factory

    @classmethod
    def configure(cls, engine: Engine) -> None:
        """Bind the service to an already-created engine (tests, alternate databases)."""
        cls._engine = engine
        cls._session_factory = None
