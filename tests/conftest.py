"""
Shared fixtures: TikTok credentials in the environment and an in-memory
SQLite database built from the models.
"""

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from src.adapters.tiktok import TikTokConfig
from src.db.config import DatabaseConfig
from src.db.models import Base, TikTokConnection
from src.utils.time_windows import utc_now


@pytest.fixture(autouse=True)
def tiktok_env(monkeypatch):
    monkeypatch.setenv("TIKTOK_APP_KEY", "test_app_key")
    monkeypatch.setenv("TIKTOK_APP_SECRET", "test_app_secret")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")


@pytest.fixture
def tiktok_config() -> TikTokConfig:
    return TikTokConfig(
        app_key="test_app_key",
        app_secret="test_app_secret",
        api_base="https://api.example.test",
        auth_base="https://auth.example.test",
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    DatabaseConfig.configure(engine)
    yield engine

    DatabaseConfig._engine = None
    DatabaseConfig._session_factory = None
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def connection(session) -> TikTokConnection:
    """A linked connection with a token valid for another hour."""
    connection = TikTokConnection(
        user_id="user-1",
        access_token="access-1",
        refresh_token="refresh-1",
        token_expires_at=utc_now() + timedelta(hours=1),
        shop_cipher="cipher-1",
        shop_id="shop-1",
        shop_name="Test Shop",
        region="US",
    )
    session.add(connection)
    session.commit()
    return connection
