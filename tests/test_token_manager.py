"""
Tests for access token refresh handling.
"""

import threading
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import Mock

import pytest
import requests
from sqlalchemy.orm import Session

from src.adapters.tiktok import TokenPair, TokenRefreshRejectedError
from src.utils.oauth import (
    ConnectionNotFoundError,
    TokenExpiredError,
    get_valid_token,
    is_expired,
    needs_refresh,
)
from src.utils.time_windows import ensure_utc, utc_now


def _token_pair():
    return TokenPair(
        access_token="access-2",
        refresh_token="refresh-2",
        access_token_expires_at=utc_now() + timedelta(days=7),
        refresh_token_expires_at=utc_now() + timedelta(days=30),
    )


def _expire_in(session, connection, delta):
    connection.token_expires_at = utc_now() + delta
    session.commit()


class TestRefreshWindow:
    def test_needs_refresh_within_margin(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        assert needs_refresh(now + timedelta(minutes=4), now)
        assert needs_refresh(now + timedelta(minutes=5), now)
        assert not needs_refresh(now + timedelta(minutes=6), now)

    def test_unknown_expiry_needs_refresh(self):
        assert needs_refresh(None)
        assert is_expired(None)

    def test_naive_expiry_treated_as_utc(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        assert not needs_refresh(datetime(2026, 1, 1, 13, 0), now)


class TestGetValidToken:
    def test_fresh_token_returned_without_refresh(self, session, connection):
        client = Mock()

        token = get_valid_token(connection.id, client, session)

        assert token.access_token == "access-1"
        client.refresh_token.assert_not_called()

    def test_refresh_persists_new_tokens(self, session, connection):
        _expire_in(session, connection, timedelta(minutes=2))
        client = Mock()
        client.refresh_token.return_value = _token_pair()

        token = get_valid_token(connection.id, client, session)

        assert token.access_token == "access-2"
        client.refresh_token.assert_called_once_with("refresh-1")

        session.expire_all()
        stored = session.get(type(connection), connection.id)
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-2"
        assert ensure_utc(stored.token_expires_at) > utc_now() + timedelta(days=6)

    def test_refresh_failure_falls_back_to_unexpired_token(self, session, connection):
        _expire_in(session, connection, timedelta(minutes=2))
        client = Mock()
        client.refresh_token.side_effect = TokenRefreshRejectedError("rejected", code=36004004)

        token = get_valid_token(connection.id, client, session)

        assert token.access_token == "access-1"

    def test_network_failure_falls_back_to_unexpired_token(self, session, connection):
        _expire_in(session, connection, timedelta(minutes=1))
        client = Mock()
        client.refresh_token.side_effect = requests.exceptions.ConnectionError("down")

        assert get_valid_token(connection.id, client, session).access_token == "access-1"

    def test_expired_token_and_failed_refresh_raises(self, session, connection):
        _expire_in(session, connection, -timedelta(minutes=1))
        client = Mock()
        client.refresh_token.side_effect = TokenRefreshRejectedError("rejected", code=36004004)

        with pytest.raises(TokenExpiredError):
            get_valid_token(connection.id, client, session)

    def test_expired_token_without_refresh_token_raises(self, session, connection):
        connection.refresh_token = None
        _expire_in(session, connection, -timedelta(minutes=1))
        client = Mock()

        with pytest.raises(TokenExpiredError):
            get_valid_token(connection.id, client, session)
        client.refresh_token.assert_not_called()

    def test_unknown_connection(self, session):
        with pytest.raises(ConnectionNotFoundError):
            get_valid_token("missing", Mock(), session)


class TestConcurrentRefresh:
    def test_concurrent_callers_share_one_refresh(self, engine, session, connection):
        _expire_in(session, connection, timedelta(minutes=2))
        connection_id = connection.id
        started = threading.Event()

        def slow_refresh(refresh_token):
            started.set()
            time.sleep(0.3)
            return _token_pair()

        client = Mock()
        client.refresh_token.side_effect = slow_refresh
        results = {}

        def worker(name):
            try:
                with Session(engine) as own_session:
                    results[name] = get_valid_token(connection_id, client, own_session).access_token
            except Exception as e:  # surfaced by the assertions below
                results[name] = e

        first = threading.Thread(target=worker, args=("first",))
        second = threading.Thread(target=worker, args=("second",))
        first.start()
        assert started.wait(timeout=5)
        second.start()
        first.join(timeout=10)
        second.join(timeout=10)

        assert client.refresh_token.call_count == 1
        assert results == {"first": "access-2", "second": "access-2"}
