"""
OAuth token lifecycle for TikTok connections.

Hands out a usable access token for a connection, refreshing it shortly before
expiry. Refreshes are serialized per connection: the upstream refresh token is
single-use, so two concurrent refreshes would invalidate each other.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

import requests
from sqlalchemy.orm import Session

from ..adapters.tiktok import TikTokClient, TikTokError
from ..db.connections import get_connection, save_tokens
from ..db.deps import get_session
from ..db.models import TikTokConnection
from .time_windows import ensure_utc, utc_now

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(minutes=5)


class TokenExpiredError(Exception):
    """The access token has expired and could not be refreshed."""


class ConnectionNotFoundError(LookupError):
    """No connection exists for the given id."""


@dataclass
class ValidToken:
    access_token: str
    connection: TikTokConnection


_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


def _connection_lock(connection_id: str) -> threading.Lock:
    with _locks_guard:
        lock = _locks.get(connection_id)
        if lock is None:
            lock = _locks[connection_id] = threading.Lock()
        return lock


def needs_refresh(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """True when the token expires within the refresh margin (or expiry is unknown)."""
    if expires_at is None:
        return True
    now = now or utc_now()
    return ensure_utc(expires_at) - now <= REFRESH_MARGIN


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    if expires_at is None:
        return True
    return ensure_utc(expires_at) <= (now or utc_now())


def _load(connection_id: str, session: Session) -> TikTokConnection:
    connection = get_connection(connection_id, session)
    if connection is None:
        raise ConnectionNotFoundError(f"TikTok connection {connection_id} not found")
    return connection


def get_valid_token(
    connection_id: str,
    client: TikTokClient | None = None,
    session: Session | None = None,
) -> ValidToken:
    """
    Return a usable access token for a connection.

    Args:
        connection_id: Connection to authenticate
        client: Optional TikTok client used for the refresh call
        session: Optional database session

    Returns:
        ValidToken with the access token and the (refreshed) connection

    Raises:
        ConnectionNotFoundError: Unknown connection id
        TokenExpiredError: Refresh failed and the stored token has expired
    """
    if session is None:
        with get_session() as sess:
            return get_valid_token(connection_id, client, sess)

    connection = _load(connection_id, session)
    if connection.access_token and not needs_refresh(connection.token_expires_at):
        return ValidToken(connection.access_token, connection)

    with _connection_lock(connection_id):
        # Another caller may have refreshed while this one waited
        session.refresh(connection)
        if connection.access_token and not needs_refresh(connection.token_expires_at):
            logger.debug(f"Token for connection {connection_id} already refreshed")
            return ValidToken(connection.access_token, connection)

        return _refresh(connection, client or TikTokClient(), session)


def _refresh(connection: TikTokConnection, client: TikTokClient, session: Session) -> ValidToken:
    logger.info(f"Refreshing access token for connection {connection.id}")

    try:
        if not connection.refresh_token:
            raise TokenExpiredError(f"Connection {connection.id} has no refresh token")
        tokens = client.refresh_token(connection.refresh_token)
    except (TikTokError, TokenExpiredError, requests.RequestException) as e:
        if connection.access_token and not is_expired(connection.token_expires_at):
            logger.warning(
                f"Token refresh failed for connection {connection.id}, using current token: {e}"
            )
            return ValidToken(connection.access_token, connection)

        logger.error(f"Token refresh failed for connection {connection.id}: {e}")
        raise TokenExpiredError(
            f"Access token expired and refresh failed for connection {connection.id}: {e}"
        ) from e

    save_tokens(connection, tokens, session)
    # Persist before releasing the lock so waiting callers see the new token
    session.commit()
    logger.info(f"Access token refreshed for connection {connection.id}, expires {tokens.access_token_expires_at}")
    return ValidToken(connection.access_token, connection)
