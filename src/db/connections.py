"""
TikTok connection persistence.

Connections are created by the OAuth callback and removed by a user-initiated
disconnect. Synced history references connections with ON DELETE SET NULL, so
removing a connection keeps every order, settlement and ledger row.
"""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..adapters.tiktok import Shop, TikTokClient, TokenPair
from .deps import get_session
from .models import TikTokConnection

logger = logging.getLogger(__name__)


def get_connection(connection_id: str, session: Session) -> TikTokConnection | None:
    """Load a connection by id."""
    return session.get(TikTokConnection, connection_id)


def save_tokens(connection: TikTokConnection, tokens: TokenPair, session: Session) -> None:
    """Persist a token pair and both expiries on a connection."""
    connection.access_token = tokens.access_token
    connection.refresh_token = tokens.refresh_token
    connection.token_expires_at = tokens.access_token_expires_at
    connection.refresh_token_expires_at = tokens.refresh_token_expires_at
    session.flush()


def save_shop(connection: TikTokConnection, shop: Shop, session: Session) -> None:
    """Persist the discovered shop identity on a connection."""
    connection.shop_cipher = shop.cipher
    connection.shop_id = shop.id
    connection.shop_name = shop.name
    connection.region = shop.region
    session.flush()
    logger.info(f"Connection {connection.id} linked to shop {shop.name or shop.id} ({shop.region})")


def list_syncable_connections(session: Session | None = None) -> list[str]:
    """Ids of every connection holding an access token."""

    def _query(sess: Session) -> list[str]:
        return list(
            sess.scalars(
                select(TikTokConnection.id)
                .where(TikTokConnection.access_token.is_not(None))
                .order_by(TikTokConnection.connected_at)
            )
        )

    if session is not None:
        return _query(session)
    with get_session() as sess:
        return _query(sess)


def connect_from_auth_code(
    code: str,
    user_id: str,
    client: TikTokClient | None = None,
    session: Session | None = None,
) -> list[str]:
    """
    Complete the OAuth callback: exchange the code and store one connection per shop.

    Re-authorizing an already linked shop refreshes that connection's tokens
    instead of creating a duplicate. When the seller authorized no shop yet, a
    bare connection is stored and its shop is discovered on first sync.

    Args:
        code: Authorization code from the callback
        user_id: Owner of the new connection(s)
        client: Optional TikTok client
        session: Optional database session

    Returns:
        Ids of the created or updated connections
    """
    client = client or TikTokClient()
    tokens = client.exchange_auth_code(code)
    shops = client.list_authorized_shops(tokens.access_token)

    def _store(sess: Session) -> list[str]:
        if not shops:
            logger.warning(f"No authorized shops for user {user_id}; storing connection without shop")
            connection = TikTokConnection(user_id=user_id)
            sess.add(connection)
            save_tokens(connection, tokens, sess)
            return [connection.id]

        ids = []
        for shop in shops:
            connection = sess.scalars(
                select(TikTokConnection).where(
                    TikTokConnection.user_id == user_id, TikTokConnection.shop_id == shop.id
                )
            ).first()
            if connection is None:
                connection = TikTokConnection(user_id=user_id)
                sess.add(connection)
            save_tokens(connection, tokens, sess)
            save_shop(connection, shop, sess)
            ids.append(connection.id)
        return ids

    if session is not None:
        ids = _store(session)
        session.commit()
    else:
        with get_session() as sess:
            ids = _store(sess)

    logger.info(f"Stored {len(ids)} TikTok connection(s) for user {user_id}")
    return ids


def disconnect(connection_id: str, user_id: str, session: Session | None = None) -> bool:
    """
    Delete a connection owned by the user.

    Returns:
        False when the connection does not exist or belongs to someone else
    """

    def _delete(sess: Session) -> bool:
        connection = sess.get(TikTokConnection, connection_id)
        if connection is None or connection.user_id != user_id:
            logger.warning(f"Disconnect refused for connection {connection_id} and user {user_id}")
            return False
        sess.delete(connection)
        sess.flush()
        logger.info(f"Disconnected TikTok connection {connection_id}")
        return True

    if session is not None:
        deleted = _delete(session)
        session.commit()
        return deleted
    with get_session() as sess:
        return _delete(sess)
