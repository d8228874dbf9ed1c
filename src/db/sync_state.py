"""
Sync state management for TikTok connections.

A connection moves through idle -> syncing -> idle on success, or
syncing -> error on a fatal failure. The last successful sync time drives the
next incremental window.
"""

import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..utils.time_windows import ensure_utc, utc_now
from .deps import get_session
from .models import SYNC_STATUS_ERROR, SYNC_STATUS_IDLE, SYNC_STATUS_SYNCING, TikTokConnection

logger = logging.getLogger(__name__)


def _set_status(connection_id: str, values: dict, session: Session | None = None) -> None:
    def _update(sess: Session) -> None:
        sess.execute(
            update(TikTokConnection)
            .where(TikTokConnection.id == connection_id)
            .values(**values, updated_at=utc_now())
            .execution_options(synchronize_session="fetch")
        )
        # Status is visible to other readers while the sync is still running
        sess.commit()

    if session is not None:
        _update(session)
    else:
        with get_session() as sess:
            _update(sess)

    logger.debug(f"Connection {connection_id} status: {values.get('sync_status')}")


def mark_sync_running(connection_id: str, session: Session | None = None) -> None:
    """Mark a connection as syncing and clear its previous error."""
    _set_status(connection_id, {"sync_status": SYNC_STATUS_SYNCING, "sync_error": None}, session)


def mark_sync_success(
    connection_id: str, last_sync_at: datetime | None = None, session: Session | None = None
) -> None:
    """Return a connection to idle and stamp its last successful sync."""
    _set_status(
        connection_id,
        {
            "sync_status": SYNC_STATUS_IDLE,
            "sync_error": None,
            "last_sync_at": ensure_utc(last_sync_at) if last_sync_at else utc_now(),
        },
        session,
    )


def mark_sync_error(connection_id: str, error_message: str, session: Session | None = None) -> None:
    """Put a connection into the error state with the captured message."""
    _set_status(
        connection_id, {"sync_status": SYNC_STATUS_ERROR, "sync_error": error_message}, session
    )


def is_syncing(connection: TikTokConnection) -> bool:
    return connection.sync_status == SYNC_STATUS_SYNCING
