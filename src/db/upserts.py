"""
UPSERT helpers for the TikTok Shop ledger sync service.

Implements conflict resolution using insert().on_conflict_do_update for
idempotent loading of TikTok records and reconciliation output. Records are
written one at a time, so a failure on one record leaves earlier ones in place
for the next run to heal.
"""

import logging
from collections.abc import Sequence
from datetime import date

from sqlalchemy import Table, and_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from .deps import get_session
from .models import (
    SYNC_OWNED_FIELDS,
    LedgerDailyEntry,
    LedgerProductDailyUnits,
    LedgerSyncLog,
    LedgerVariantDailyUnits,
    TikTokAffiliateOrder,
    TikTokOrder,
    TikTokProduct,
    TikTokSettlement,
)

logger = logging.getLogger(__name__)

ORDER_UPDATE_COLS = [
    "connection_id",
    "order_status",
    "payment_status",
    "total_amount",
    "subtotal",
    "gmv",
    "shipping_fee",
    "platform_discount",
    "seller_discount",
    "refund_amount",
    "currency",
    "order_create_time",
    "order_paid_time",
    "items",
    "raw_data",
]

AFFILIATE_ORDER_UPDATE_COLS = [
    "connection_id",
    "commission_rate",
    "commission_amount",
    "order_amount",
    "product_id",
    "product_name",
    "creator_username",
    "order_create_time",
    "raw_data",
]

SETTLEMENT_UPDATE_COLS = [
    "connection_id",
    "settlement_time",
    "settlement_amount",
    "revenue",
    "platform_fee",
    "affiliate_commission",
    "shipping_fee_subsidy",
    "refund_amount",
    "adjustment",
    "currency",
    "raw_data",
]

# ledger_product_id is left out so an existing link survives re-sync
PRODUCT_UPDATE_COLS = ["connection_id", "product_name", "product_status", "skus", "raw_data"]


def _insert_for(session: Session):
    """Pick the dialect insert construct that supports ON CONFLICT."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


def _exists(session: Session, table: Table, row: dict, conflict_cols: Sequence[str]) -> bool:
    key_filter = and_(*(table.c[col] == row[col] for col in conflict_cols))
    return session.execute(select(1).select_from(table).where(key_filter).limit(1)).first() is not None


def _exec_upsert(
    session: Session,
    table: Table,
    row: dict,
    conflict_cols: Sequence[str],
    update_cols: Sequence[str],
) -> bool:
    """Upsert a single row. Returns True when the row was inserted, False when updated."""
    existed = _exists(session, table, row, conflict_cols)

    stmt = _insert_for(session)(table).values(**row)
    update_values = {c: stmt.excluded[c] for c in update_cols if c in row}
    if "updated_at" in table.c:
        update_values["updated_at"] = func.now()

    if update_values:
        stmt = stmt.on_conflict_do_update(index_elements=list(conflict_cols), set_=update_values)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_cols))

    session.execute(stmt)
    return not existed


def _run(fn, session: Session | None):
    if session is not None:
        return fn(session)
    with get_session() as sess:
        return fn(sess)


# =============================================================================
# TIKTOK RECORDS
# =============================================================================


def upsert_tiktok_order(row: dict, session: Session | None = None) -> bool:
    """
    Upsert a TikTok order keyed on (user_id, order_id).

    Every field is overwritten; the upstream order is authoritative.
    Returns True if inserted.
    """
    return _run(
        lambda sess: _exec_upsert(
            sess, TikTokOrder.__table__, row, ["user_id", "order_id"], ORDER_UPDATE_COLS
        ),
        session,
    )


def upsert_tiktok_affiliate_order(row: dict, session: Session | None = None) -> bool:
    """Upsert an affiliate order keyed on (user_id, order_id, affiliate_type)."""
    return _run(
        lambda sess: _exec_upsert(
            sess,
            TikTokAffiliateOrder.__table__,
            row,
            ["user_id", "order_id", "affiliate_type"],
            AFFILIATE_ORDER_UPDATE_COLS,
        ),
        session,
    )


def upsert_tiktok_settlement(row: dict, session: Session | None = None) -> bool:
    """Upsert a settlement keyed on (user_id, settlement_id)."""
    return _run(
        lambda sess: _exec_upsert(
            sess,
            TikTokSettlement.__table__,
            row,
            ["user_id", "settlement_id"],
            SETTLEMENT_UPDATE_COLS,
        ),
        session,
    )


def upsert_tiktok_product(row: dict, session: Session | None = None) -> bool:
    """Upsert a product mapping keyed on (user_id, product_id), preserving its ledger link."""
    return _run(
        lambda sess: _exec_upsert(
            sess, TikTokProduct.__table__, row, ["user_id", "product_id"], PRODUCT_UPDATE_COLS
        ),
        session,
    )


# =============================================================================
# LEDGER
# =============================================================================


def update_ledger_sync_fields(
    user_id: str,
    entry_date: date,
    platform: str,
    values: dict,
    session: Session | None = None,
) -> str:
    """
    Write the sync-owned fields of a daily ledger entry.

    An existing row gets an UPDATE naming only the sync-owned columns, so
    manually entered costs and notes are never touched. A missing row is
    inserted with manual fields at their defaults.

    Returns:
        The ledger entry id
    """
    sync_values = {k: v for k, v in values.items() if k in SYNC_OWNED_FIELDS}
    unknown = set(values) - set(SYNC_OWNED_FIELDS)
    if unknown:
        raise ValueError(f"Not sync-owned ledger fields: {sorted(unknown)}")

    def _write(sess: Session) -> str:
        table = LedgerDailyEntry.__table__
        key_filter = and_(
            table.c.user_id == user_id, table.c.date == entry_date, table.c.platform == platform
        )

        entry_id = sess.execute(select(table.c.id).where(key_filter)).scalar_one_or_none()
        if entry_id is not None:
            sess.execute(update(table).where(table.c.id == entry_id).values(**sync_values, updated_at=func.now()))
            return entry_id

        stmt = (
            _insert_for(sess)(table)
            .values(user_id=user_id, date=entry_date, platform=platform, **sync_values)
            .on_conflict_do_update(
                index_elements=["user_id", "date", "platform"],
                set_={**sync_values, "updated_at": func.now()},
            )
        )
        sess.execute(stmt)
        return sess.execute(select(table.c.id).where(key_filter)).scalar_one()

    return _run(_write, session)


def upsert_product_daily_units(row: dict, session: Session | None = None) -> bool:
    """Upsert units sold keyed on (user_id, product_id, date, platform)."""
    return _run(
        lambda sess: _exec_upsert(
            sess,
            LedgerProductDailyUnits.__table__,
            row,
            ["user_id", "product_id", "date", "platform"],
            ["entry_id", "units_sold"],
        ),
        session,
    )


def upsert_variant_daily_units(row: dict, session: Session | None = None) -> bool:
    """Upsert variant units sold keyed on (user_id, variant_id, date, platform)."""
    return _run(
        lambda sess: _exec_upsert(
            sess,
            LedgerVariantDailyUnits.__table__,
            row,
            ["user_id", "variant_id", "date", "platform"],
            ["product_id", "entry_id", "units_sold"],
        ),
        session,
    )


def upsert_sync_log(row: dict, session: Session | None = None) -> bool:
    """Overwrite the audit row for (user_id, sync_date, platform)."""
    return _run(
        lambda sess: _exec_upsert(
            sess,
            LedgerSyncLog.__table__,
            row,
            ["user_id", "sync_date", "platform"],
            ["estimated_data", "settled_data", "match_percentage", "synced_at"],
        ),
        session,
    )
