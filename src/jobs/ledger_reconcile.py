"""
Ledger reconciliation job for the TikTok Shop ledger sync service.

Folds synced orders, affiliate orders and settlements into one daily ledger
entry per UTC day. Fees are estimated from a configured percentage until a
settlement for the day arrives, at which point the settled figures win and the
day is marked settlement-confirmed.

Only the sync-owned ledger columns are written; costs and notes entered by the
user survive every pass.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..common.etl import ZERO, coerce_decimal, coerce_int
from ..config.loader import get_platform_fee_percent
from ..db.deps import get_session
from ..db.models import (
    PLATFORM_TIKTOK_SHOP,
    LedgerProductVariant,
    TikTokAffiliateOrder,
    TikTokConnection,
    TikTokOrder,
    TikTokProduct,
    TikTokSettlement,
)
from ..db.upserts import (
    update_ledger_sync_fields,
    upsert_product_daily_units,
    upsert_sync_log,
    upsert_variant_daily_units,
)
from ..utils.oauth import ConnectionNotFoundError
from ..utils.time_windows import SyncWindow, utc_day, utc_now

logger = logging.getLogger(__name__)

CONFIDENCE_ESTIMATED = 50
CONFIDENCE_SETTLED = 100

CANCELLED_STATUSES = frozenset({"CANCELLED", "CANCEL"})

CENT = Decimal("0.01")


@dataclass
class DayTotals:
    """Activity aggregated for one calendar day."""

    gross_revenue: Decimal = ZERO
    refunds: Decimal = ZERO
    shipping_fee: Decimal = ZERO
    num_orders: int = 0
    commissions: Decimal = ZERO
    product_units: Counter = field(default_factory=Counter)
    variant_units: Counter = field(default_factory=Counter)


@dataclass
class SettledDay:
    platform_fee: Decimal = ZERO
    affiliate_commission: Decimal = ZERO


def is_cancelled(status: str | None) -> bool:
    return (status or "").upper() in CANCELLED_STATUSES


def order_gross_revenue(order: TikTokOrder) -> Decimal:
    """GMV stored at sync time, falling back to subtotal then total."""
    for value in (order.gmv, order.subtotal, order.total_amount):
        amount = coerce_decimal(value)
        if amount != ZERO:
            return amount
    return ZERO


def estimate_platform_fee(gross_revenue: Decimal, platform_fee_percent: float | Decimal) -> Decimal:
    """gross x percent / 100, rounded to cents."""
    fee = gross_revenue * coerce_decimal(platform_fee_percent) / Decimal(100)
    return fee.quantize(CENT, rounding=ROUND_HALF_UP)


def _money(value: Decimal) -> float:
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


def aggregate_days(
    orders: list[TikTokOrder],
    affiliate_orders: list[TikTokAffiliateOrder],
    product_map: dict[str, str],
    variant_map: dict[str, str],
) -> dict[date, DayTotals]:
    """
    Group orders and affiliate orders by UTC day.

    Cancelled orders are ignored entirely. Units are counted only for line
    items whose product (or SKU) is linked to the ledger.
    """
    days: dict[date, DayTotals] = defaultdict(DayTotals)

    for order in orders:
        if is_cancelled(order.order_status) or order.order_create_time is None:
            continue

        day = days[utc_day(order.order_create_time)]
        day.gross_revenue += order_gross_revenue(order)
        day.refunds += coerce_decimal(order.refund_amount)
        day.shipping_fee += coerce_decimal(order.shipping_fee)
        day.num_orders += 1

        for item in order.items or []:
            quantity = coerce_int(item.get("quantity")) or 1
            ledger_product_id = product_map.get(item.get("product_id"))
            if ledger_product_id:
                day.product_units[ledger_product_id] += quantity
            variant_id = variant_map.get(item.get("sku_id"))
            if variant_id:
                day.variant_units[variant_id] += quantity

    for affiliate_order in affiliate_orders:
        if affiliate_order.order_create_time is None:
            continue
        days[utc_day(affiliate_order.order_create_time)].commissions += coerce_decimal(
            affiliate_order.commission_amount
        )

    return dict(days)


def index_settlements(settlements: list[TikTokSettlement]) -> dict[date, SettledDay]:
    """Sum settlement fees and commissions per UTC settlement day."""
    by_day: dict[date, SettledDay] = {}
    for settlement in settlements:
        if settlement.settlement_time is None:
            continue
        settled = by_day.setdefault(utc_day(settlement.settlement_time), SettledDay())
        settled.platform_fee += coerce_decimal(settlement.platform_fee)
        settled.affiliate_commission += coerce_decimal(settlement.affiliate_commission)
    return by_day


def _load_links(connection: TikTokConnection, session: Session) -> tuple[dict[str, str], dict[str, str], dict[str, str]]:
    """Product id -> ledger product, SKU id -> ledger variant, ledger variant -> ledger product."""
    product_map = {
        product_id: ledger_product_id
        for product_id, ledger_product_id in session.execute(
            select(TikTokProduct.product_id, TikTokProduct.ledger_product_id).where(
                TikTokProduct.user_id == connection.user_id,
                TikTokProduct.connection_id == connection.id,
                TikTokProduct.ledger_product_id.is_not(None),
            )
        )
    }

    variant_map: dict[str, str] = {}
    variant_products: dict[str, str] = {}
    if product_map:
        rows = session.execute(
            select(
                LedgerProductVariant.id,
                LedgerProductVariant.ledger_product_id,
                LedgerProductVariant.sku_id,
            ).where(LedgerProductVariant.ledger_product_id.in_(set(product_map.values())))
        )
        for variant_id, ledger_product_id, sku_id in rows:
            if sku_id:
                variant_map[sku_id] = variant_id
                variant_products[variant_id] = ledger_product_id

    return product_map, variant_map, variant_products


def run_ledger_reconcile(
    connection_id: str,
    window: SyncWindow,
    platform_fee_percent: float | None = None,
    session: Session | None = None,
) -> dict[str, Any]:
    """
    Rebuild the daily ledger for a connection over a window.

    Args:
        connection_id: Connection whose synced data is folded in
        window: Orders and affiliate orders created in [start, end) are used
        platform_fee_percent: Estimated fee rate; defaults to the configured rate
        session: Optional database session

    Returns:
        {"days_updated": n}
    """
    if session is None:
        with get_session() as sess:
            return run_ledger_reconcile(connection_id, window, platform_fee_percent, sess)

    connection = session.get(TikTokConnection, connection_id)
    if connection is None:
        raise ConnectionNotFoundError(f"TikTok connection {connection_id} not found")

    if platform_fee_percent is None:
        platform_fee_percent = get_platform_fee_percent()

    user_id = connection.user_id
    logger.info(
        f"Reconciling ledger for connection {connection_id} "
        f"({window.start.date()} to {window.end.date()}, fee {platform_fee_percent}%)"
    )

    orders = session.scalars(
        select(TikTokOrder).where(
            TikTokOrder.user_id == user_id,
            TikTokOrder.connection_id == connection_id,
            TikTokOrder.order_create_time >= window.start,
            TikTokOrder.order_create_time < window.end,
        )
    ).all()
    affiliate_orders = session.scalars(
        select(TikTokAffiliateOrder).where(
            TikTokAffiliateOrder.user_id == user_id,
            TikTokAffiliateOrder.connection_id == connection_id,
            TikTokAffiliateOrder.order_create_time >= window.start,
            TikTokAffiliateOrder.order_create_time < window.end,
        )
    ).all()
    # Settlements lag their activity, so every settlement of the connection is considered
    settlements = session.scalars(
        select(TikTokSettlement).where(
            TikTokSettlement.user_id == user_id,
            TikTokSettlement.connection_id == connection_id,
        )
    ).all()

    product_map, variant_map, variant_products = _load_links(connection, session)
    days = aggregate_days(list(orders), list(affiliate_orders), product_map, variant_map)
    settled_by_day = index_settlements(list(settlements))

    logger.info(
        f"Loaded {len(orders)} orders, {len(affiliate_orders)} affiliate orders, "
        f"{len(settlements)} settlements across {len(days)} active days"
    )

    days_updated = 0
    for day_date in sorted(days):
        day = days[day_date]
        estimated_fee = estimate_platform_fee(day.gross_revenue, platform_fee_percent)
        settled = settled_by_day.get(day_date)

        if settled is not None:
            platform_fee = settled.platform_fee
            commissions = settled.affiliate_commission
            confidence = CONFIDENCE_SETTLED
        else:
            platform_fee = estimated_fee
            commissions = day.commissions
            confidence = CONFIDENCE_ESTIMATED

        entry_id = update_ledger_sync_fields(
            user_id,
            day_date,
            PLATFORM_TIKTOK_SHOP,
            {
                "gross_revenue": day.gross_revenue,
                "refunds": day.refunds,
                "num_orders": day.num_orders,
                "platform_fee": platform_fee,
                "commissions": commissions,
                "shipping_fee": day.shipping_fee,
            },
            session,
        )

        for ledger_product_id, units in day.product_units.items():
            upsert_product_daily_units(
                {
                    "user_id": user_id,
                    "product_id": ledger_product_id,
                    "date": day_date,
                    "platform": PLATFORM_TIKTOK_SHOP,
                    "entry_id": entry_id,
                    "units_sold": units,
                },
                session,
            )

        for variant_id, units in day.variant_units.items():
            upsert_variant_daily_units(
                {
                    "user_id": user_id,
                    "variant_id": variant_id,
                    "date": day_date,
                    "platform": PLATFORM_TIKTOK_SHOP,
                    "product_id": variant_products[variant_id],
                    "entry_id": entry_id,
                    "units_sold": units,
                },
                session,
            )

        upsert_sync_log(
            {
                "user_id": user_id,
                "sync_date": day_date,
                "platform": PLATFORM_TIKTOK_SHOP,
                "estimated_data": {
                    "gross_revenue": _money(day.gross_revenue),
                    "platform_fee": _money(estimated_fee),
                    "commissions": _money(day.commissions),
                },
                "settled_data": {
                    "platform_fee": _money(settled.platform_fee),
                    "affiliate_commission": _money(settled.affiliate_commission),
                }
                if settled is not None
                else None,
                "match_percentage": confidence,
                "synced_at": utc_now(),
            },
            session,
        )
        session.commit()
        days_updated += 1

    logger.info(f"Ledger reconciliation updated {days_updated} days for connection {connection_id}")
    return {"days_updated": days_updated}


def reconcile(
    connection_id: str,
    window: SyncWindow,
    platform_fee_percent: float | None = None,
    session: Session | None = None,
) -> dict[str, Any]:
    """
    Inbound reconcile operation.

    Returns:
        {"success": True, "days_updated": n} or {"success": False, "error": message}
    """
    try:
        result = run_ledger_reconcile(connection_id, window, platform_fee_percent, session)
    except Exception as e:
        logger.error(f"Ledger reconciliation failed for connection {connection_id}: {e}", exc_info=True)
        if session is not None:
            session.rollback()
        return {"success": False, "error": str(e)}

    return {"success": True, **result}
