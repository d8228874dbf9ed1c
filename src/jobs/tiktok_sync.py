"""
TikTok Shop sync job for the ledger sync service.

Pulls orders, affiliate orders, settlements and products for one connection
and upserts them keyed on their natural keys, so re-running an overlapping
window is safe. Orders and products are required; affiliate orders and
settlements depend on optional API scopes and are skipped when unavailable.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..adapters.tiktok import Shop, TikTokClient
from ..common.etl import variant_display_name
from ..config.loader import get_page_size, get_platform_fee_percent
from ..db.connections import list_syncable_connections, save_shop
from ..db.deps import get_session
from ..db.models import (
    PLATFORM_TIKTOK_SHOP,
    LedgerProduct,
    LedgerProductVariant,
    TikTokConnection,
    TikTokProduct,
)
from ..db.sync_state import is_syncing, mark_sync_error, mark_sync_running, mark_sync_success
from ..db.upserts import (
    upsert_tiktok_affiliate_order,
    upsert_tiktok_order,
    upsert_tiktok_product,
    upsert_tiktok_settlement,
)
from ..utils.oauth import ConnectionNotFoundError, get_valid_token
from ..utils.time_windows import (
    SyncWindow,
    compute_sync_window,
    day_window,
    format_duration,
    utc_day,
    utc_now,
)
from .ledger_reconcile import reconcile

logger = logging.getLogger(__name__)

SYNC_TYPES = ("all", "orders", "affiliate", "settlements", "products")
SKIPPED = "skipped"


class NoAuthorizedShopsError(Exception):
    """The seller has not authorized any shop for this application."""

    def __init__(self, connection_id: str):
        super().__init__("No authorized shops found. Please reconnect your TikTok Shop.")
        self.connection_id = connection_id


@dataclass
class SyncResult:
    """Per-entity outcome of a connection sync."""

    connection_id: str
    sync_type: str
    window: SyncWindow
    counts: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "sync_type": self.sync_type,
            "window": {"start": self.window.start.isoformat(), "end": self.window.end.isoformat()},
            **self.counts,
        }


@dataclass
class _SyncContext:
    client: TikTokClient
    access_token: str
    connection: TikTokConnection
    window: SyncWindow
    page_size: int
    session: Session

    @property
    def shop_cipher(self) -> str:
        return self.connection.shop_cipher


def _wants(sync_type: str, entity: str) -> bool:
    return sync_type in ("all", entity)


def ensure_shop(ctx: _SyncContext) -> None:
    """Discover and persist the shop when the connection has no cipher yet."""
    if ctx.connection.shop_cipher:
        return

    logger.info(f"Connection {ctx.connection.id} has no shop cipher, discovering shops")
    shops: list[Shop] = ctx.client.list_authorized_shops(ctx.access_token)
    if not shops:
        raise NoAuthorizedShopsError(ctx.connection.id)

    save_shop(ctx.connection, shops[0], ctx.session)
    ctx.session.commit()


def _owned(ctx: _SyncContext, row: dict) -> dict:
    return {**row, "user_id": ctx.connection.user_id, "connection_id": ctx.connection.id}


def sync_orders(ctx: _SyncContext) -> int:
    """Fetch and upsert every order in the window. Returns the order count."""
    orders = ctx.client.get_all_orders(ctx.access_token, ctx.shop_cipher, ctx.window, ctx.page_size)

    inserted = 0
    for order in orders:
        row = _owned(ctx, order)
        inserted += upsert_tiktok_order(row, ctx.session)
        ctx.session.commit()

    logger.info(f"Orders - Processed: {len(orders)}, Inserted: {inserted}, Updated: {len(orders) - inserted}")
    return len(orders)


def sync_affiliate_orders(ctx: _SyncContext) -> int:
    affiliate_orders = ctx.client.get_all_affiliate_orders(
        ctx.access_token, ctx.shop_cipher, ctx.window, ctx.page_size
    )
    for order in affiliate_orders:
        upsert_tiktok_affiliate_order(_owned(ctx, order), ctx.session)
        ctx.session.commit()

    logger.info(f"Affiliate orders - Processed: {len(affiliate_orders)}")
    return len(affiliate_orders)


def sync_settlements(ctx: _SyncContext) -> int:
    settlements = ctx.client.get_all_settlements(
        ctx.access_token, ctx.shop_cipher, ctx.window, ctx.page_size
    )
    for settlement in settlements:
        upsert_tiktok_settlement(_owned(ctx, settlement), ctx.session)
        ctx.session.commit()

    logger.info(f"Settlements - Processed: {len(settlements)}")
    return len(settlements)


def _ensure_ledger_product(ctx: _SyncContext, row: dict) -> tuple[str, bool]:
    """Return the ledger product linked to a TikTok product, creating it if needed."""
    mapping = ctx.session.get(TikTokProduct, (ctx.connection.user_id, row["product_id"]))
    if mapping.ledger_product_id:
        return mapping.ledger_product_id, False

    ledger_product = LedgerProduct(
        user_id=ctx.connection.user_id,
        name=row["product_name"] or row["product_id"],
        sku=row["product_id"],
        cogs=0,
        platform=PLATFORM_TIKTOK_SHOP,
    )
    ctx.session.add(ledger_product)
    ctx.session.flush()
    mapping.ledger_product_id = ledger_product.id
    logger.info(f"Created ledger product {ledger_product.id} for TikTok product {row['product_id']}")
    return ledger_product.id, True


def _sync_variants(ctx: _SyncContext, ledger_product_id: str, product_id: str) -> int:
    """Upsert one ledger variant per SKU of the product. Existing variant COGS is kept."""
    detail = ctx.client.get_product_detail(ctx.access_token, ctx.shop_cipher, product_id)

    count = 0
    for sku in detail.get("skus") or []:
        sku_id = str(sku["id"]) if sku.get("id") else None
        variant = ctx.session.scalars(
            select(LedgerProductVariant).where(
                LedgerProductVariant.ledger_product_id == ledger_product_id,
                LedgerProductVariant.sku_id == sku_id,
            )
        ).first()
        if variant is None:
            variant = LedgerProductVariant(ledger_product_id=ledger_product_id, sku_id=sku_id, cogs=0)
            ctx.session.add(variant)

        variant.sku_name = variant_display_name(sku)
        variant.seller_sku = sku.get("seller_sku") or None
        count += 1

    return count


def retire_stale_products(
    connection: TikTokConnection, live_product_ids: set[str], session: Session
) -> int:
    """
    Delete products of this connection missing from a complete live listing.

    Each stale mapping is removed together with its linked ledger product,
    whose variants and daily unit rows cascade with it. Callers must only pass
    the product ids of a fully paginated listing.

    Returns:
        Number of products retired
    """
    mappings = session.scalars(
        select(TikTokProduct).where(
            TikTokProduct.user_id == connection.user_id,
            TikTokProduct.connection_id == connection.id,
        )
    ).all()

    retired = 0
    for mapping in mappings:
        if mapping.product_id in live_product_ids:
            continue

        product_id = mapping.product_id
        ledger_product = mapping.ledger_product
        session.delete(mapping)
        if ledger_product is not None:
            session.delete(ledger_product)
        session.commit()

        logger.info(f"Retired stale TikTok product {product_id}")
        retired += 1

    return retired


def sync_products(ctx: _SyncContext) -> dict[str, int]:
    """
    Upsert the full product list, link ledger products, then retire stale ones.

    A failure while listing products propagates before anything is retired.
    """
    products = ctx.client.get_all_products(ctx.access_token, ctx.shop_cipher, ctx.page_size)

    created = 0
    variants = 0
    for product in products:
        row = _owned(ctx, product)
        upsert_tiktok_product(row, ctx.session)
        ledger_product_id, was_created = _ensure_ledger_product(ctx, row)
        created += was_created
        ctx.session.commit()

        try:
            variants += _sync_variants(ctx, ledger_product_id, row["product_id"])
            ctx.session.commit()
        except Exception as e:
            ctx.session.rollback()
            logger.warning(f"Could not fetch product details for variants of {row['product_id']}: {e}")

    live_ids = {p["product_id"] for p in products}
    removed = retire_stale_products(ctx.connection, live_ids, ctx.session)

    logger.info(
        f"Products - Processed: {len(products)}, Ledger products created: {created}, "
        f"Variants: {variants}, Removed: {removed}"
    )
    return {"products": len(products), "products_created": created, "variants": variants, "products_removed": removed}


def _optional(name: str, fn, ctx: _SyncContext) -> int | str:
    """Run an entity sync whose API scope may not be granted; report failures as skipped."""
    try:
        return fn(ctx)
    except Exception as e:
        ctx.session.rollback()
        logger.warning(f"{name} sync skipped for connection {ctx.connection.id}: {e}")
        return SKIPPED


def run_tiktok_sync(
    connection_id: str,
    sync_type: str = "all",
    window: SyncWindow | None = None,
    full_sync: bool = False,
    client: TikTokClient | None = None,
    session: Session | None = None,
) -> SyncResult:
    """
    Sync one TikTok connection.

    Args:
        connection_id: Connection to sync
        sync_type: "all" or a single entity: orders, affiliate, settlements, products
        window: Time window; computed from the connection's last sync when omitted
        full_sync: With no explicit window, re-pull the last 365 days
        client: Optional TikTok client
        session: Optional database session

    Returns:
        SyncResult with per-entity counts ("skipped" for optional entities that failed)

    Raises:
        ConnectionNotFoundError, TokenExpiredError, NoAuthorizedShopsError,
        or the orders/products failure. The connection is left in the error state.
    """
    if sync_type not in SYNC_TYPES:
        raise ValueError(f"Unknown sync type {sync_type!r}, expected one of {SYNC_TYPES}")

    if session is None:
        with get_session() as sess:
            return run_tiktok_sync(connection_id, sync_type, window, full_sync, client, sess)

    connection = session.get(TikTokConnection, connection_id)
    if connection is None:
        raise ConnectionNotFoundError(f"TikTok connection {connection_id} not found")

    window = window or compute_sync_window(connection.last_sync_at, full_sync)
    started = utc_now()
    logger.info(
        f"Starting TikTok {sync_type} sync for connection {connection_id} "
        f"({window.start.date()} to {window.end.date()})"
    )

    mark_sync_running(connection_id, session)
    client = client or TikTokClient()
    result = SyncResult(connection_id=connection_id, sync_type=sync_type, window=window)

    try:
        token = get_valid_token(connection_id, client=client, session=session)
        ctx = _SyncContext(
            client=client,
            access_token=token.access_token,
            connection=token.connection,
            window=window,
            page_size=get_page_size(),
            session=session,
        )
        ensure_shop(ctx)

        if _wants(sync_type, "orders"):
            result.counts["orders"] = sync_orders(ctx)
        if _wants(sync_type, "affiliate"):
            result.counts["affiliate_orders"] = _optional("Affiliate", sync_affiliate_orders, ctx)
        if _wants(sync_type, "settlements"):
            result.counts["settlements"] = _optional("Settlement", sync_settlements, ctx)
        if _wants(sync_type, "products"):
            result.counts.update(sync_products(ctx))

    except Exception as e:
        session.rollback()
        logger.error(f"TikTok sync failed for connection {connection_id}: {e}", exc_info=True)
        mark_sync_error(connection_id, str(e), session)
        raise

    mark_sync_success(connection_id, session=session)
    logger.info(
        f"TikTok sync completed for connection {connection_id} in "
        f"{format_duration(utc_now() - started)}: {result.counts}"
    )
    return result


def start_sync(
    connection_id: str,
    sync_type: str = "all",
    window: SyncWindow | None = None,
    full_sync: bool = False,
    client: TikTokClient | None = None,
    session: Session | None = None,
) -> dict[str, Any]:
    """
    Inbound sync operation: run a sync and report the outcome as a plain dict.

    Returns:
        {"success": True, "results": {...}} on success,
        {"success": False, "status": "already_syncing"} when a sync is in flight,
        {"success": False, "error": message} on failure
    """
    if session is None:
        with get_session() as sess:
            return start_sync(connection_id, sync_type, window, full_sync, client, sess)

    connection = session.get(TikTokConnection, connection_id)
    if connection is None:
        return {"success": False, "error": f"TikTok connection {connection_id} not found"}
    if is_syncing(connection):
        logger.info(f"Connection {connection_id} is already syncing")
        return {"success": False, "status": "already_syncing"}

    try:
        result = run_tiktok_sync(connection_id, sync_type, window, full_sync, client, session)
    except Exception as e:
        return {"success": False, "error": str(e)}

    return {"success": True, "results": result.to_dict()}


def sync_all_connections(client: TikTokClient | None = None) -> list[dict[str, Any]]:
    """
    Scheduled entry point: sync and reconcile every connection holding a token.

    Each connection runs in its own session so one failure does not stop the rest.

    Returns:
        One outcome dict per connection
    """
    connection_ids = list_syncable_connections()
    logger.info(f"Scheduled TikTok sync for {len(connection_ids)} connection(s)")

    client = client or TikTokClient()
    fee_percent = get_platform_fee_percent()
    outcomes = []

    for connection_id in connection_ids:
        with get_session() as session:
            outcome = start_sync(connection_id, client=client, session=session)
            if outcome.get("success"):
                window = outcome["results"]["window"]
                # Ledger entries are whole-day totals
                days = day_window(
                    utc_day(datetime.fromisoformat(window["start"])),
                    utc_day(datetime.fromisoformat(window["end"])),
                )
                outcome["reconcile"] = reconcile(
                    connection_id,
                    days,
                    fee_percent,
                    session,
                )
            else:
                logger.warning(f"Scheduled sync failed for connection {connection_id}: {outcome}")
        outcomes.append({"connection_id": connection_id, **outcome})

    succeeded = sum(1 for o in outcomes if o.get("success"))
    logger.info(f"Scheduled TikTok sync finished: {succeeded}/{len(outcomes)} connection(s) succeeded")
    return outcomes
