"""
SQLAlchemy models for the TikTok Shop ledger sync service.

Two groups of tables:
- Raw TikTok data synced per (user, connection): connections, orders,
  affiliate orders, settlements, product mappings
- The daily ledger fed by reconciliation: ledger products and variants,
  daily entries, per-product/per-variant daily units, and the sync log
"""

import uuid

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")

PLATFORM_TIKTOK_SHOP = "tiktok_shop"

SYNC_STATUS_IDLE = "idle"
SYNC_STATUS_SYNCING = "syncing"
SYNC_STATUS_ERROR = "error"


def _uuid() -> str:
    return str(uuid.uuid4())


def _money():
    return Numeric(12, 2)


# =============================================================================
# TIKTOK MODELS
# =============================================================================


class TikTokConnection(Base):
    """
    A linked TikTok shop: credentials plus sync state.

    Token fields are written only by the token manager, status fields only by
    the sync orchestrator.
    """

    __tablename__ = "tiktok_connections"

    id = Column(Text, primary_key=True, default=_uuid)
    user_id = Column(Text, nullable=False)

    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    refresh_token_expires_at = Column(DateTime(timezone=True))

    shop_cipher = Column(Text)  # Opaque shop identifier required on shop-scoped calls
    shop_id = Column(Text)
    shop_name = Column(Text)
    region = Column(Text)

    last_sync_at = Column(DateTime(timezone=True))
    sync_status = Column(Text, nullable=False, default=SYNC_STATUS_IDLE)  # idle | syncing | error
    sync_error = Column(Text)

    connected_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "shop_id", name="uq_tiktok_connections_user_shop"),
        Index("ix_tiktok_connections_user_id", "user_id"),
    )


class TikTokOrder(Base):
    """TikTok order, overwritten in full on every sync."""

    __tablename__ = "tiktok_orders"

    user_id = Column(Text, primary_key=True)
    order_id = Column(Text, primary_key=True)
    connection_id = Column(Text, ForeignKey("tiktok_connections.id", ondelete="SET NULL"))

    order_status = Column(Text)
    payment_status = Column(Text)
    total_amount = Column(_money(), default=0)
    subtotal = Column(_money(), default=0)
    gmv = Column(_money(), default=0)
    shipping_fee = Column(_money(), default=0)
    platform_discount = Column(_money(), default=0)
    seller_discount = Column(_money(), default=0)
    refund_amount = Column(_money(), default=0)
    currency = Column(Text)

    order_create_time = Column(DateTime(timezone=True))
    order_paid_time = Column(DateTime(timezone=True))

    items = Column(JSONType)  # [{product_id, product_name, sku_id, sku_name, quantity, price}]
    raw_data = Column(JSONType)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_tiktok_orders_connection_create_time", "connection_id", "order_create_time"),
    )


class TikTokAffiliateOrder(Base):
    """Affiliate commission record; one order can appear under several collaboration types."""

    __tablename__ = "tiktok_affiliate_orders"

    user_id = Column(Text, primary_key=True)
    order_id = Column(Text, primary_key=True)
    affiliate_type = Column(Text, primary_key=True)
    connection_id = Column(Text, ForeignKey("tiktok_connections.id", ondelete="SET NULL"))

    commission_rate = Column(Numeric(8, 4), default=0)
    commission_amount = Column(_money(), default=0)
    order_amount = Column(_money(), default=0)
    product_id = Column(Text)
    product_name = Column(Text)
    creator_username = Column(Text)
    order_create_time = Column(DateTime(timezone=True))
    raw_data = Column(JSONType)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_tiktok_affiliate_orders_connection_create_time", "connection_id", "order_create_time"),
    )


class TikTokSettlement(Base):
    """Authoritative, lagging financial settlement."""

    __tablename__ = "tiktok_settlements"

    user_id = Column(Text, primary_key=True)
    settlement_id = Column(Text, primary_key=True)
    connection_id = Column(Text, ForeignKey("tiktok_connections.id", ondelete="SET NULL"))

    settlement_time = Column(DateTime(timezone=True))
    settlement_amount = Column(_money(), default=0)
    revenue = Column(_money(), default=0)
    platform_fee = Column(_money(), default=0)
    affiliate_commission = Column(_money(), default=0)
    shipping_fee_subsidy = Column(_money(), default=0)
    refund_amount = Column(_money(), default=0)
    adjustment = Column(_money(), default=0)
    currency = Column(Text)
    raw_data = Column(JSONType)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_tiktok_settlements_connection_id", "connection_id"),)


class TikTokProduct(Base):
    """Synced TikTok product, linked to the ledger product it feeds."""

    __tablename__ = "tiktok_products"

    user_id = Column(Text, primary_key=True)
    product_id = Column(Text, primary_key=True)
    connection_id = Column(Text, ForeignKey("tiktok_connections.id", ondelete="SET NULL"))
    ledger_product_id = Column(Text, ForeignKey("ledger_products.id", ondelete="SET NULL"))

    product_name = Column(Text)
    product_status = Column(Text)
    skus = Column(JSONType)
    raw_data = Column(JSONType)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    ledger_product = relationship("LedgerProduct")

    __table_args__ = (Index("ix_tiktok_products_connection_id", "connection_id"),)


# =============================================================================
# LEDGER MODELS
# =============================================================================


class LedgerProduct(Base):
    """Internally owned product carrying cost of goods."""

    __tablename__ = "ledger_products"

    id = Column(Text, primary_key=True, default=_uuid)
    user_id = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    sku = Column(Text)
    cogs = Column(_money(), nullable=False, default=0)
    platform = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    variants = relationship(
        "LedgerProductVariant", back_populates="product", cascade="all, delete-orphan"
    )
    daily_units = relationship(
        "LedgerProductDailyUnits", back_populates="product", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_ledger_products_user_id", "user_id"),)


class LedgerProductVariant(Base):
    """One SKU of a ledger product."""

    __tablename__ = "ledger_product_variants"

    id = Column(Text, primary_key=True, default=_uuid)
    ledger_product_id = Column(
        Text, ForeignKey("ledger_products.id", ondelete="CASCADE"), nullable=False
    )
    sku_id = Column(Text)
    sku_name = Column(Text)
    seller_sku = Column(Text)
    cogs = Column(_money(), nullable=False, default=0)

    product = relationship("LedgerProduct", back_populates="variants")
    daily_units = relationship(
        "LedgerVariantDailyUnits", back_populates="variant", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("ledger_product_id", "sku_id", name="uq_ledger_product_variants_product_sku"),
    )


# Written by reconciliation on every pass
SYNC_OWNED_FIELDS = (
    "gross_revenue",
    "refunds",
    "num_orders",
    "platform_fee",
    "commissions",
    "shipping_fee",
)

# Entered by the user; never written by reconciliation once the row exists
MANUAL_FIELDS = (
    "postage_pick_pack",
    "pick_pack",
    "ad_spend",
    "gmv_max_ad_spend",
    "ad_spend_pct",
    "notes",
)


class LedgerDailyEntry(Base):
    """One day's P&L line for one user and platform."""

    __tablename__ = "ledger_daily_entries"

    id = Column(Text, primary_key=True, default=_uuid)
    user_id = Column(Text, nullable=False)
    date = Column(Date, nullable=False)
    platform = Column(Text, nullable=False)

    # Sync-owned
    gross_revenue = Column(_money(), nullable=False, default=0)
    refunds = Column(_money(), nullable=False, default=0)
    num_orders = Column(Integer, nullable=False, default=0)
    platform_fee = Column(_money(), nullable=False, default=0)
    commissions = Column(_money(), nullable=False, default=0)
    shipping_fee = Column(_money(), nullable=False, default=0)

    # Manually owned
    postage_pick_pack = Column(_money(), nullable=False, default=0)
    pick_pack = Column(_money(), nullable=False, default=0)
    ad_spend = Column(_money(), nullable=False, default=0)
    gmv_max_ad_spend = Column(_money(), nullable=False, default=0)
    ad_spend_pct = Column(Numeric(6, 2), nullable=False, default=0)
    notes = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "date", "platform", name="uq_ledger_daily_entries_user_date_platform"),
    )


class LedgerProductDailyUnits(Base):
    """Units of a ledger product sold on one day."""

    __tablename__ = "ledger_product_daily_units"

    user_id = Column(Text, primary_key=True)
    product_id = Column(Text, ForeignKey("ledger_products.id", ondelete="CASCADE"), primary_key=True)
    date = Column(Date, primary_key=True)
    platform = Column(Text, primary_key=True)
    entry_id = Column(Text, ForeignKey("ledger_daily_entries.id", ondelete="CASCADE"), nullable=False)
    units_sold = Column(Integer, nullable=False, default=0)

    product = relationship("LedgerProduct", back_populates="daily_units")


class LedgerVariantDailyUnits(Base):
    """Units of a ledger product variant sold on one day."""

    __tablename__ = "ledger_variant_daily_units"

    user_id = Column(Text, primary_key=True)
    variant_id = Column(
        Text, ForeignKey("ledger_product_variants.id", ondelete="CASCADE"), primary_key=True
    )
    date = Column(Date, primary_key=True)
    platform = Column(Text, primary_key=True)
    product_id = Column(Text, ForeignKey("ledger_products.id", ondelete="CASCADE"), nullable=False)
    entry_id = Column(Text, ForeignKey("ledger_daily_entries.id", ondelete="CASCADE"), nullable=False)
    units_sold = Column(Integer, nullable=False, default=0)

    variant = relationship("LedgerProductVariant", back_populates="daily_units")


class LedgerSyncLog(Base):
    """Per-day audit of estimated vs settled figures with a confidence score."""

    __tablename__ = "ledger_sync_log"

    user_id = Column(Text, primary_key=True)
    sync_date = Column(Date, primary_key=True)
    platform = Column(Text, primary_key=True)
    estimated_data = Column(JSONType)
    settled_data = Column(JSONType)
    match_percentage = Column(Integer, nullable=False)  # 50 estimated, 100 settlement-confirmed
    synced_at = Column(DateTime(timezone=True))
