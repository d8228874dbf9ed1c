"""Initial TikTok sync and ledger schema

Revision ID: 0001
Revises: 
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def _money(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.Numeric(precision=12, scale=2), server_default='0', nullable=nullable)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True)


def upgrade() -> None:
    # Connections
    op.create_table(
        'tiktok_connections',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refresh_token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shop_cipher', sa.Text(), nullable=True),
        sa.Column('shop_id', sa.Text(), nullable=True),
        sa.Column('shop_name', sa.Text(), nullable=True),
        sa.Column('region', sa.Text(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_status', sa.Text(), server_default='idle', nullable=False),
        sa.Column('sync_error', sa.Text(), nullable=True),
        _timestamp('connected_at'),
        _timestamp('updated_at'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'shop_id', name='uq_tiktok_connections_user_shop')
    )
    op.create_index('ix_tiktok_connections_user_id', 'tiktok_connections', ['user_id'])

    # Orders
    op.create_table(
        'tiktok_orders',
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('order_id', sa.Text(), nullable=False),
        sa.Column('connection_id', sa.Text(), nullable=True),
        sa.Column('order_status', sa.Text(), nullable=True),
        sa.Column('payment_status', sa.Text(), nullable=True),
        _money('total_amount'),
        _money('subtotal'),
        _money('gmv'),
        _money('shipping_fee'),
        _money('platform_discount'),
        _money('seller_discount'),
        _money('refund_amount'),
        sa.Column('currency', sa.Text(), nullable=True),
        sa.Column('order_create_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('order_paid_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('items', postgresql.JSONB(), nullable=True),
        sa.Column('raw_data', postgresql.JSONB(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['connection_id'], ['tiktok_connections.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('user_id', 'order_id')
    )
    op.create_index(
        'ix_tiktok_orders_connection_create_time', 'tiktok_orders', ['connection_id', 'order_create_time']
    )

    # Affiliate orders
    op.create_table(
        'tiktok_affiliate_orders',
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('order_id', sa.Text(), nullable=False),
        sa.Column('affiliate_type', sa.Text(), nullable=False),
        sa.Column('connection_id', sa.Text(), nullable=True),
        sa.Column('commission_rate', sa.Numeric(precision=8, scale=4), server_default='0', nullable=True),
        _money('commission_amount'),
        _money('order_amount'),
        sa.Column('product_id', sa.Text(), nullable=True),
        sa.Column('product_name', sa.Text(), nullable=True),
        sa.Column('creator_username', sa.Text(), nullable=True),
        sa.Column('order_create_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_data', postgresql.JSONB(), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['connection_id'], ['tiktok_connections.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('user_id', 'order_id', 'affiliate_type')
    )
    op.create_index(
        'ix_tiktok_affiliate_orders_connection_create_time',
        'tiktok_affiliate_orders',
        ['connection_id', 'order_create_time']
    )

    # Settlements
    op.create_table(
        'tiktok_settlements',
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('settlement_id', sa.Text(), nullable=False),
        sa.Column('connection_id', sa.Text(), nullable=True),
        sa.Column('settlement_time', sa.DateTime(timezone=True), nullable=True),
        _money('settlement_amount'),
        _money('revenue'),
        _money('platform_fee'),
        _money('affiliate_commission'),
        _money('shipping_fee_subsidy'),
        _money('refund_amount'),
        _money('adjustment'),
        sa.Column('currency', sa.Text(), nullable=True),
        sa.Column('raw_data', postgresql.JSONB(), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['connection_id'], ['tiktok_connections.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('user_id', 'settlement_id')
    )
    op.create_index('ix_tiktok_settlements_connection_id', 'tiktok_settlements', ['connection_id'])

    # Ledger products
    op.create_table(
        'ledger_products',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('sku', sa.Text(), nullable=True),
        _money('cogs', nullable=False),
        sa.Column('platform', sa.Text(), nullable=True),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_ledger_products_user_id', 'ledger_products', ['user_id'])

    op.create_table(
        'ledger_product_variants',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('ledger_product_id', sa.Text(), nullable=False),
        sa.Column('sku_id', sa.Text(), nullable=True),
        sa.Column('sku_name', sa.Text(), nullable=True),
        sa.Column('seller_sku', sa.Text(), nullable=True),
        _money('cogs', nullable=False),
        sa.ForeignKeyConstraint(['ledger_product_id'], ['ledger_products.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('ledger_product_id', 'sku_id', name='uq_ledger_product_variants_product_sku')
    )

    # Product mappings
    op.create_table(
        'tiktok_products',
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('product_id', sa.Text(), nullable=False),
        sa.Column('connection_id', sa.Text(), nullable=True),
        sa.Column('ledger_product_id', sa.Text(), nullable=True),
        sa.Column('product_name', sa.Text(), nullable=True),
        sa.Column('product_status', sa.Text(), nullable=True),
        sa.Column('skus', postgresql.JSONB(), nullable=True),
        sa.Column('raw_data', postgresql.JSONB(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['connection_id'], ['tiktok_connections.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['ledger_product_id'], ['ledger_products.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('user_id', 'product_id')
    )
    op.create_index('ix_tiktok_products_connection_id', 'tiktok_products', ['connection_id'])

    # Daily ledger
    op.create_table(
        'ledger_daily_entries',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('platform', sa.Text(), nullable=False),
        _money('gross_revenue', nullable=False),
        _money('refunds', nullable=False),
        sa.Column('num_orders', sa.Integer(), server_default='0', nullable=False),
        _money('platform_fee', nullable=False),
        _money('commissions', nullable=False),
        _money('shipping_fee', nullable=False),
        _money('postage_pick_pack', nullable=False),
        _money('pick_pack', nullable=False),
        _money('ad_spend', nullable=False),
        _money('gmv_max_ad_spend', nullable=False),
        sa.Column('ad_spend_pct', sa.Numeric(precision=6, scale=2), server_default='0', nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'date', 'platform', name='uq_ledger_daily_entries_user_date_platform')
    )

    op.create_table(
        'ledger_product_daily_units',
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('product_id', sa.Text(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('platform', sa.Text(), nullable=False),
        sa.Column('entry_id', sa.Text(), nullable=False),
        sa.Column('units_sold', sa.Integer(), server_default='0', nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['ledger_products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['entry_id'], ['ledger_daily_entries.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('user_id', 'product_id', 'date', 'platform')
    )

    op.create_table(
        'ledger_variant_daily_units',
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('variant_id', sa.Text(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('platform', sa.Text(), nullable=False),
        sa.Column('product_id', sa.Text(), nullable=False),
        sa.Column('entry_id', sa.Text(), nullable=False),
        sa.Column('units_sold', sa.Integer(), server_default='0', nullable=False),
        sa.ForeignKeyConstraint(['variant_id'], ['ledger_product_variants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['ledger_products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['entry_id'], ['ledger_daily_entries.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('user_id', 'variant_id', 'date', 'platform')
    )

    op.create_table(
        'ledger_sync_log',
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('sync_date', sa.Date(), nullable=False),
        sa.Column('platform', sa.Text(), nullable=False),
        sa.Column('estimated_data', postgresql.JSONB(), nullable=True),
        sa.Column('settled_data', postgresql.JSONB(), nullable=True),
        sa.Column('match_percentage', sa.Integer(), nullable=False),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('user_id', 'sync_date', 'platform')
    )


def downgrade() -> None:
    op.drop_table('ledger_sync_log')
    op.drop_table('ledger_variant_daily_units')
    op.drop_table('ledger_product_daily_units')
    op.drop_table('ledger_daily_entries')
    op.drop_table('tiktok_products')
    op.drop_table('ledger_product_variants')
    op.drop_table('ledger_products')
    op.drop_table('tiktok_settlements')
    op.drop_table('tiktok_affiliate_orders')
    op.drop_table('tiktok_orders')
    op.drop_table('tiktok_connections')
