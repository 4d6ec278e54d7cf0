"""Initial schema: brands, users, orders, revenue aggregates

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 00:00:00.000000

WHAT:
    Creates the tables for the ingestion pipeline:
    - brands / users / user_brands: tenants and their dashboard users
    - shopify_orders: one row per (brand, Shopify order id)
    - daily_revenue / monthly_revenue: recomputed aggregates

WHY:
    Orders are the source of truth; revenue rows are derived from them and
    overwritten on every recalculation. The unique constraints are what make
    order upserts and revenue writes idempotent.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Tenants and users
    # =========================================================================
    op.create_table(
        'brands',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False, unique=True),
        sa.Column('shopify_domain', sa.String(), nullable=True),
        sa.Column('shopify_shop_id', sa.String(), nullable=True),
        sa.Column('shopify_access_token_enc', sa.String(), nullable=True),
        sa.Column('fb_ad_accounts', sa.JSON(), nullable=False),
        sa.Column('google_ad_accounts', sa.JSON(), nullable=False),
        sa.Column('ga4_property_id', sa.String(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_brands_shopify_domain', 'brands', ['shopify_domain'])

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('method', sa.Enum('password', 'google', 'shopify', name='loginmethodenum'), nullable=False),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'user_brands',
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id', ondelete='CASCADE'), primary_key=True),
    )

    # =========================================================================
    # STEP 2: Order store
    # =========================================================================
    # WHAT: Minimal order facts, refunds folded into the original order
    # WHY: Unique (brand_id, shopify_order_id) makes replays overwrite
    op.create_table(
        'shopify_orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id', ondelete='CASCADE'), nullable=False),
        sa.Column('shopify_order_id', sa.String(), nullable=False),
        sa.Column('order_date', sa.String(10), nullable=False),
        sa.Column('total_price', sa.Numeric(18, 4), nullable=False),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('financial_status', sa.String(), nullable=True),
        sa.Column('is_cancelled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('refund_amount', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('refunds', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('brand_id', 'shopify_order_id', name='uq_shopify_order_brand'),
    )
    op.create_index('ix_shopify_orders_brand_date', 'shopify_orders', ['brand_id', 'order_date'])

    # =========================================================================
    # STEP 3: Revenue aggregates
    # =========================================================================
    op.create_table(
        'daily_revenue',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id', ondelete='CASCADE'), nullable=False),
        sa.Column('date', sa.String(10), nullable=False),
        sa.Column('total_sales', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('refund_amount', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('net_sales', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('order_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cancelled_order_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('calculated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('brand_id', 'date', name='uq_daily_revenue_brand_date'),
    )

    op.create_table(
        'monthly_revenue',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id', ondelete='CASCADE'), nullable=False),
        sa.Column('month', sa.String(7), nullable=False),
        sa.Column('total_sales', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('refund_amount', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('net_sales', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('order_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('calculated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('brand_id', 'month', name='uq_monthly_revenue_brand_month'),
    )


def downgrade() -> None:
    op.drop_table('monthly_revenue')
    op.drop_table('daily_revenue')
    op.drop_index('ix_shopify_orders_brand_date', table_name='shopify_orders')
    op.drop_table('shopify_orders')
    op.drop_table('user_brands')
    op.drop_table('users')
    op.drop_index('ix_brands_shopify_domain', table_name='brands')
    op.drop_table('brands')
    op.execute("DROP TYPE IF EXISTS loginmethodenum")
