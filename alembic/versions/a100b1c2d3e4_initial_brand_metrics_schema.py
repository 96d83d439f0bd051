"""Initial schema: brands, platform connections, Shopify and Meta data, sync bookkeeping

Revision ID: a100b1c2d3e4
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers
revision: str = 'a100b1c2d3e4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(table_name):
    bind = op.get_bind()
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def _brand_fk():
    return sa.Column(
        'brand_id', sa.Integer(),
        sa.ForeignKey('brands.id', ondelete='CASCADE'),
        nullable=False, index=True,
    )


def upgrade() -> None:
    # ── Tenants ──
    if not _has_table('brands'):
        op.create_table(
            'brands',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('owner_id', sa.String(), nullable=True, index=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        )

    if not _has_table('platform_connections'):
        op.create_table(
            'platform_connections',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            _brand_fk(),
            sa.Column('platform', sa.String(), nullable=False, index=True),
            sa.Column('shop_domain', sa.String(), nullable=True),
            sa.Column('account_id', sa.String(), nullable=True, index=True),
            sa.Column('access_token', sa.Text(), nullable=False),
            sa.Column('account_created_at', sa.DateTime(), nullable=True),
            sa.Column('status', sa.String(), server_default='active', index=True),
            sa.Column('sync_status', sa.String(), server_default='pending'),
            sa.Column('metadata', sa.JSON(), nullable=True),
            sa.Column('last_synced_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        )

    # ── Shopify ──
    if not _has_table('shopify_orders'):
        op.create_table(
            'shopify_orders',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            _brand_fk(),
            sa.Column('shopify_order_id', sa.BigInteger(), nullable=False, index=True),
            sa.Column('order_number', sa.Integer(), index=True),
            sa.Column('customer_id', sa.BigInteger(), nullable=True, index=True),
            sa.Column('customer_email', sa.String(), nullable=True),
            sa.Column('financial_status', sa.String(), index=True),
            sa.Column('fulfillment_status', sa.String(), nullable=True),
            sa.Column('currency', sa.String(), server_default='USD'),
            sa.Column('total_price', sa.Numeric(12, 2)),
            sa.Column('subtotal_price', sa.Numeric(12, 2), nullable=True),
            sa.Column('total_tax', sa.Numeric(12, 2), nullable=True),
            sa.Column('total_discounts', sa.Numeric(12, 2), server_default='0'),
            sa.Column('line_items', sa.JSON()),
            sa.Column('shipping_country', sa.String(), nullable=True),
            sa.Column('shipping_province', sa.String(), nullable=True),
            sa.Column('created_at', sa.DateTime(), index=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(), nullable=True),
            sa.Column('synced_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'shopify_order_id', name='uq_shopify_orders_brand_order'),
        )

    if not _has_table('shopify_refunds'):
        op.create_table(
            'shopify_refunds',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            _brand_fk(),
            sa.Column('shopify_refund_id', sa.BigInteger(), nullable=False, index=True),
            sa.Column('shopify_order_id', sa.BigInteger(), nullable=False, index=True),
            sa.Column('total_price', sa.Numeric(12, 2), server_default='0'),
            sa.Column('line_items', sa.JSON()),
            sa.Column('note', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), index=True),
            sa.Column('synced_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'shopify_refund_id', name='uq_shopify_refunds_brand_refund'),
        )

    if not _has_table('shopify_customers'):
        op.create_table(
            'shopify_customers',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            _brand_fk(),
            sa.Column('shopify_customer_id', sa.BigInteger(), nullable=False, index=True),
            sa.Column('email', sa.String(), nullable=True),
            sa.Column('first_name', sa.String(), nullable=True),
            sa.Column('last_name', sa.String(), nullable=True),
            sa.Column('orders_count', sa.Integer(), server_default='0'),
            sa.Column('total_spent', sa.Numeric(12, 2), server_default='0'),
            sa.Column('state', sa.String(), nullable=True),
            sa.Column('created_at', sa.DateTime(), index=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
            sa.Column('synced_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'shopify_customer_id', name='uq_shopify_customers_brand_customer'),
        )

    if not _has_table('shopify_products'):
        op.create_table(
            'shopify_products',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            _brand_fk(),
            sa.Column('shopify_product_id', sa.BigInteger(), nullable=False, index=True),
            sa.Column('title', sa.String()),
            sa.Column('product_type', sa.String(), nullable=True),
            sa.Column('vendor', sa.String(), nullable=True),
            sa.Column('status', sa.String(), nullable=True),
            sa.Column('variants', sa.JSON()),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
            sa.Column('synced_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'shopify_product_id', name='uq_shopify_products_brand_product'),
        )

    # ── Meta Ads ──
    if not _has_table('meta_campaigns'):
        op.create_table(
            'meta_campaigns',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            _brand_fk(),
            sa.Column('account_id', sa.String(), index=True),
            sa.Column('campaign_id', sa.String(), nullable=False, index=True),
            sa.Column('name', sa.String()),
            sa.Column('status', sa.String(), nullable=True),
            sa.Column('objective', sa.String(), nullable=True),
            sa.Column('daily_budget', sa.Numeric(12, 2), nullable=True),
            sa.Column('lifetime_budget', sa.Numeric(12, 2), nullable=True),
            sa.Column('created_time', sa.DateTime(), nullable=True),
            sa.Column('synced_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'campaign_id', name='uq_meta_campaigns_brand_campaign'),
        )

    if not _has_table('meta_ad_daily_insights'):
        op.create_table(
            'meta_ad_daily_insights',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            _brand_fk(),
            sa.Column('account_id', sa.String(), index=True),
            sa.Column('campaign_id', sa.String(), nullable=False, index=True),
            sa.Column('campaign_name', sa.String(), nullable=True),
            sa.Column('date', sa.Date(), nullable=False, index=True),
            sa.Column('spend', sa.Numeric(12, 2), server_default='0'),
            sa.Column('impressions', sa.BigInteger(), server_default='0'),
            sa.Column('clicks', sa.BigInteger(), server_default='0'),
            sa.Column('reach', sa.BigInteger(), server_default='0'),
            sa.Column('purchases', sa.Float(), server_default='0'),
            sa.Column('purchase_value', sa.Numeric(12, 2), server_default='0'),
            sa.Column('ctr', sa.Float(), nullable=True),
            sa.Column('cpc', sa.Float(), nullable=True),
            sa.Column('cpm', sa.Float(), nullable=True),
            sa.Column('synced_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'campaign_id', 'date', name='uq_meta_insights_brand_campaign_date'),
        )

    if not _has_table('meta_demographics'):
        op.create_table(
            'meta_demographics',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            _brand_fk(),
            sa.Column('account_id', sa.String(), index=True),
            sa.Column('date', sa.Date(), nullable=False, index=True),
            sa.Column('age', sa.String(), nullable=False),
            sa.Column('gender', sa.String(), nullable=False),
            sa.Column('spend', sa.Numeric(12, 2), server_default='0'),
            sa.Column('impressions', sa.BigInteger(), server_default='0'),
            sa.Column('clicks', sa.BigInteger(), server_default='0'),
            sa.Column('reach', sa.BigInteger(), server_default='0'),
            sa.Column('synced_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'account_id', 'date', 'age', 'gender', name='uq_meta_demographics_row'),
        )

    # ── Sync bookkeeping ──
    if not _has_table('etl_jobs'):
        op.create_table(
            'etl_jobs',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            _brand_fk(),
            sa.Column('platform', sa.String(), nullable=True, index=True),
            sa.Column('entity', sa.String(), index=True),
            sa.Column('job_type', sa.String(), index=True),
            sa.Column('status', sa.String(), server_default='queued', index=True),
            sa.Column('rows_written', sa.Integer(), server_default='0'),
            sa.Column('total_rows', sa.Integer(), nullable=True),
            sa.Column('progress_pct', sa.Float(), server_default='0'),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('started_at', sa.DateTime(), nullable=True),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), index=True),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        )

    if not _has_table('etl_cursors'):
        op.create_table(
            'etl_cursors',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            _brand_fk(),
            sa.Column('entity', sa.String(), nullable=False),
            sa.Column('last_complete_at', sa.DateTime(), nullable=True),
            sa.Column('last_sync_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'entity', name='uq_etl_cursors_brand_entity'),
        )

    if not _has_table('queue_jobs'):
        op.create_table(
            'queue_jobs',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('queue', sa.String(), nullable=False, index=True),
            sa.Column('name', sa.String(), nullable=False, index=True),
            sa.Column('data', sa.JSON(), nullable=False),
            sa.Column('brand_id', sa.Integer(), nullable=True, index=True),
            sa.Column('priority', sa.Integer(), server_default='0'),
            sa.Column('status', sa.String(), server_default='waiting', index=True),
            sa.Column('attempts_made', sa.Integer(), server_default='0'),
            sa.Column('max_attempts', sa.Integer(), server_default='1'),
            sa.Column('backoff_delay', sa.Float(), server_default='0'),
            sa.Column('run_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('timeout_seconds', sa.Integer(), nullable=True),
            sa.Column('stalled_count', sa.Integer(), server_default='0'),
            sa.Column('max_stalled_count', sa.Integer(), server_default='3'),
            sa.Column('remove_on_complete', sa.Integer(), nullable=True),
            sa.Column('remove_on_fail', sa.Integer(), nullable=True),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('result', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('started_at', sa.DateTime(), nullable=True),
            sa.Column('finished_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_queue_jobs_ready', 'queue_jobs', ['queue', 'status', 'run_at'])


def downgrade() -> None:
    op.drop_index('ix_queue_jobs_ready', table_name='queue_jobs')
    for table in (
        'queue_jobs', 'etl_cursors', 'etl_jobs',
        'meta_demographics', 'meta_ad_daily_insights', 'meta_campaigns',
        'shopify_products', 'shopify_customers', 'shopify_refunds', 'shopify_orders',
        'platform_connections', 'brands',
    ):
        op.drop_table(table)
