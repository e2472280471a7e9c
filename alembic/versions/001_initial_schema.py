"""Initial schema - stores, inventory, sales, webhook ledger, sync queue, retry jobs

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'shopify_stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('domain', sa.String(length=255), nullable=False),
        sa.Column('access_token', sa.String(), nullable=True),
        sa.Column('webhook_secret', sa.String(), nullable=True),
        sa.Column('api_version', sa.String(length=16), nullable=True),
        sa.Column('inventory_truth_mode', sa.String(length=16), nullable=False, server_default='shopify'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column('updated_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_shopify_stores_key', 'shopify_stores', ['key'], unique=True)
    op.create_index('ix_shopify_stores_domain', 'shopify_stores', ['domain'], unique=True)

    op.create_table(
        'inventory_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column('updated_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column('store_key', sa.String(length=64), nullable=False),
        sa.Column('sku', sa.String(), nullable=False),
        sa.Column('item_type', sa.String(length=16), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('location_gid', sa.String(), nullable=True),
        sa.Column('remote_product_id', sa.String(), nullable=True),
        sa.Column('remote_variant_id', sa.String(), nullable=True),
        sa.Column('remote_inventory_item_id', sa.String(), nullable=True),
        sa.Column('sold_at', postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('sold_price', sa.Float(), nullable=True),
        sa.Column('sold_order_id', sa.String(), nullable=True),
        sa.Column('sold_channel', sa.String(length=32), nullable=True),
        sa.Column('sold_currency', sa.String(length=8), nullable=True),
        sa.Column('sync_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('last_synced_at', postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('last_remote_seen_at', postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('removed_from_remote_at', postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('remote_removal_mode', sa.String(length=32), nullable=True),
        sa.Column('remote_drift', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('remote_drift_details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('deleted_at', postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('updated_by', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_key', 'sku', name='uq_inventory_items_store_sku'),
        sa.CheckConstraint('quantity >= 0', name='ck_inventory_items_quantity_non_negative'),
    )
    op.create_index('ix_inventory_items_store_key', 'inventory_items', ['store_key'])
    op.create_index('ix_inventory_items_location_gid', 'inventory_items', ['location_gid'])
    op.create_index('ix_inventory_items_remote_product_id', 'inventory_items', ['remote_product_id'])
    op.create_index('ix_inventory_items_sold_order_id', 'inventory_items', ['sold_order_id'])
    op.create_index('ix_inventory_items_sync_status', 'inventory_items', ['sync_status'])
    op.create_index(
        'ix_inventory_items_remote_variant_location', 'inventory_items',
        ['store_key', 'remote_variant_id', 'location_gid'],
    )
    op.create_index(
        'ix_inventory_items_remote_inventory_location', 'inventory_items',
        ['store_key', 'remote_inventory_item_id', 'location_gid'],
    )

    op.create_table(
        'item_sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('inventory_item_id', sa.Integer(), nullable=False),
        sa.Column('remote_order_id', sa.String(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('restored_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sale_price', sa.Float(), nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=True),
        sa.Column('channel', sa.String(length=32), nullable=False),
        sa.Column('sold_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column('updated_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.ForeignKeyConstraint(['inventory_item_id'], ['inventory_items.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('inventory_item_id', 'remote_order_id', name='uq_item_sales_item_order'),
    )
    op.create_index('ix_item_sales_inventory_item_id', 'item_sales', ['inventory_item_id'])
    op.create_index('ix_item_sales_remote_order_id', 'item_sales', ['remote_order_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('webhook_id', sa.String(length=255), nullable=False),
        sa.Column('topic', sa.String(length=64), nullable=False),
        sa.Column('store_key', sa.String(length=64), nullable=True),
        sa.Column('shop_domain', sa.String(length=255), nullable=True),
        sa.Column('location_gid', sa.String(), nullable=True),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('outcome', sa.String(length=32), nullable=True),
        sa.Column('received_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('webhook_id'),
    )
    op.create_index('ix_webhook_events_topic', 'webhook_events', ['topic'])
    op.create_index('ix_webhook_events_store_key', 'webhook_events', ['store_key'])

    op.create_table(
        'sync_queue',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('inventory_item_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='queued'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('rate_limited_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('retry_after', postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('remote_product_id', sa.String(), nullable=True),
        sa.Column('queued_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column('started_at', postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('completed_at', postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('updated_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.ForeignKeyConstraint(['inventory_item_id'], ['inventory_items.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sync_queue_inventory_item_id', 'sync_queue', ['inventory_item_id'])
    op.create_index('ix_sync_queue_status', 'sync_queue', ['status'])
    op.create_index('ix_sync_queue_queued_at', 'sync_queue', ['queued_at'])
    op.create_index('ix_sync_queue_status_queued_at', 'sync_queue', ['status', 'queued_at'])
    # At most one in-flight push per item
    op.create_index(
        'uq_sync_queue_processing_item', 'sync_queue', ['inventory_item_id'],
        unique=True, postgresql_where=sa.text("status = 'processing'"),
    )

    op.create_table(
        'retry_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_type', sa.String(length=32), nullable=False),
        sa.Column('sku', sa.String(), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='queued'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('next_run_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('started_at', postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column('updated_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_retry_jobs_sku', 'retry_jobs', ['sku'])
    op.create_index('ix_retry_jobs_status_next_run', 'retry_jobs', ['status', 'next_run_at'])
    op.create_index(
        'uq_retry_jobs_pending_type_sku', 'retry_jobs', ['job_type', 'sku'],
        unique=True, postgresql_where=sa.text("status IN ('queued', 'running')"),
    )


def downgrade() -> None:
    op.drop_index('uq_retry_jobs_pending_type_sku', table_name='retry_jobs')
    op.drop_index('ix_retry_jobs_status_next_run', table_name='retry_jobs')
    op.drop_index('ix_retry_jobs_sku', table_name='retry_jobs')
    op.drop_table('retry_jobs')

    op.drop_index('uq_sync_queue_processing_item', table_name='sync_queue')
    op.drop_index('ix_sync_queue_status_queued_at', table_name='sync_queue')
    op.drop_index('ix_sync_queue_queued_at', table_name='sync_queue')
    op.drop_index('ix_sync_queue_status', table_name='sync_queue')
    op.drop_index('ix_sync_queue_inventory_item_id', table_name='sync_queue')
    op.drop_table('sync_queue')

    op.drop_index('ix_webhook_events_store_key', table_name='webhook_events')
    op.drop_index('ix_webhook_events_topic', table_name='webhook_events')
    op.drop_table('webhook_events')

    op.drop_index('ix_item_sales_remote_order_id', table_name='item_sales')
    op.drop_index('ix_item_sales_inventory_item_id', table_name='item_sales')
    op.drop_table('item_sales')

    op.drop_index('ix_inventory_items_remote_inventory_location', table_name='inventory_items')
    op.drop_index('ix_inventory_items_remote_variant_location', table_name='inventory_items')
    op.drop_index('ix_inventory_items_sync_status', table_name='inventory_items')
    op.drop_index('ix_inventory_items_sold_order_id', table_name='inventory_items')
    op.drop_index('ix_inventory_items_remote_product_id', table_name='inventory_items')
    op.drop_index('ix_inventory_items_location_gid', table_name='inventory_items')
    op.drop_index('ix_inventory_items_store_key', table_name='inventory_items')
    op.drop_table('inventory_items')

    op.drop_index('ix_shopify_stores_domain', table_name='shopify_stores')
    op.drop_index('ix_shopify_stores_key', table_name='shopify_stores')
    op.drop_table('shopify_stores')
