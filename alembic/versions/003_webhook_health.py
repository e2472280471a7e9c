"""Track last webhook delivery per store, location and topic

Revision ID: 003_webhook_health
Revises: 002_retry_jobs_store_key
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '003_webhook_health'
down_revision: Union[str, None] = '002_retry_jobs_store_key'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'webhook_health',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_key', sa.String(length=64), nullable=False),
        sa.Column('location_gid', sa.String(), nullable=False, server_default=''),
        sa.Column('topic', sa.String(length=64), nullable=False),
        sa.Column('last_received_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column('last_webhook_id', sa.String(length=255), nullable=True),
        sa.Column('last_outcome', sa.String(length=32), nullable=True),
        sa.Column('event_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_error_at', postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('updated_at', postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_key', 'location_gid', 'topic', name='uq_webhook_health_store_location_topic'),
    )
    op.create_index('ix_webhook_health_store_key', 'webhook_health', ['store_key'])

    # Seed from deliveries already in the ledger
    op.execute(
        "INSERT INTO webhook_health "
        "(store_key, location_gid, topic, last_received_at, event_count, updated_at) "
        "SELECT store_key, COALESCE(location_gid, ''), topic, MAX(received_at), COUNT(*), MAX(received_at) "
        "FROM webhook_events WHERE store_key IS NOT NULL "
        "GROUP BY store_key, COALESCE(location_gid, ''), topic"
    )


def downgrade() -> None:
    op.drop_index('ix_webhook_health_store_key', table_name='webhook_health')
    op.drop_table('webhook_health')
