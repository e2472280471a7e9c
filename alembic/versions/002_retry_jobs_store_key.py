"""Scope retry jobs by store and allow a queued successor of a running job

Revision ID: 002_retry_jobs_store_key
Revises: 001_initial_schema
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_retry_jobs_store_key'
down_revision: Union[str, None] = '001_initial_schema'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('retry_jobs', sa.Column('store_key', sa.String(length=64), nullable=True))
    # Every payload carries its store key
    op.execute("UPDATE retry_jobs SET store_key = payload->>'store_key'")
    op.alter_column('retry_jobs', 'store_key', nullable=False)

    op.drop_index('uq_retry_jobs_pending_type_sku', table_name='retry_jobs')
    op.create_index(
        'uq_retry_jobs_queued_type_store_sku', 'retry_jobs', ['job_type', 'store_key', 'sku'],
        unique=True, postgresql_where=sa.text("status = 'queued'"),
    )


def downgrade() -> None:
    op.drop_index('uq_retry_jobs_queued_type_store_sku', table_name='retry_jobs')
    # Queued successors of running jobs cannot survive the narrower key
    op.execute(
        "DELETE FROM retry_jobs q USING retry_jobs r "
        "WHERE q.status = 'queued' AND r.status = 'running' "
        "AND q.job_type = r.job_type AND q.sku = r.sku"
    )
    op.create_index(
        'uq_retry_jobs_pending_type_sku', 'retry_jobs', ['job_type', 'sku'],
        unique=True, postgresql_where=sa.text("status IN ('queued', 'running')"),
    )
    op.drop_column('retry_jobs', 'store_key')
