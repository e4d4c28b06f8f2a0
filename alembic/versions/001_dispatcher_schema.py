"""dispatcher schema - delivery ledger and monitor check log

Revision ID: 001
Revises:
Create Date: 2026-10-17 09:00:00.000000

webhook_events, endpoints and monitors belong to the ingestion and
configuration services and must already exist. This revision creates the
two tables the dispatcher owns and puts them under row-level security.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TENANT_POLICY = "tenant_id = current_setting('app.current_tenant', true)"


def upgrade() -> None:
    # Create delivery_attempts table (status as VARCHAR, not enum)
    op.create_table(
        'delivery_attempts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(36), sa.ForeignKey('webhook_events.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('endpoint_id', sa.String(36), nullable=False, index=True),
        sa.Column('tenant_id', sa.String(36), nullable=False, index=True),
        sa.Column('status', sa.String(9), nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer(), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('response_excerpt', sa.Text(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('event_id', 'attempt_count', name='uq_delivery_attempts_event_attempt'),
    )
    op.create_index(
        'uq_delivery_attempts_delivered_event',
        'delivery_attempts',
        ['event_id'],
        unique=True,
        postgresql_where=sa.text("status = 'delivered'"),
    )
    op.create_index('ix_delivery_attempts_next_attempt_at', 'delivery_attempts', ['next_attempt_at'])

    # Create monitor_checks table (append-only)
    op.create_table(
        'monitor_checks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('monitor_id', sa.String(36), sa.ForeignKey('monitors.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tenant_id', sa.String(36), nullable=False, index=True),
        sa.Column('status', sa.String(7), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('duration_ms', sa.Float(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('checked_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_monitor_checks_monitor_checked_at', 'monitor_checks', ['monitor_id', 'checked_at'])

    # Row-level security keyed on the transaction-local tenant setting.
    # Not FORCEd: the owning dispatcher role runs the cross-tenant claim,
    # every other role only sees its current tenant.
    for table in ('delivery_attempts', 'monitor_checks'):
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY {table}_tenant_isolation ON {table} "
            f"USING ({TENANT_POLICY}) WITH CHECK ({TENANT_POLICY})"
        )


def downgrade() -> None:
    for table in ('monitor_checks', 'delivery_attempts'):
        op.execute(f"DROP POLICY IF EXISTS {table}_tenant_isolation ON {table}")
    op.drop_table('monitor_checks')
    op.drop_table('delivery_attempts')
