"""Stripe webhook event log

Revision ID: 002_add_stripe_event_log
Revises: 001_initial_schema
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

revision = '002_add_stripe_event_log'
down_revision = '001_initial_schema'
branch_labels = None
depends_on = None

INDEXES = (
    ('ix_stripe_event_processed', ['processed', 'created_at']),
    ('ix_stripe_event_type', ['event_type']),
    ('ix_stripe_event_retry', ['next_retry_at']),
    ('ix_stripe_event_dead_letter', ['dead_letter']),
)

def upgrade() -> None:
    op.create_table(
        'stripe_event_log',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('stripe_event_id', sa.String(255), unique=True, nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('event_data', JSONB),
        sa.Column('processed', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('processing_attempts', sa.Integer, server_default=sa.text('0'), nullable=False),
        sa.Column('error_message', sa.Text),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('next_retry_at', sa.DateTime(timezone=True)),
        sa.Column('dead_letter', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('processing_attempts >= 0', name='ck_stripe_event_attempts_non_negative'),
    )
    for name, columns in INDEXES:
        op.create_index(name, 'stripe_event_log', columns)

def downgrade() -> None:
    for name, _ in reversed(INDEXES):
        op.drop_index(name, 'stripe_event_log')
    op.drop_table('stripe_event_log')
