"""Manual top-up fields on transactions

Revision ID: 003_add_manual_topups
Revises: 002_add_stripe_event_log
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = '003_add_manual_topups'
down_revision = '002_add_stripe_event_log'
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.add_column('transactions', sa.Column('is_first_purchase', sa.Boolean, server_default=sa.text('false'), nullable=False))
    op.add_column('transactions', sa.Column('bonus_credits', sa.Integer, server_default=sa.text('0'), nullable=False))
    op.add_column('transactions', sa.Column('screenshot_url', sa.Text))
    op.create_index('ix_transactions_status', 'transactions', ['status', 'created_at'])

def downgrade() -> None:
    op.drop_index('ix_transactions_status', 'transactions')
    op.drop_column('transactions', 'screenshot_url')
    op.drop_column('transactions', 'bonus_credits')
    op.drop_column('transactions', 'is_first_purchase')
