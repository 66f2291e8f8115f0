"""credit ledger schema
Revision ID: 001_initial_schema
Revises: 
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

def _id():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True)

def _user_fk(name='user_id'):
    return sa.Column(name, postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False)

def _created():
    return sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now())

def upgrade():
    op.create_table('users',
        _id(),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='user'),
        _created(),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table('profiles',
        _id(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('full_name', sa.String(length=255)),
        sa.Column('credit_balance', sa.Integer(), nullable=False, server_default='0'),
        _created(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('credit_balance >= 0', name='ck_profiles_credit_balance_non_negative'),
    )

    op.create_table('credit_audit_log',
        _id(),
        _user_fk(),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('credit_type', sa.String(length=50), nullable=False),
        sa.Column('description', sa.Text()),
        _created(),
    )
    op.create_index('ix_credit_audit_log_user_id', 'credit_audit_log', ['user_id'])

    op.create_table('transactions',
        _id(),
        _user_fk(),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=10), nullable=False, server_default='usd'),
        sa.Column('package_name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('stripe_session_id', sa.String(length=255), unique=True),
        _created(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])

    op.create_table('credit_transfers',
        _id(),
        _user_fk('sender_id'),
        _user_fk('receiver_id'),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('sender_balance_after', sa.Integer(), nullable=False),
        sa.Column('receiver_balance_after', sa.Integer(), nullable=False),
        _created(),
    )

    op.create_table('generation_jobs',
        _id(),
        _user_fk(),
        sa.Column('tool_type', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('credits_cost', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_deducted', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('external_job_id', sa.String(length=255)),
        sa.Column('input_params', postgresql.JSONB()),
        sa.Column('output_url', sa.Text()),
        sa.Column('thumbnail_url', sa.Text()),
        sa.Column('error_message', sa.Text()),
        _created(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_generation_jobs_user_id', 'generation_jobs', ['user_id'])
    op.create_index('ix_generation_jobs_status_created', 'generation_jobs', ['status', 'created_at'])

    op.create_table('user_outputs',
        _id(),
        _user_fk(),
        sa.Column('tool_id', sa.String(length=64), nullable=False),
        sa.Column('tool_name', sa.String(length=255)),
        sa.Column('output_type', sa.String(length=20), nullable=False),
        sa.Column('content', sa.Text()),
        sa.Column('file_url', sa.Text()),
        sa.Column('thumbnail_url', sa.Text()),
        _created(),
    )
    op.create_index('ix_user_outputs_user_id', 'user_outputs', ['user_id'])

    op.create_table('app_settings',
        _id(),
        sa.Column('key', sa.String(length=120), nullable=False, unique=True),
        sa.Column('value', sa.Text()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('promo_codes',
        _id(),
        sa.Column('code', sa.String(length=64), nullable=False, unique=True),
        sa.Column('bonus_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('expires_at', sa.DateTime(timezone=True)),
        sa.Column('max_uses', sa.Integer()),
        sa.Column('uses_count', sa.Integer(), nullable=False, server_default='0'),
        _created(),
    )
    op.create_table('promo_code_uses',
        _id(),
        sa.Column('promo_code_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('promo_codes.id'), nullable=False),
        _user_fk(),
        sa.Column('credits_awarded', sa.Integer(), nullable=False, server_default='0'),
        _created(),
        sa.UniqueConstraint('promo_code_id', 'user_id', name='uq_promo_code_uses_code_user'),
    )

    op.create_table('referral_codes',
        _id(),
        _user_fk(),
        sa.Column('code', sa.String(length=64), nullable=False, unique=True),
        sa.Column('uses_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_earned', sa.Integer(), nullable=False, server_default='0'),
        _created(),
    )
    op.create_table('referral_uses',
        _id(),
        sa.Column('code_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('referral_codes.id'), nullable=False),
        _user_fk('used_by_user_id'),
        sa.Column('credits_awarded', sa.Integer(), nullable=False, server_default='0'),
        _created(),
        sa.UniqueConstraint('code_id', 'used_by_user_id', name='uq_referral_uses_code_user'),
    )

    op.create_table('ad_credit_logs',
        _id(),
        _user_fk(),
        sa.Column('credits_earned', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=64), nullable=False, server_default='adsterra'),
        _created(),
    )
    op.create_index('ix_ad_credit_logs_user_id', 'ad_credit_logs', ['user_id'])

def downgrade():
    for table in (
        'ad_credit_logs', 'referral_uses', 'referral_codes', 'promo_code_uses', 'promo_codes',
        'app_settings', 'user_outputs', 'generation_jobs', 'credit_transfers', 'transactions',
        'credit_audit_log', 'profiles', 'users',
    ):
        op.drop_table(table)
