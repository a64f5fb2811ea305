"""create billing ledger

Revision ID: 5a1c0e7d2b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '5a1c0e7d2b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Create accounts table
    op.create_table(
        'accounts',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('external_customer_id', sa.String(length=100), nullable=True),
        sa.Column('external_subscription_id', sa.String(length=100), nullable=True),
        sa.Column('is_premium', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('premium_since', sa.DateTime(), nullable=True),
        sa.Column('premium_until', sa.DateTime(), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_subscription_event_at', sa.DateTime(), nullable=True),
        sa.Column('points_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('points_balance >= 0', name='ck_accounts_points_balance_non_negative'),
    )
    op.create_index(op.f('ix_accounts_external_customer_id'), 'accounts', ['external_customer_id'], unique=True)
    op.create_index(op.f('ix_accounts_external_subscription_id'), 'accounts', ['external_subscription_id'], unique=False)

    # Create monthly_invoices table
    op.create_table(
        'monthly_invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('employer_account_id', sa.String(length=64), nullable=False),
        sa.Column('month_key', sa.String(length=7), nullable=False),
        sa.Column('total_commission', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('total_jobs', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=False),
        sa.Column('idempotency_key', sa.String(length=150), nullable=False),
        sa.Column('external_invoice_id', sa.String(length=100), nullable=True),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['employer_account_id'], ['accounts.id'], ),
        sa.UniqueConstraint('idempotency_key'),
        sa.UniqueConstraint('employer_account_id', 'month_key', name='uq_monthly_invoices_employer_month'),
    )
    op.create_index(op.f('ix_monthly_invoices_id'), 'monthly_invoices', ['id'], unique=False)
    op.create_index(op.f('ix_monthly_invoices_employer_account_id'), 'monthly_invoices', ['employer_account_id'], unique=False)
    op.create_index(op.f('ix_monthly_invoices_month_key'), 'monthly_invoices', ['month_key'], unique=False)
    op.create_index(op.f('ix_monthly_invoices_payment_status'), 'monthly_invoices', ['payment_status'], unique=False)
    op.create_index(op.f('ix_monthly_invoices_external_invoice_id'), 'monthly_invoices', ['external_invoice_id'], unique=True)

    # Create job_transactions table
    op.create_table(
        'job_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_id', sa.String(length=64), nullable=False),
        sa.Column('employer_account_id', sa.String(length=64), nullable=False),
        sa.Column('worker_account_id', sa.String(length=64), nullable=False),
        sa.Column('job_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('commission_rate', sa.Numeric(precision=6, scale=4), nullable=False),
        sa.Column('commission_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('monthly_invoice_id', sa.Integer(), nullable=True),
        sa.Column('collected_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['employer_account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['monthly_invoice_id'], ['monthly_invoices.id'], ),
    )
    op.create_index(op.f('ix_job_transactions_id'), 'job_transactions', ['id'], unique=False)
    op.create_index(op.f('ix_job_transactions_job_id'), 'job_transactions', ['job_id'], unique=True)
    op.create_index(op.f('ix_job_transactions_employer_account_id'), 'job_transactions', ['employer_account_id'], unique=False)
    op.create_index(op.f('ix_job_transactions_worker_account_id'), 'job_transactions', ['worker_account_id'], unique=False)
    op.create_index(op.f('ix_job_transactions_status'), 'job_transactions', ['status'], unique=False)
    op.create_index(op.f('ix_job_transactions_monthly_invoice_id'), 'job_transactions', ['monthly_invoice_id'], unique=False)
    op.create_index(op.f('ix_job_transactions_created_at'), 'job_transactions', ['created_at'], unique=False)
    op.create_index(
        'idx_job_transactions_employer_status_created',
        'job_transactions',
        ['employer_account_id', 'status', 'created_at'],
        unique=False
    )

    # Create processed_webhook_events table
    op.create_table(
        'processed_webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.String(length=100), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=True),
        sa.Column('outcome', sa.String(length=20), nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', name='uq_processed_webhook_events_event_id'),
    )
    op.create_index(op.f('ix_processed_webhook_events_id'), 'processed_webhook_events', ['id'], unique=False)
    op.create_index(op.f('ix_processed_webhook_events_event_id'), 'processed_webhook_events', ['event_id'], unique=False)
    op.create_index(op.f('ix_processed_webhook_events_event_type'), 'processed_webhook_events', ['event_type'], unique=False)
    op.create_index(op.f('ix_processed_webhook_events_account_id'), 'processed_webhook_events', ['account_id'], unique=False)
    op.create_index(op.f('ix_processed_webhook_events_created_at'), 'processed_webhook_events', ['created_at'], unique=False)

    # Create points_purchases table
    op.create_table(
        'points_purchases',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('checkout_session_id', sa.String(length=100), nullable=False),
        sa.Column('price_id', sa.String(length=100), nullable=True),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('extra_metadata', sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.UniqueConstraint('checkout_session_id'),
    )
    op.create_index(op.f('ix_points_purchases_id'), 'points_purchases', ['id'], unique=False)
    op.create_index(op.f('ix_points_purchases_account_id'), 'points_purchases', ['account_id'], unique=False)


def downgrade():
    op.drop_index(op.f('ix_points_purchases_account_id'), table_name='points_purchases')
    op.drop_index(op.f('ix_points_purchases_id'), table_name='points_purchases')
    op.drop_table('points_purchases')

    op.drop_index(op.f('ix_processed_webhook_events_created_at'), table_name='processed_webhook_events')
    op.drop_index(op.f('ix_processed_webhook_events_account_id'), table_name='processed_webhook_events')
    op.drop_index(op.f('ix_processed_webhook_events_event_type'), table_name='processed_webhook_events')
    op.drop_index(op.f('ix_processed_webhook_events_event_id'), table_name='processed_webhook_events')
    op.drop_index(op.f('ix_processed_webhook_events_id'), table_name='processed_webhook_events')
    op.drop_table('processed_webhook_events')

    op.drop_index('idx_job_transactions_employer_status_created', table_name='job_transactions')
    op.drop_index(op.f('ix_job_transactions_created_at'), table_name='job_transactions')
    op.drop_index(op.f('ix_job_transactions_monthly_invoice_id'), table_name='job_transactions')
    op.drop_index(op.f('ix_job_transactions_status'), table_name='job_transactions')
    op.drop_index(op.f('ix_job_transactions_worker_account_id'), table_name='job_transactions')
    op.drop_index(op.f('ix_job_transactions_employer_account_id'), table_name='job_transactions')
    op.drop_index(op.f('ix_job_transactions_job_id'), table_name='job_transactions')
    op.drop_index(op.f('ix_job_transactions_id'), table_name='job_transactions')
    op.drop_table('job_transactions')

    op.drop_index(op.f('ix_monthly_invoices_external_invoice_id'), table_name='monthly_invoices')
    op.drop_index(op.f('ix_monthly_invoices_payment_status'), table_name='monthly_invoices')
    op.drop_index(op.f('ix_monthly_invoices_month_key'), table_name='monthly_invoices')
    op.drop_index(op.f('ix_monthly_invoices_employer_account_id'), table_name='monthly_invoices')
    op.drop_index(op.f('ix_monthly_invoices_id'), table_name='monthly_invoices')
    op.drop_table('monthly_invoices')

    op.drop_index(op.f('ix_accounts_external_subscription_id'), table_name='accounts')
    op.drop_index(op.f('ix_accounts_external_customer_id'), table_name='accounts')
    op.drop_table('accounts')
