"""Add credit ledger tables

Revision ID: 20261019_001_credit_ledger
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration adds the credit ledger tables:
- credits: append-only credit grants (deductions are negative rows)
- credit_transactions: derived audit log
- subscriptions: user subscriptions mirrored from Dodo Payments
- pending_checkouts: checkout correlation records
- webhook_events: webhook processing status and dead letters
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261019_001_credit_ledger'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade() -> None:
    """Create credit ledger tables."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = inspector.get_table_names()

    # -------------------------------------------------------------------------
    # 1. credits - Append-only credit grants
    # -------------------------------------------------------------------------
    if 'credits' not in existing_tables:
        op.create_table(
            'credits',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False, comment='Owner of the credits'),
            sa.Column('amount', sa.BigInteger(), nullable=False, comment='Signed credit amount'),
            sa.Column('kind', sa.String(length=32), nullable=False, comment='subscription, purchase, bonus, admin, plan_change_adjustment, deduction'),
            sa.Column('source', sa.String(length=64), nullable=False, comment='Provenance tag'),
            sa.Column('idempotency_key', sa.String(length=255), nullable=False, comment='Unique key derived from the provider event and purpose'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True, comment='NULL = never expires'),
            sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
            sa.Column('metadata', JSON, nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('idempotency_key', name='uq_credits_idempotency_key'),
            comment='Append-only credit grants',
        )

        op.create_index('ix_credits_user_id', 'credits', ['user_id'])
        op.create_index('ix_credits_created_at', 'credits', ['created_at'])
        op.create_index('ix_credits_expires_at', 'credits', ['expires_at'])
        op.create_index('ix_credits_user_active', 'credits', ['user_id', 'is_active'])

    # -------------------------------------------------------------------------
    # 2. credit_transactions - Derived audit log
    # -------------------------------------------------------------------------
    if 'credit_transactions' not in existing_tables:
        op.create_table(
            'credit_transactions',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('grant_id', sa.String(length=36), nullable=True),
            sa.Column('amount', sa.BigInteger(), nullable=False),
            sa.Column('type', sa.String(length=16), nullable=False, comment='credit, debit, expiration'),
            sa.Column('reason', sa.String(length=64), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('balance_before', sa.BigInteger(), nullable=False),
            sa.Column('balance_after', sa.BigInteger(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('metadata', JSON, nullable=True),
            sa.PrimaryKeyConstraint('id'),
            comment='Credit transaction audit log',
        )

        op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])
        op.create_index('ix_credit_transactions_created_at', 'credit_transactions', ['created_at'])

    # -------------------------------------------------------------------------
    # 3. subscriptions
    # -------------------------------------------------------------------------
    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('plan', sa.String(length=32), nullable=False),
            sa.Column('billing_period', sa.String(length=16), nullable=False, comment='monthly, yearly'),
            sa.Column('status', sa.String(length=32), nullable=False, comment='pending, active, pending_cancellation, cancelled'),
            sa.Column('provider_subscription_id', sa.String(length=128), nullable=True, comment='Dodo subscription ID'),
            sa.Column('provider_customer_id', sa.String(length=128), nullable=True, comment='Dodo customer ID'),
            sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('provider_subscription_id'),
            comment='User subscriptions',
        )

        op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
        op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
        op.create_index('ix_subscriptions_provider_customer_id', 'subscriptions', ['provider_customer_id'])

    # -------------------------------------------------------------------------
    # 4. pending_checkouts
    # -------------------------------------------------------------------------
    if 'pending_checkouts' not in existing_tables:
        op.create_table(
            'pending_checkouts',
            sa.Column('key', sa.String(length=255), nullable=False, comment='user_id:plan:billing_period'),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('plan', sa.String(length=32), nullable=False),
            sa.Column('billing_period', sa.String(length=16), nullable=False),
            sa.Column('user_email', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('key'),
            comment='Pending checkout correlation',
        )

        op.create_index('ix_pending_checkouts_created_at', 'pending_checkouts', ['created_at'])

    # -------------------------------------------------------------------------
    # 5. webhook_events
    # -------------------------------------------------------------------------
    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.String(length=255), nullable=False, comment='Provider event id'),
            sa.Column('event_type', sa.String(length=64), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, comment='processing, completed, failed, dead_letter'),
            sa.Column('payload', JSON, nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('attempts', sa.Integer(), server_default='1', nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            comment='Webhook event processing log',
        )

        op.create_index('ix_webhook_events_status', 'webhook_events', ['status'])


def downgrade() -> None:
    """Drop credit ledger tables."""
    op.drop_table('webhook_events')
    op.drop_table('pending_checkouts')
    op.drop_table('subscriptions')
    op.drop_table('credit_transactions')
    op.drop_table('credits')
