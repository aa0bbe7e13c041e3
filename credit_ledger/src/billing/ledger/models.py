"""Ledger database models.

Tables:
- credits: append-only credit grants (deductions are negative rows)
- credit_transactions: derived audit log
- subscriptions: one row per user subscription
- pending_checkouts: short-lived checkout correlation records
- webhook_events: provider event processing status and dead letters
"""

from datetime import datetime
from typing import Any

import sqlalchemy as sa

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from credit_ledger.database.db import Base, TimeZone

JSONType = sa.JSON().with_variant(JSONB(), 'postgresql')


class CreditGrantModel(Base):
    """Credit grants. Never deleted; only ``is_active`` is ever updated."""

    __tablename__ = 'credits'

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)

    user_id: Mapped[str] = mapped_column(
        sa.String(64),
        index=True,
        comment='Owner of the credits'
    )

    # Positive = grant, negative = deduction
    amount: Mapped[int] = mapped_column(
        sa.BigInteger,
        comment='Signed credit amount'
    )

    kind: Mapped[str] = mapped_column(
        sa.String(32),
        comment='subscription, purchase, bonus, admin, plan_change_adjustment, deduction'
    )

    source: Mapped[str] = mapped_column(
        sa.String(64),
        comment='Provenance tag (subscription_renewal, image_enhancement, ...)'
    )

    idempotency_key: Mapped[str] = mapped_column(
        sa.String(255),
        comment='Unique key derived from the provider event and purpose'
    )

    created_at: Mapped[datetime] = mapped_column(
        TimeZone,
        index=True,
        comment='When the grant was written'
    )

    # NULL = never expires
    expires_at: Mapped[datetime | None] = mapped_column(
        TimeZone,
        nullable=True,
        index=True,
        comment='When the credits stop counting'
    )

    is_active: Mapped[bool] = mapped_column(
        sa.Boolean,
        default=True,
        comment='False once processed by the expiration sweeper'
    )

    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        'metadata',
        JSONType,
        default=dict,
        comment='Audit metadata'
    )

    __table_args__ = (
        sa.UniqueConstraint('idempotency_key', name='uq_credits_idempotency_key'),
        sa.Index('ix_credits_user_active', 'user_id', 'is_active'),
        {'comment': 'Append-only credit grants'}
    )


class CreditTransactionModel(Base):
    """Derived transaction log for audit display."""

    __tablename__ = 'credit_transactions'

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), index=True)
    grant_id: Mapped[str | None] = mapped_column(sa.String(36), nullable=True, comment='Grant the entry describes')
    amount: Mapped[int] = mapped_column(sa.BigInteger)
    type: Mapped[str] = mapped_column(sa.String(16), comment='credit, debit, expiration')
    reason: Mapped[str] = mapped_column(sa.String(64))
    description: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    balance_before: Mapped[int] = mapped_column(sa.BigInteger)
    balance_after: Mapped[int] = mapped_column(sa.BigInteger)
    created_at: Mapped[datetime] = mapped_column(TimeZone, index=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column('metadata', JSONType, default=dict)

    __table_args__ = ({'comment': 'Credit transaction audit log'},)


class SubscriptionModel(Base):
    """User subscriptions."""

    __tablename__ = 'subscriptions'

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), index=True)
    plan: Mapped[str] = mapped_column(sa.String(32))
    billing_period: Mapped[str] = mapped_column(sa.String(16), comment='monthly, yearly')
    status: Mapped[str] = mapped_column(
        sa.String(32),
        index=True,
        comment='pending, active, pending_cancellation, cancelled'
    )
    provider_subscription_id: Mapped[str | None] = mapped_column(
        sa.String(128),
        nullable=True,
        unique=True,
        comment='Dodo subscription ID'
    )
    provider_customer_id: Mapped[str | None] = mapped_column(
        sa.String(128),
        nullable=True,
        index=True,
        comment='Dodo customer ID'
    )
    current_period_start: Mapped[datetime | None] = mapped_column(TimeZone, nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(TimeZone, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TimeZone)
    updated_at: Mapped[datetime] = mapped_column(TimeZone)

    __table_args__ = ({'comment': 'User subscriptions'},)


class PendingCheckoutModel(Base):
    """Checkout correlation records; expiry is enforced at read time."""

    __tablename__ = 'pending_checkouts'

    key: Mapped[str] = mapped_column(sa.String(255), primary_key=True, comment='user_id:plan:billing_period')
    user_id: Mapped[str] = mapped_column(sa.String(64))
    plan: Mapped[str] = mapped_column(sa.String(32))
    billing_period: Mapped[str] = mapped_column(sa.String(16))
    user_email: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(TimeZone, index=True)

    __table_args__ = ({'comment': 'Pending checkout correlation'},)


class WebhookEventModel(Base):
    """Provider webhook processing status."""

    __tablename__ = 'webhook_events'

    id: Mapped[str] = mapped_column(sa.String(255), primary_key=True, comment='Provider event id')
    event_type: Mapped[str] = mapped_column(sa.String(64))
    status: Mapped[str] = mapped_column(
        sa.String(16),
        index=True,
        comment='processing, completed, failed, dead_letter'
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    error_message: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(TimeZone)
    updated_at: Mapped[datetime] = mapped_column(TimeZone)
    completed_at: Mapped[datetime | None] = mapped_column(TimeZone, nullable=True)

    __table_args__ = ({'comment': 'Webhook event processing log'},)
