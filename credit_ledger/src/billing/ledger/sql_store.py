"""
SQL Ledger Store

SQLAlchemy implementation of the ledger store. PostgreSQL in production,
SQLite (aiosqlite) in tests.

Concurrency:
- Idempotent grants rely on the UNIQUE constraint on ``credits.idempotency_key``;
  a violation surfaces as DuplicateIdempotencyKeyError and rolls the unit of
  work back.
- ``transaction(lock_user_id=...)`` takes a process-local lock and, on
  PostgreSQL, ``pg_advisory_xact_lock`` so a balance check and the insert
  that depends on it cannot interleave with another writer for the user.
- ``subscription_lock`` uses a session-level advisory lock held on its own
  connection until the block exits.
"""

import hashlib
import logging

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional

import sqlalchemy as sa

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.src.billing.domain import (
    CreditGrant,
    CreditTransaction,
    GrantKind,
    PendingCheckout,
    Subscription,
    SubscriptionStatus,
    TransactionType,
    WebhookEventRecord,
    WebhookEventStatus,
)
from credit_ledger.src.billing.ledger.interfaces import LedgerStore, LedgerTransaction
from credit_ledger.src.billing.ledger.models import (
    CreditGrantModel,
    CreditTransactionModel,
    PendingCheckoutModel,
    SubscriptionModel,
    WebhookEventModel,
)
from credit_ledger.src.billing.shared.config import normalize_expiry
from credit_ledger.src.billing.shared.exceptions import (
    BillingError,
    DuplicateIdempotencyKeyError,
    LedgerStorageError,
)
from credit_ledger.src.billing.shared.locks import KeyedLock

logger = logging.getLogger(__name__)

CURRENT_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.PENDING.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PENDING_CANCELLATION.value,
)


def advisory_lock_key(namespace: str, key: str) -> int:
    """Stable signed 64-bit key for pg_advisory_* functions."""
    digest = hashlib.sha256(f"{namespace}:{key}".encode()).digest()
    return int.from_bytes(digest[:8], 'big', signed=True)


# =============================================================================
# ROW <-> ENTITY MAPPING
# =============================================================================

def _grant_from_row(row: CreditGrantModel) -> CreditGrant:
    return CreditGrant(
        id=row.id,
        user_id=row.user_id,
        amount=row.amount,
        kind=GrantKind(row.kind),
        source=row.source,
        idempotency_key=row.idempotency_key,
        created_at=row.created_at,
        expires_at=normalize_expiry(row.expires_at),
        is_active=row.is_active,
        metadata=dict(row.metadata_json or {}),
    )


def _transaction_from_row(row: CreditTransactionModel) -> CreditTransaction:
    return CreditTransaction(
        id=row.id,
        user_id=row.user_id,
        grant_id=row.grant_id,
        amount=row.amount,
        type=TransactionType(row.type),
        reason=row.reason,
        description=row.description,
        balance_before=row.balance_before,
        balance_after=row.balance_after,
        created_at=row.created_at,
        metadata=dict(row.metadata_json or {}),
    )


def _subscription_from_row(row: SubscriptionModel) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan=row.plan,
        billing_period=row.billing_period,
        status=SubscriptionStatus(row.status),
        provider_subscription_id=row.provider_subscription_id,
        provider_customer_id=row.provider_customer_id,
        current_period_start=row.current_period_start,
        next_billing_date=row.next_billing_date,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _checkout_from_row(row: PendingCheckoutModel) -> PendingCheckout:
    return PendingCheckout(
        user_id=row.user_id,
        plan=row.plan,
        billing_period=row.billing_period,
        user_email=row.user_email,
        created_at=row.created_at,
    )


def _webhook_event_from_row(row: WebhookEventModel) -> WebhookEventRecord:
    return WebhookEventRecord(
        id=row.id,
        event_type=row.event_type,
        status=WebhookEventStatus(row.status),
        payload=dict(row.payload or {}),
        error_message=row.error_message,
        attempts=row.attempts,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


# =============================================================================
# UNIT OF WORK
# =============================================================================

class SqlLedgerTransaction(LedgerTransaction):
    """Ledger operations bound to one ``AsyncSession`` transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Grants

    async def append_grant(self, grant: CreditGrant) -> str:
        self.session.add(CreditGrantModel(
            id=grant.id,
            user_id=grant.user_id,
            amount=grant.amount,
            kind=grant.kind.value,
            source=grant.source,
            idempotency_key=grant.idempotency_key,
            created_at=grant.created_at,
            expires_at=grant.expires_at,
            is_active=grant.is_active,
            metadata_json=grant.metadata,
        ))
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.info(f"[LEDGER] Idempotency key conflict on {grant.idempotency_key}: {e.orig}")
            raise DuplicateIdempotencyKeyError(grant.idempotency_key) from e
        return grant.id

    async def get_grant_by_idempotency_key(self, idempotency_key: str) -> Optional[CreditGrant]:
        row = await self.session.scalar(
            sa.select(CreditGrantModel).where(CreditGrantModel.idempotency_key == idempotency_key)
        )
        return _grant_from_row(row) if row else None

    async def list_active_grants(self, user_id: str) -> List[CreditGrant]:
        rows = await self.session.scalars(
            sa.select(CreditGrantModel)
            .where(CreditGrantModel.user_id == user_id, CreditGrantModel.is_active.is_(True))
            .order_by(CreditGrantModel.created_at, CreditGrantModel.id)
        )
        return [_grant_from_row(row) for row in rows]

    async def list_all_grants(self, user_id: str, limit: Optional[int] = None) -> List[CreditGrant]:
        stmt = sa.select(CreditGrantModel).where(CreditGrantModel.user_id == user_id)
        if limit is None:
            stmt = stmt.order_by(CreditGrantModel.created_at, CreditGrantModel.id)
        else:
            stmt = stmt.order_by(CreditGrantModel.created_at.desc(), CreditGrantModel.id.desc()).limit(limit)
        rows = await self.session.scalars(stmt)
        return [_grant_from_row(row) for row in rows]

    async def deactivate_grant(self, grant_id: str) -> bool:
        result = await self.session.execute(
            sa.update(CreditGrantModel)
            .where(CreditGrantModel.id == grant_id, CreditGrantModel.is_active.is_(True))
            .values(is_active=False)
        )
        return result.rowcount == 1

    async def list_expired_active_grants(
        self,
        as_of: datetime,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[CreditGrant]:
        stmt = (
            sa.select(CreditGrantModel)
            .where(
                CreditGrantModel.is_active.is_(True),
                CreditGrantModel.expires_at.is_not(None),
                CreditGrantModel.expires_at <= as_of,
            )
            .order_by(CreditGrantModel.expires_at, CreditGrantModel.id)
        )
        if user_id is not None:
            stmt = stmt.where(CreditGrantModel.user_id == user_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = await self.session.scalars(stmt)
        return [_grant_from_row(row) for row in rows]

    # Transaction log

    async def append_transaction(self, transaction: CreditTransaction) -> str:
        self.session.add(CreditTransactionModel(
            id=transaction.id,
            user_id=transaction.user_id,
            grant_id=transaction.grant_id,
            amount=transaction.amount,
            type=transaction.type.value,
            reason=transaction.reason,
            description=transaction.description,
            balance_before=transaction.balance_before,
            balance_after=transaction.balance_after,
            created_at=transaction.created_at,
            metadata_json=transaction.metadata,
        ))
        await self.session.flush()
        return transaction.id

    async def list_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        rows = await self.session.scalars(
            sa.select(CreditTransactionModel)
            .where(CreditTransactionModel.user_id == user_id)
            .order_by(CreditTransactionModel.created_at.desc(), CreditTransactionModel.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [_transaction_from_row(row) for row in rows]

    # Subscriptions

    async def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        row = await self.session.scalar(
            sa.select(SubscriptionModel)
            .where(SubscriptionModel.provider_subscription_id == provider_subscription_id)
        )
        return _subscription_from_row(row) if row else None

    async def find_current_subscription(self, user_id: str) -> Optional[Subscription]:
        row = await self.session.scalar(
            sa.select(SubscriptionModel)
            .where(
                SubscriptionModel.user_id == user_id,
                SubscriptionModel.status.in_(CURRENT_SUBSCRIPTION_STATUSES),
            )
            .order_by(SubscriptionModel.updated_at.desc())
            .limit(1)
        )
        return _subscription_from_row(row) if row else None

    async def find_subscription_by_customer(self, provider_customer_id: str) -> Optional[Subscription]:
        row = await self.session.scalar(
            sa.select(SubscriptionModel)
            .where(SubscriptionModel.provider_customer_id == provider_customer_id)
            .order_by(SubscriptionModel.updated_at.desc())
            .limit(1)
        )
        return _subscription_from_row(row) if row else None

    async def save_subscription(self, subscription: Subscription) -> None:
        row = await self.session.get(SubscriptionModel, subscription.id)
        if row is None:
            row = SubscriptionModel(id=subscription.id, created_at=subscription.created_at)
            self.session.add(row)
        row.user_id = subscription.user_id
        row.plan = subscription.plan
        row.billing_period = subscription.billing_period
        row.status = subscription.status.value
        row.provider_subscription_id = subscription.provider_subscription_id
        row.provider_customer_id = subscription.provider_customer_id
        row.current_period_start = subscription.current_period_start
        row.next_billing_date = subscription.next_billing_date
        row.updated_at = subscription.updated_at
        await self.session.flush()

    async def list_subscriptions(
        self,
        statuses: List[str],
        billing_period: Optional[str] = None,
    ) -> List[Subscription]:
        stmt = sa.select(SubscriptionModel).where(SubscriptionModel.status.in_(statuses))
        if billing_period is not None:
            stmt = stmt.where(SubscriptionModel.billing_period == billing_period)
        rows = await self.session.scalars(stmt.order_by(SubscriptionModel.created_at))
        return [_subscription_from_row(row) for row in rows]

    # Pending checkouts

    async def save_pending_checkout(self, checkout: PendingCheckout) -> None:
        row = await self.session.get(PendingCheckoutModel, checkout.key)
        if row is None:
            row = PendingCheckoutModel(key=checkout.key)
            self.session.add(row)
        row.user_id = checkout.user_id
        row.plan = checkout.plan
        row.billing_period = checkout.billing_period
        row.user_email = checkout.user_email
        row.created_at = checkout.created_at
        await self.session.flush()

    async def list_pending_checkouts(self, since: datetime) -> List[PendingCheckout]:
        rows = await self.session.scalars(
            sa.select(PendingCheckoutModel)
            .where(PendingCheckoutModel.created_at >= since)
            .order_by(PendingCheckoutModel.created_at.desc())
        )
        return [_checkout_from_row(row) for row in rows]

    async def delete_pending_checkout(self, key: str) -> None:
        await self.session.execute(sa.delete(PendingCheckoutModel).where(PendingCheckoutModel.key == key))

    # Webhook events

    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        row = await self.session.get(WebhookEventModel, event_id)
        return _webhook_event_from_row(row) if row else None

    async def save_webhook_event(self, record: WebhookEventRecord) -> None:
        row = await self.session.get(WebhookEventModel, record.id)
        if row is None:
            row = WebhookEventModel(id=record.id, created_at=record.created_at)
            self.session.add(row)
        row.event_type = record.event_type
        row.status = record.status.value
        row.payload = record.payload
        row.error_message = record.error_message
        row.attempts = record.attempts
        row.updated_at = record.updated_at
        row.completed_at = record.completed_at
        await self.session.flush()

    async def list_webhook_events(self, status: WebhookEventStatus, limit: int = 100) -> List[WebhookEventRecord]:
        rows = await self.session.scalars(
            sa.select(WebhookEventModel)
            .where(WebhookEventModel.status == status.value)
            .order_by(WebhookEventModel.created_at)
            .limit(limit)
        )
        return [_webhook_event_from_row(row) for row in rows]


# =============================================================================
# STORE
# =============================================================================

class SqlLedgerStore(LedgerStore):
    """
    Ledger store backed by a SQLAlchemy async session factory.

    Usage:
        store = SqlLedgerStore(async_db_session)
        async with store.transaction(lock_user_id=user_id) as tx:
            grants = await tx.list_all_grants(user_id)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._user_locks = KeyedLock()
        self._subscription_locks = KeyedLock()

    @staticmethod
    def _is_postgres(session: AsyncSession) -> bool:
        return session.bind.dialect.name == 'postgresql'

    @asynccontextmanager
    async def transaction(self, lock_user_id: Optional[str] = None) -> AsyncIterator[SqlLedgerTransaction]:
        if lock_user_id is None:
            async with self._unit_of_work(None) as tx:
                yield tx
            return

        async with self._user_locks.acquire(lock_user_id):
            async with self._unit_of_work(lock_user_id) as tx:
                yield tx

    @asynccontextmanager
    async def _unit_of_work(self, lock_user_id: Optional[str]) -> AsyncIterator[SqlLedgerTransaction]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if lock_user_id is not None and self._is_postgres(session):
                        await session.execute(
                            sa.select(sa.func.pg_advisory_xact_lock(advisory_lock_key('user', lock_user_id)))
                        )
                    yield SqlLedgerTransaction(session)
        except BillingError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"[LEDGER] Storage error: {e}", exc_info=True)
            raise LedgerStorageError(f"Ledger storage error: {type(e).__name__}") from e

    @asynccontextmanager
    async def subscription_lock(self, subscription_id: str) -> AsyncIterator[None]:
        async with self._subscription_locks.acquire(subscription_id):
            try:
                session = self.session_factory()
            except SQLAlchemyError as e:
                raise LedgerStorageError("Could not open lock session", operation='subscription_lock') from e

            async with session:
                postgres = self._is_postgres(session)
                lock_key = advisory_lock_key('subscription', subscription_id)
                if postgres:
                    try:
                        await session.execute(sa.select(sa.func.pg_advisory_lock(lock_key)))
                    except SQLAlchemyError as e:
                        raise LedgerStorageError("Could not take subscription lock", operation='subscription_lock') from e
                try:
                    yield
                finally:
                    if postgres:
                        await session.execute(sa.select(sa.func.pg_advisory_unlock(lock_key)))
                        await session.commit()
