"""
In-memory Ledger Store

Process-local implementation of the ledger store for development and tests.
It keeps the SQL store's guarantees within one event loop: the idempotency
key index rejects duplicates, writes of a failed unit of work are undone,
and per-user / per-subscription locks serialise writers.
"""

import copy
import logging

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional

from credit_ledger.src.billing.domain import (
    CreditGrant,
    CreditTransaction,
    PendingCheckout,
    Subscription,
    SubscriptionStatus,
    WebhookEventRecord,
    WebhookEventStatus,
)
from credit_ledger.src.billing.ledger.interfaces import LedgerStore, LedgerTransaction
from credit_ledger.src.billing.shared.exceptions import DuplicateIdempotencyKeyError
from credit_ledger.src.billing.shared.locks import KeyedLock

logger = logging.getLogger(__name__)

_CURRENT_STATUSES = (
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PENDING_CANCELLATION,
)


class MemoryLedgerTransaction(LedgerTransaction):
    """Unit of work over a MemoryLedgerStore; keeps an undo log until commit."""

    def __init__(self, store: 'MemoryLedgerStore'):
        self.store = store
        self._undo: List[Callable[[], None]] = []

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    def commit(self) -> None:
        self._undo.clear()

    # Grants

    async def append_grant(self, grant: CreditGrant) -> str:
        store = self.store
        if grant.idempotency_key in store.grant_keys:
            raise DuplicateIdempotencyKeyError(grant.idempotency_key)

        stored = copy.deepcopy(grant)
        store.grants[stored.id] = stored
        store.grant_keys[stored.idempotency_key] = stored.id

        def undo() -> None:
            store.grants.pop(stored.id, None)
            store.grant_keys.pop(stored.idempotency_key, None)

        self._undo.append(undo)
        return stored.id

    async def get_grant_by_idempotency_key(self, idempotency_key: str) -> Optional[CreditGrant]:
        grant_id = self.store.grant_keys.get(idempotency_key)
        if grant_id is None:
            return None
        return copy.deepcopy(self.store.grants[grant_id])

    def _user_grants(self, user_id: str) -> List[CreditGrant]:
        grants = [g for g in self.store.grants.values() if g.user_id == user_id]
        return sorted(grants, key=lambda g: (g.created_at, g.id))

    async def list_active_grants(self, user_id: str) -> List[CreditGrant]:
        return [copy.deepcopy(g) for g in self._user_grants(user_id) if g.is_active]

    async def list_all_grants(self, user_id: str, limit: Optional[int] = None) -> List[CreditGrant]:
        grants = self._user_grants(user_id)
        if limit is not None:
            grants = list(reversed(grants))[:limit]
        return [copy.deepcopy(g) for g in grants]

    async def deactivate_grant(self, grant_id: str) -> bool:
        grant = self.store.grants.get(grant_id)
        if grant is None or not grant.is_active:
            return False
        grant.is_active = False

        def undo() -> None:
            grant.is_active = True

        self._undo.append(undo)
        return True

    async def list_expired_active_grants(
        self,
        as_of: datetime,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[CreditGrant]:
        grants = [
            g for g in self.store.grants.values()
            if g.is_active and g.expires_at is not None and g.expires_at <= as_of
            and (user_id is None or g.user_id == user_id)
        ]
        grants.sort(key=lambda g: (g.expires_at, g.id))
        if limit is not None:
            grants = grants[:limit]
        return [copy.deepcopy(g) for g in grants]

    # Transaction log

    async def append_transaction(self, transaction: CreditTransaction) -> str:
        stored = copy.deepcopy(transaction)
        self.store.transactions.append(stored)
        self._undo.append(lambda: self.store.transactions.remove(stored))
        return stored.id

    async def list_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        rows = [t for t in self.store.transactions if t.user_id == user_id]
        rows.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        return [copy.deepcopy(t) for t in rows[offset:offset + limit]]

    # Subscriptions

    async def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        for subscription in self.store.subscriptions.values():
            if subscription.provider_subscription_id == provider_subscription_id:
                return copy.deepcopy(subscription)
        return None

    async def find_current_subscription(self, user_id: str) -> Optional[Subscription]:
        candidates = [
            s for s in self.store.subscriptions.values()
            if s.user_id == user_id and s.status in _CURRENT_STATUSES
        ]
        if not candidates:
            return None
        return copy.deepcopy(max(candidates, key=lambda s: s.updated_at))

    async def find_subscription_by_customer(self, provider_customer_id: str) -> Optional[Subscription]:
        candidates = [
            s for s in self.store.subscriptions.values()
            if s.provider_customer_id == provider_customer_id
        ]
        if not candidates:
            return None
        return copy.deepcopy(max(candidates, key=lambda s: s.updated_at))

    async def save_subscription(self, subscription: Subscription) -> None:
        self._put(self.store.subscriptions, subscription.id, copy.deepcopy(subscription))

    async def list_subscriptions(
        self,
        statuses: List[str],
        billing_period: Optional[str] = None,
    ) -> List[Subscription]:
        rows = [
            s for s in self.store.subscriptions.values()
            if s.status.value in statuses and (billing_period is None or s.billing_period == billing_period)
        ]
        rows.sort(key=lambda s: s.created_at)
        return [copy.deepcopy(s) for s in rows]

    # Pending checkouts

    async def save_pending_checkout(self, checkout: PendingCheckout) -> None:
        self._put(self.store.pending_checkouts, checkout.key, copy.deepcopy(checkout))

    async def list_pending_checkouts(self, since: datetime) -> List[PendingCheckout]:
        rows = [c for c in self.store.pending_checkouts.values() if c.created_at >= since]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return [copy.deepcopy(c) for c in rows]

    async def delete_pending_checkout(self, key: str) -> None:
        previous = self.store.pending_checkouts.pop(key, None)
        if previous is not None:
            self._undo.append(lambda: self.store.pending_checkouts.__setitem__(key, previous))

    # Webhook events

    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        record = self.store.webhook_events.get(event_id)
        return copy.deepcopy(record) if record else None

    async def save_webhook_event(self, record: WebhookEventRecord) -> None:
        self._put(self.store.webhook_events, record.id, copy.deepcopy(record))

    async def list_webhook_events(self, status: WebhookEventStatus, limit: int = 100) -> List[WebhookEventRecord]:
        rows = [r for r in self.store.webhook_events.values() if r.status == status]
        rows.sort(key=lambda r: r.created_at)
        return [copy.deepcopy(r) for r in rows[:limit]]

    def _put(self, table: Dict, key: str, value) -> None:
        missing = object()
        previous = table.get(key, missing)
        table[key] = value

        def undo() -> None:
            if previous is missing:
                table.pop(key, None)
            else:
                table[key] = previous

        self._undo.append(undo)


class MemoryLedgerStore(LedgerStore):
    """
    Ledger store held in process memory.

    Usage:
        store = MemoryLedgerStore()
        async with store.transaction(lock_user_id='user-1') as tx:
            await tx.append_grant(grant)
    """

    def __init__(self):
        self.grants: Dict[str, CreditGrant] = {}
        self.grant_keys: Dict[str, str] = {}
        self.transactions: List[CreditTransaction] = []
        self.subscriptions: Dict[str, Subscription] = {}
        self.pending_checkouts: Dict[str, PendingCheckout] = {}
        self.webhook_events: Dict[str, WebhookEventRecord] = {}
        self._user_locks = KeyedLock()
        self._subscription_locks = KeyedLock()

    @asynccontextmanager
    async def transaction(self, lock_user_id: Optional[str] = None) -> AsyncIterator[MemoryLedgerTransaction]:
        if lock_user_id is None:
            async with self._unit_of_work() as tx:
                yield tx
            return

        async with self._user_locks.acquire(lock_user_id):
            async with self._unit_of_work() as tx:
                yield tx

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[MemoryLedgerTransaction]:
        tx = MemoryLedgerTransaction(self)
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        tx.commit()

    @asynccontextmanager
    async def subscription_lock(self, subscription_id: str) -> AsyncIterator[None]:
        async with self._subscription_locks.acquire(subscription_id):
            yield
