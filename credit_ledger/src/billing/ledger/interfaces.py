"""
Ledger Store Interfaces

Storage contract for the credit ledger. Work happens inside a unit of work
obtained from ``LedgerStore.transaction()``; everything written in one
transaction commits or rolls back together.

Grants are append-only. The only mutation is ``deactivate_grant``, used by
the expiration sweeper.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, List, Optional

from credit_ledger.src.billing.domain import (
    CreditGrant,
    CreditTransaction,
    PendingCheckout,
    Subscription,
    WebhookEventRecord,
    WebhookEventStatus,
)


class LedgerTransaction(ABC):
    """Operations available inside one ledger unit of work."""

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    @abstractmethod
    async def append_grant(self, grant: CreditGrant) -> str:
        """
        Insert a grant and return its id.

        Raises:
            DuplicateIdempotencyKeyError: a grant with the same key exists
        """

    @abstractmethod
    async def get_grant_by_idempotency_key(self, idempotency_key: str) -> Optional[CreditGrant]:
        """Look up a grant by its idempotency key."""

    @abstractmethod
    async def list_active_grants(self, user_id: str) -> List[CreditGrant]:
        """All grants of a user with ``is_active = true``, oldest first."""

    @abstractmethod
    async def list_all_grants(self, user_id: str, limit: Optional[int] = None) -> List[CreditGrant]:
        """Full grant history of a user; oldest first, or the newest ``limit`` rows newest first."""

    @abstractmethod
    async def deactivate_grant(self, grant_id: str) -> bool:
        """Flip ``is_active`` to false. Returns False if it was already inactive."""

    @abstractmethod
    async def list_expired_active_grants(
        self,
        as_of: datetime,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[CreditGrant]:
        """Active grants with ``expires_at <= as_of``."""

    # -------------------------------------------------------------------------
    # Transaction log
    # -------------------------------------------------------------------------

    @abstractmethod
    async def append_transaction(self, transaction: CreditTransaction) -> str:
        """Insert a derived transaction log entry."""

    @abstractmethod
    async def list_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        """Transaction log of a user, newest first."""

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        """Subscription by its Dodo subscription id."""

    @abstractmethod
    async def find_current_subscription(self, user_id: str) -> Optional[Subscription]:
        """
        The user's most recently updated pending, active or pending-cancellation
        subscription. One-per-user is enforced by this query, not a constraint.
        """

    @abstractmethod
    async def find_subscription_by_customer(self, provider_customer_id: str) -> Optional[Subscription]:
        """Most recently updated subscription for a Dodo customer id."""

    @abstractmethod
    async def save_subscription(self, subscription: Subscription) -> None:
        """Insert or update a subscription by id."""

    @abstractmethod
    async def list_subscriptions(
        self,
        statuses: List[str],
        billing_period: Optional[str] = None,
    ) -> List[Subscription]:
        """Subscriptions in any of the given statuses."""

    # -------------------------------------------------------------------------
    # Pending checkouts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def save_pending_checkout(self, checkout: PendingCheckout) -> None:
        """Insert or refresh a pending checkout by its key."""

    @abstractmethod
    async def list_pending_checkouts(self, since: datetime) -> List[PendingCheckout]:
        """Pending checkouts created at or after ``since``."""

    @abstractmethod
    async def delete_pending_checkout(self, key: str) -> None:
        """Remove a pending checkout once it has been matched."""

    # -------------------------------------------------------------------------
    # Webhook events
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        """Processing record for a provider event id."""

    @abstractmethod
    async def save_webhook_event(self, record: WebhookEventRecord) -> None:
        """Insert or update a webhook event record."""

    @abstractmethod
    async def list_webhook_events(self, status: WebhookEventStatus, limit: int = 100) -> List[WebhookEventRecord]:
        """Webhook event records in a status, oldest first."""


class LedgerStore(ABC):
    """Factory for ledger units of work and per-subscription locks."""

    @abstractmethod
    def transaction(self, lock_user_id: Optional[str] = None) -> AsyncContextManager[LedgerTransaction]:
        """
        Open a unit of work.

        Args:
            lock_user_id: When given, writes for this user are serialised for
                the lifetime of the transaction (balance check + insert is atomic)
        """

    @abstractmethod
    def subscription_lock(self, subscription_id: str) -> AsyncContextManager[None]:
        """Serialise webhook handlers that touch the same subscription."""
