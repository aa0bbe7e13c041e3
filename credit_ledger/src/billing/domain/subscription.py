"""
Subscription Domain Entity

Represents a user's recurring plan with status tracking, plus the
short-lived pending checkout record used to correlate provider events.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from credit_ledger.src.billing.domain.credit_grant import new_id, utcnow
from credit_ledger.src.billing.shared.config import CREDIT_CYCLE_DAYS
from credit_ledger.src.billing.shared.exceptions import SubscriptionError


class SubscriptionStatus(Enum):
    """
    Subscription state machine.

    none -> pending -> active -> pending_cancellation -> cancelled
                        active -> cancelled
    pending_cancellation -> active (reactivation)
    """
    PENDING = "pending"
    ACTIVE = "active"
    PENDING_CANCELLATION = "pending_cancellation"
    CANCELLED = "cancelled"


# Allowed transitions; staying in the same state is always allowed
SUBSCRIPTION_TRANSITIONS: Dict[SubscriptionStatus, tuple] = {
    SubscriptionStatus.PENDING: (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
    ),
    SubscriptionStatus.ACTIVE: (
        SubscriptionStatus.PENDING_CANCELLATION,
        SubscriptionStatus.CANCELLED,
    ),
    SubscriptionStatus.PENDING_CANCELLATION: (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
    ),
    SubscriptionStatus.CANCELLED: (
        SubscriptionStatus.ACTIVE,
    ),
}


@dataclass
class Subscription:
    """
    Represents a user's subscription.

    Attributes:
        id: Internal subscription ID
        user_id: User this subscription belongs to
        plan: Plan name (basic, creator, professional, enterprise)
        billing_period: monthly or yearly
        status: Current state machine status
        provider_subscription_id: Dodo subscription ID (unknown while pending)
        provider_customer_id: Dodo customer ID
        current_period_start: Start of the current billing period
        next_billing_date: End of the current billing period
    """
    user_id: str
    plan: str
    billing_period: str
    status: SubscriptionStatus
    id: str = field(default_factory=new_id)
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_usable(self) -> bool:
        """Plan features and credits remain usable in these states."""
        return self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CANCELLATION)

    def can_transition_to(self, status: SubscriptionStatus) -> bool:
        return status == self.status or status in SUBSCRIPTION_TRANSITIONS[self.status]

    def transition_to(self, status: SubscriptionStatus) -> None:
        """Move to ``status``, refusing moves the state machine does not allow."""
        if not self.can_transition_to(status):
            raise SubscriptionError(
                f"Cannot move subscription from {self.status.value} to {status.value}",
                code="INVALID_TRANSITION",
                subscription_id=self.provider_subscription_id or self.id,
            )
        self.status = status

    def period_has_ended(self, as_of: Optional[datetime] = None) -> bool:
        if self.next_billing_date is None:
            return False
        return self.next_billing_date <= (as_of or utcnow())

    def credit_cycle(self, as_of: Optional[datetime] = None) -> tuple:
        """
        Current credit cycle as (start, end).

        Monthly plans have one cycle per billing period. Yearly plans are split
        into 30-day cycles from the period start; the final cycle absorbs the
        remainder and ends at the next billing date, so a 365-day year holds
        exactly 12 cycles.
        """
        as_of = as_of or utcnow()
        start = self.current_period_start or as_of
        end = self.next_billing_date
        if self.billing_period != 'yearly':
            return start, end or start + timedelta(days=CREDIT_CYCLE_DAYS)

        cycle = timedelta(days=CREDIT_CYCLE_DAYS)
        index = max(as_of - start, timedelta(0)) // cycle
        if end is None:
            cycle_start = start + cycle * index
            return cycle_start, cycle_start + cycle

        last = max((end - start) // cycle, 1) - 1
        index = min(index, last)
        cycle_start = start + cycle * index
        return cycle_start, end if index == last else cycle_start + cycle

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'plan': self.plan,
            'billing_period': self.billing_period,
            'status': self.status.value,
            'provider_subscription_id': self.provider_subscription_id,
            'provider_customer_id': self.provider_customer_id,
            'current_period_start': self.current_period_start.isoformat() if self.current_period_start else None,
            'next_billing_date': self.next_billing_date.isoformat() if self.next_billing_date else None,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }


@dataclass
class PendingCheckout:
    """A checkout the app started recently, keyed by ``user_id:plan:billing_period``."""
    user_id: str
    plan: str
    billing_period: str
    user_email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.plan}:{self.billing_period}"

    def age_seconds(self, as_of: datetime) -> float:
        return (as_of - self.created_at).total_seconds()


def preserve_billing_date(
    provider_date: Optional[datetime],
    stored_date: Optional[datetime],
    now: datetime,
) -> Optional[datetime]:
    """
    Access end date to keep when a subscription is cancelled.

    Dodo may report ``next_billing_date`` as the cancellation moment. When the
    provider date is not in the future the later of the two dates wins.
    """
    if provider_date is None or stored_date is None:
        return provider_date or stored_date
    if provider_date <= now:
        return max(provider_date, stored_date)
    return provider_date
