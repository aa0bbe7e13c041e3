"""
Payment Interfaces

Protocol definitions for the payment provider the ledger talks to.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class ProviderSubscription:
    """Authoritative subscription state as reported by the provider."""
    subscription_id: str
    status: str
    product_id: Optional[str] = None
    customer_id: Optional[str] = None
    previous_billing_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    cancel_at_next_billing_date: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckoutLink:
    """Hosted payment page created by the provider."""
    checkout_id: str
    payment_link: str
    kind: str  # 'subscription' or 'payment'


class PaymentProviderInterface(ABC):
    """Interface for payment provider clients."""

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Fetch the provider's view of a subscription."""
        pass

    @abstractmethod
    async def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> ProviderSubscription:
        """Turn auto-renew off (cancel=True) or back on."""
        pass

    @abstractmethod
    async def change_plan(self, subscription_id: str, product_id: str) -> None:
        """Move a subscription to another product, prorating immediately."""
        pass

    @abstractmethod
    async def create_subscription_checkout(
        self,
        product_id: str,
        customer_email: str,
        customer_name: str,
        billing: Dict[str, str],
        metadata: Dict[str, str],
        return_url: Optional[str] = None,
    ) -> CheckoutLink:
        """Create a hosted checkout for a new subscription."""
        pass

    @abstractmethod
    async def create_payment_checkout(
        self,
        product_id: str,
        customer_email: str,
        customer_name: str,
        billing: Dict[str, str],
        metadata: Dict[str, str],
        return_url: Optional[str] = None,
    ) -> CheckoutLink:
        """Create a hosted checkout for a one-time payment."""
        pass
