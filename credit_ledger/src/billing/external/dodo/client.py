"""
Dodo Payments API Client Wrapper

All Dodo Payments API calls go through this wrapper. Transient failures
(connection errors, timeouts, 429 and 5xx responses) are retried with
exponential backoff; when retries run out the call raises
ProviderUnavailableError so callers can fail loudly or degrade.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import dodopayments

from dodopayments import AsyncDodoPayments
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.domain.payment_event import parse_datetime
from credit_ledger.src.billing.payments.interfaces import (
    CheckoutLink,
    PaymentProviderInterface,
    ProviderSubscription,
)
from credit_ledger.src.billing.shared.exceptions import (
    PaymentError,
    ProviderUnavailableError,
    SubscriptionNotFoundError,
)

logger = logging.getLogger(__name__)

# APITimeoutError is a subclass of APIConnectionError
TRANSIENT_ERRORS = (
    dodopayments.APIConnectionError,
    dodopayments.RateLimitError,
    dodopayments.InternalServerError,
)


def to_provider_subscription(obj: Any) -> ProviderSubscription:
    """Map an SDK subscription model onto ProviderSubscription."""
    customer = getattr(obj, 'customer', None)
    return ProviderSubscription(
        subscription_id=obj.subscription_id,
        status=str(getattr(obj, 'status', '') or ''),
        product_id=getattr(obj, 'product_id', None),
        customer_id=getattr(customer, 'customer_id', None) if customer is not None else None,
        previous_billing_date=parse_datetime(getattr(obj, 'previous_billing_date', None)),
        next_billing_date=parse_datetime(getattr(obj, 'next_billing_date', None)),
        cancel_at_next_billing_date=bool(getattr(obj, 'cancel_at_next_billing_date', False)),
        metadata=dict(getattr(obj, 'metadata', None) or {}),
    )


class DodoPaymentsClient(PaymentProviderInterface):
    """
    Async Dodo Payments client with retry/backoff.

    Usage:
        client = DodoPaymentsClient()
        subscription = await client.retrieve_subscription('sub_123')
    """

    def __init__(
        self,
        sdk: Optional[AsyncDodoPayments] = None,
        retry_attempts: Optional[int] = None,
        min_wait: Optional[float] = None,
        max_wait: Optional[float] = None,
    ):
        self._sdk = sdk
        self.retry_attempts = retry_attempts or settings.PROVIDER_RETRY_ATTEMPTS
        self.min_wait = settings.PROVIDER_RETRY_MIN_WAIT if min_wait is None else min_wait
        self.max_wait = settings.PROVIDER_RETRY_MAX_WAIT if max_wait is None else max_wait

    @property
    def sdk(self) -> AsyncDodoPayments:
        if self._sdk is None:
            if not settings.DODO_PAYMENTS_API_KEY:
                raise ProviderUnavailableError("DODO_PAYMENTS_API_KEY not configured", operation='configure')
            # Retries are handled here, not by the SDK
            self._sdk = AsyncDodoPayments(
                bearer_token=settings.DODO_PAYMENTS_API_KEY,
                environment=settings.DODO_PAYMENTS_ENVIRONMENT,
                max_retries=0,
            )
        return self._sdk

    async def safe_call(self, operation: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute a Dodo API call with retry on transient errors.

        Raises:
            ProviderUnavailableError: still failing after the last attempt
            SubscriptionNotFoundError: provider answered 404
            PaymentError: any other error response
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"[DODO] Retrying {operation} (attempt {attempt.retry_state.attempt_number})"
                        )
                    return await func(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            logger.error(f"[DODO] {operation} failed after {self.retry_attempts} attempts: {e}")
            raise ProviderUnavailableError(f"Payment provider unavailable during {operation}", operation=operation) from e
        except dodopayments.NotFoundError as e:
            raise SubscriptionNotFoundError(f"Provider has no record for {operation}") from e
        except dodopayments.APIStatusError as e:
            logger.error(f"[DODO] {operation} rejected with status {e.status_code}: {e}")
            raise PaymentError(f"Payment provider rejected {operation}", provider_status=e.status_code) from e

    # -------------------------------------------------------------------------
    # Subscription Operations
    # -------------------------------------------------------------------------

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        result = await self.safe_call(
            'retrieve_subscription', self.sdk.subscriptions.retrieve, subscription_id
        )
        return to_provider_subscription(result)

    async def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> ProviderSubscription:
        result = await self.safe_call(
            'update_subscription',
            self.sdk.subscriptions.update,
            subscription_id,
            cancel_at_next_billing_date=cancel,
        )
        logger.info(f"[DODO] Subscription {subscription_id} cancel_at_next_billing_date={cancel}")
        return to_provider_subscription(result)

    async def change_plan(self, subscription_id: str, product_id: str) -> None:
        await self.safe_call(
            'change_plan',
            self.sdk.subscriptions.change_plan,
            subscription_id,
            product_id=product_id,
            quantity=1,
            proration_billing_mode='difference_immediately',
        )
        logger.info(f"[DODO] Subscription {subscription_id} moved to product {product_id}")

    # -------------------------------------------------------------------------
    # Checkout Operations
    # -------------------------------------------------------------------------

    async def create_subscription_checkout(
        self,
        product_id: str,
        customer_email: str,
        customer_name: str,
        billing: Dict[str, str],
        metadata: Dict[str, str],
        return_url: Optional[str] = None,
    ) -> CheckoutLink:
        result = await self.safe_call(
            'create_subscription',
            self.sdk.subscriptions.create,
            billing=billing,
            customer={'email': customer_email, 'name': customer_name},
            product_id=product_id,
            quantity=1,
            payment_link=True,
            return_url=return_url or settings.DODO_RETURN_URL,
            metadata=metadata,
        )
        return CheckoutLink(checkout_id=result.subscription_id, payment_link=result.payment_link, kind='subscription')

    async def create_payment_checkout(
        self,
        product_id: str,
        customer_email: str,
        customer_name: str,
        billing: Dict[str, str],
        metadata: Dict[str, str],
        return_url: Optional[str] = None,
    ) -> CheckoutLink:
        result = await self.safe_call(
            'create_payment',
            self.sdk.payments.create,
            billing=billing,
            customer={'email': customer_email, 'name': customer_name},
            product_cart=[{'product_id': product_id, 'quantity': 1}],
            payment_link=True,
            return_url=return_url or settings.DODO_RETURN_URL,
            metadata=metadata,
        )
        return CheckoutLink(checkout_id=result.payment_id, payment_link=result.payment_link, kind='payment')


# Global instance
dodo_client = DodoPaymentsClient()
