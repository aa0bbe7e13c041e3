"""
Billing Exceptions

Custom exception classes for ledger and billing errors.
These provide structured error handling across the billing module and map
onto HTTP status codes in ``credit_ledger.core.registrar``.
"""


class BillingError(Exception):
    """
    Base exception for all billing-related errors.

    All billing exceptions inherit from this class, allowing for
    broad exception handling when needed.
    """

    status_code: int = 500

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


class DuplicateIdempotencyKeyError(BillingError):
    """
    Raised by the ledger store when a grant with the same idempotency key exists.

    Soft error: the Grant Manager turns it into a "return the existing grant"
    result and callers never see it.
    """

    status_code = 409

    def __init__(self, idempotency_key: str):
        super().__init__(
            message=f"Grant with idempotency key '{idempotency_key}' already exists",
            code="DUPLICATE_IDEMPOTENCY_KEY",
            details={'idempotency_key': idempotency_key}
        )
        self.idempotency_key = idempotency_key


class InsufficientCreditsError(BillingError):
    """
    Raised when a user doesn't have enough credits for an operation.

    Attributes:
        required: Credits required for the operation
        available: Credits currently available
    """

    status_code = 402

    def __init__(
        self,
        message: str = "Insufficient credits for this operation",
        required: int = 0,
        available: int = 0
    ):
        super().__init__(
            message=message,
            code="INSUFFICIENT_CREDITS",
            details={
                'required': required,
                'available': available,
                'shortfall': max(0, required - available)
            }
        )
        self.required = required
        self.available = available


class LedgerStorageError(BillingError):
    """Raised when the ledger store cannot complete a read or write."""

    status_code = 500

    def __init__(self, message: str = "Ledger storage failure", operation: str = None):
        super().__init__(
            message=message,
            code="LEDGER_STORAGE_ERROR",
            details={'operation': operation} if operation else {}
        )
        self.operation = operation


class SubscriptionError(BillingError):
    """
    Raised when there's an issue with subscription management.

    Examples:
        - Plan change requested after the billing period ended
        - Reactivating a subscription that is not pending cancellation
        - No product configured for a plan
        - A status change the subscription state machine does not allow
    """

    status_code = 400

    def __init__(
        self,
        message: str = "Subscription error",
        code: str = "SUBSCRIPTION_ERROR",
        subscription_id: str = None
    ):
        super().__init__(
            message=message,
            code=code,
            details={'subscription_id': subscription_id} if subscription_id else {}
        )
        self.subscription_id = subscription_id


class SubscriptionNotFoundError(SubscriptionError):
    """Raised when cancel/change-plan finds no matching subscription."""

    status_code = 404

    def __init__(self, message: str = "No active subscription found", subscription_id: str = None):
        super().__init__(message=message, code="SUBSCRIPTION_NOT_FOUND", subscription_id=subscription_id)


class ProviderUnavailableError(BillingError):
    """Raised when the payment provider stays unreachable after retries."""

    status_code = 503

    def __init__(self, message: str = "Payment provider unavailable", operation: str = None):
        super().__init__(
            message=message,
            code="PROVIDER_UNAVAILABLE",
            details={'operation': operation} if operation else {}
        )
        self.operation = operation


class PaymentError(BillingError):
    """
    Raised when the payment provider rejects a request.

    Examples:
        - Unknown product id
        - Plan change refused by the provider
    """

    status_code = 502

    def __init__(
        self,
        message: str = "Payment processing error",
        code: str = "PAYMENT_ERROR",
        provider_status: int = None
    ):
        super().__init__(
            message=message,
            code=code,
            details={'provider_status': provider_status} if provider_status else {}
        )
        self.provider_status = provider_status


class WebhookError(BillingError):
    """
    Raised when there's an issue processing a webhook.

    Examples:
        - Invalid signature
        - Malformed payload
        - Event currently being processed by another worker
    """

    status_code = 400

    def __init__(
        self,
        message: str = "Webhook processing error",
        code: str = "WEBHOOK_ERROR",
        event_id: str = None,
        event_type: str = None
    ):
        details = {}
        if event_id:
            details['event_id'] = event_id
        if event_type:
            details['event_type'] = event_type

        super().__init__(
            message=message,
            code=code,
            details=details
        )
        self.event_id = event_id
        self.event_type = event_type


class WebhookSignatureError(WebhookError):
    """Raised when the webhook signature headers do not verify."""

    status_code = 401

    def __init__(self, message: str = "Invalid webhook signature", event_id: str = None):
        super().__init__(message=message, code="INVALID_SIGNATURE", event_id=event_id)


class MalformedEventError(WebhookError):
    """Raised for payloads the reconciler cannot interpret; the provider retries."""

    status_code = 400

    def __init__(self, message: str = "Malformed webhook payload", event_id: str = None, event_type: str = None):
        super().__init__(message=message, code="MALFORMED_EVENT", event_id=event_id, event_type=event_type)


class EventInProgressError(WebhookError):
    """Raised when another worker holds the event; the provider retries later."""

    status_code = 409

    def __init__(self, event_id: str, event_type: str = None):
        super().__init__(
            message="Event currently being processed",
            code="EVENT_IN_PROGRESS",
            event_id=event_id,
            event_type=event_type
        )


class UserResolutionFailedError(WebhookError):
    """
    Raised when an event cannot be mapped to a user, even via the
    pending-checkout fallback. The event is parked on the dead-letter list.
    """

    status_code = 202

    def __init__(self, message: str = "Could not resolve user for event", event_id: str = None, event_type: str = None):
        super().__init__(message=message, code="USER_RESOLUTION_FAILED", event_id=event_id, event_type=event_type)


class PlanNotFoundError(BillingError):
    """Raised when a requested plan doesn't exist."""

    status_code = 400

    def __init__(self, plan_name: str):
        super().__init__(
            message=f"Plan '{plan_name}' not found",
            code="PLAN_NOT_FOUND",
            details={'plan_name': plan_name}
        )
        self.plan_name = plan_name


class WebhookConfigurationError(WebhookError):
    """Raised when signature verification is required but no secret is configured."""

    status_code = 500

    def __init__(self, message: str = "Webhook secret not configured"):
        super().__init__(message=message, code="WEBHOOK_NOT_CONFIGURED")


class WebhookEventNotFoundError(WebhookError):
    """Raised when an admin replays an event id that was never recorded."""

    status_code = 404

    def __init__(self, event_id: str):
        super().__init__(message="Webhook event not found", code="EVENT_NOT_FOUND", event_id=event_id)
