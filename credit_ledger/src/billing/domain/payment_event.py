"""
Payment Event Domain Entities

Provider webhook deliveries and their processing record.

Dodo sends bodies shaped ``{"type", "timestamp", "data": {...}}``. The
``data`` object differs per event family; ``PaymentEvent`` exposes the
fields the reconciler needs under one set of accessors, accepting both the
flat (``customer_id``) and nested (``customer.customer_id``) shapes.
"""

import hashlib
import json

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from credit_ledger.src.billing.domain.credit_grant import utcnow
from credit_ledger.src.billing.shared.exceptions import MalformedEventError


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (with or without ``Z``) and epoch seconds into aware UTC datetimes."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return datetime.fromtimestamp(int(text), tz=timezone.utc)
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


@dataclass
class PaymentEvent:
    """
    A provider webhook delivery.

    Attributes:
        id: Provider event id (``webhook-id`` header, or a body hash when absent)
        type: Event type, e.g. ``subscription.active``
        occurred_at: Delivery timestamp
        data: The ``data`` object of the body
    """
    id: str
    type: str
    data: Dict[str, Any]
    occurred_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_body(cls, body: bytes, headers: Optional[Mapping[str, str]] = None) -> 'PaymentEvent':
        """
        Parse a raw webhook body.

        Raises:
            MalformedEventError: invalid JSON, or missing ``type``/``data``
        """
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        event_id = headers.get('webhook-id') or f"evt_{hashlib.sha256(body).hexdigest()[:32]}"

        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedEventError(f"Webhook body is not valid JSON: {e}", event_id=event_id)

        return cls.from_dict(payload, event_id=event_id, timestamp=headers.get('webhook-timestamp'))

    @classmethod
    def from_dict(cls, payload: Any, event_id: str, timestamp: Any = None) -> 'PaymentEvent':
        if not isinstance(payload, dict):
            raise MalformedEventError("Webhook body must be a JSON object", event_id=event_id)

        event_type = payload.get('type')
        data = payload.get('data')
        if not isinstance(event_type, str) or not event_type:
            raise MalformedEventError("Webhook body has no event type", event_id=event_id)
        if not isinstance(data, dict):
            raise MalformedEventError("Webhook body has no data object", event_id=event_id, event_type=event_type)

        occurred_at = parse_datetime(timestamp) or parse_datetime(payload.get('timestamp')) or utcnow()
        return cls(id=event_id, type=event_type, data=data, occurred_at=occurred_at)

    def to_dict(self) -> Dict[str, Any]:
        """Body form, as stored on the webhook event record."""
        return {
            'type': self.type,
            'timestamp': self.occurred_at.isoformat(),
            'data': self.data,
        }

    # -------------------------------------------------------------------------
    # Payload accessors
    # -------------------------------------------------------------------------

    @property
    def metadata(self) -> Dict[str, Any]:
        metadata = self.data.get('metadata')
        return metadata if isinstance(metadata, dict) else {}

    @property
    def customer(self) -> Dict[str, Any]:
        customer = self.data.get('customer')
        return customer if isinstance(customer, dict) else {}

    @property
    def customer_id(self) -> Optional[str]:
        return self.data.get('customer_id') or self.customer.get('customer_id')

    @property
    def customer_email(self) -> Optional[str]:
        return self.customer.get('email') or self.data.get('customer_email')

    @property
    def subscription_id(self) -> Optional[str]:
        return self.data.get('subscription_id') or None

    @property
    def payment_id(self) -> Optional[str]:
        return self.data.get('payment_id') or None

    @property
    def product_id(self) -> Optional[str]:
        product_id = self.data.get('product_id')
        if product_id:
            return product_id
        cart = self.data.get('product_cart')
        if isinstance(cart, list) and cart and isinstance(cart[0], dict):
            return cart[0].get('product_id')
        return None

    @property
    def user_id(self) -> Optional[str]:
        """User id carried directly on the event (event metadata, then customer metadata)."""
        customer_metadata = self.customer.get('metadata')
        candidates = [self.metadata.get('userId'), self.metadata.get('user_id')]
        if isinstance(customer_metadata, dict):
            candidates += [customer_metadata.get('userId'), customer_metadata.get('user_id')]
        for candidate in candidates:
            if candidate:
                return str(candidate)
        return None

    @property
    def plan(self) -> Optional[str]:
        plan = self.metadata.get('plan')
        return plan.lower() if isinstance(plan, str) and plan else None

    @property
    def billing_period(self) -> Optional[str]:
        return self.metadata.get('billingPeriod') or self.metadata.get('billing_period')

    @property
    def payment_frequency_interval(self) -> Optional[str]:
        return self.data.get('payment_frequency_interval')

    @property
    def previous_billing_date(self) -> Optional[datetime]:
        return parse_datetime(self.data.get('previous_billing_date'))

    @property
    def next_billing_date(self) -> Optional[datetime]:
        return parse_datetime(self.data.get('next_billing_date'))

    @property
    def amount(self) -> Optional[int]:
        """Amount in the smallest currency unit."""
        value = self.data.get('total_amount', self.data.get('amount'))
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @property
    def currency(self) -> Optional[str]:
        return self.data.get('currency')


class WebhookEventStatus(Enum):
    """Processing status of a webhook event record."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


@dataclass
class WebhookEventRecord:
    """Persisted processing record for one provider event id."""
    id: str
    event_type: str
    status: WebhookEventStatus
    payload: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    attempts: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'event_type': self.event_type,
            'status': self.status.value,
            'payload': self.payload,
            'error_message': self.error_message,
            'attempts': self.attempts,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
