"""
Credit Grant Domain Entities

A grant is one append-only ledger row: positive amounts add credits,
deductions are stored as negative grants. Transactions are the derived
audit log shown to users.
"""

import uuid

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class GrantKind(Enum):
    """Provenance category of a ledger row."""
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    BONUS = "bonus"
    ADMIN = "admin"
    PLAN_CHANGE_ADJUSTMENT = "plan_change_adjustment"
    DEDUCTION = "deduction"


class TransactionType(Enum):
    """Direction of a derived transaction log entry."""
    CREDIT = "credit"
    DEBIT = "debit"
    EXPIRATION = "expiration"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class CreditGrant:
    """
    A discrete allocation (or, with a negative amount, consumption) of credits.

    Attributes:
        id: Grant id (uuid string)
        user_id: Owner of the credits
        amount: Signed credit amount; negative only for deductions
        kind: Provenance category
        source: Free-text provenance tag (subscription_renewal, image_enhancement, ...)
        idempotency_key: Unique across all grants
        created_at: When the grant was written
        expires_at: When the credits stop counting; None means never
        is_active: False once the expiration sweeper has processed the grant
        metadata: Opaque audit data (subscription id, plan, period end, ...)
    """
    user_id: str
    amount: int
    kind: GrantKind
    source: str
    idempotency_key: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, as_of: Optional[datetime] = None) -> bool:
        """Check if the grant's expiry has been reached."""
        if self.expires_at is None:
            return False
        return self.expires_at <= (as_of or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'amount': self.amount,
            'kind': self.kind.value,
            'source': self.source,
            'idempotency_key': self.idempotency_key,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'is_active': self.is_active,
            'metadata': self.metadata,
        }


@dataclass
class CreditTransaction:
    """One entry of the derived transaction log."""
    user_id: str
    amount: int
    type: TransactionType
    reason: str
    balance_before: int
    balance_after: int
    grant_id: Optional[str] = None
    description: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'grant_id': self.grant_id,
            'amount': self.amount,
            'type': self.type.value,
            'reason': self.reason,
            'description': self.description,
            'balance_before': self.balance_before,
            'balance_after': self.balance_after,
            'created_at': self.created_at.isoformat(),
            'metadata': self.metadata,
        }


@dataclass
class CreditBalance:
    """
    A user's usable balance at a point in time.

    ``total`` may be negative when stored data is inconsistent; it is never
    floored for reporting.
    """
    user_id: str
    total: int
    subscription_credits: int
    permanent_credits: int
    next_expiry: Optional[datetime] = None
    as_of: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'bySource': {
                'subscriptionCredits': self.subscription_credits,
                'permanentCredits': self.permanent_credits,
            },
            'nextExpiry': self.next_expiry.isoformat() if self.next_expiry else None,
        }
