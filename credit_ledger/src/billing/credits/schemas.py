"""Request and response models for the credit ledger API."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys; snake_case input also works."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


GrantableKind = Literal['subscription', 'purchase', 'bonus', 'admin', 'plan_change_adjustment']


class GrantCreditsParams(CamelModel):
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    kind: GrantableKind
    source: str = Field(..., min_length=1, max_length=64)
    idempotency_key: str = Field(..., min_length=1, max_length=255)
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None


class DeductCreditsParams(CamelModel):
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=255)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BalanceBySource(CamelModel):
    subscription_credits: int
    permanent_credits: int


class BalanceResponse(CamelModel):
    available: bool = True
    total: Optional[int] = None
    by_source: Optional[BalanceBySource] = None
    next_expiry: Optional[datetime] = None


class GrantResponse(CamelModel):
    success: bool = True
    duplicate: bool
    grant_id: str
    amount: int
    expires_at: Optional[datetime] = None
    new_balance: int


class DeductionResponse(CamelModel):
    success: bool
    duplicate: bool = False
    grant_id: str
    amount: int
    new_balance: int


class CreditCheckResponse(CamelModel):
    has_enough_credits: bool
    required: int
    available: int


class TransactionResponse(CamelModel):
    id: str
    amount: int
    type: str
    reason: str
    description: Optional[str] = None
    balance_before: int
    balance_after: int
    created_at: datetime


class HistoryResponse(CamelModel):
    transactions: List[TransactionResponse]
    limit: int
    offset: int
