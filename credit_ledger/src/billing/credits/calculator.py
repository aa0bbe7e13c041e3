"""
Balance Calculator

Derives a user's usable balance from the grant history.

Deductions are single negative rows that do not name the grants they draw
from, so the calculator replays the history in order and lets each deduction
consume the credits that were live at that moment:

1. Expiring credits first, soonest expiry first.
2. Permanent credits last.
3. Anything a deduction cannot cover becomes overdraft, which later grants
   pay off first. It only happens with inconsistent data, since the Deduction
   Manager refuses to overdraw.

The balance at ``as_of`` is the unspent remainder of the grants still live
at ``as_of``, minus any outstanding overdraft. A grant whose ``expires_at``
has been reached contributes nothing, whether or not the sweeper has
deactivated it yet. Without expirations this equals the plain signed sum of
all grants. The total is never floored at zero.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from credit_ledger.src.billing.domain import CreditBalance, CreditGrant
from credit_ledger.src.billing.domain.credit_grant import utcnow


@dataclass
class _Bucket:
    grant: CreditGrant
    remaining: int

    def is_live(self, at: datetime) -> bool:
        grant = self.grant
        if grant.expires_at is None:
            # Permanent grants only stop counting if something deactivated them
            return grant.is_active
        return at < grant.expires_at


@dataclass
class LedgerReplay:
    """Result of replaying a grant history up to ``as_of``."""
    as_of: datetime
    remaining: Dict[str, int] = field(default_factory=dict)
    expiring_total: int = 0
    permanent_total: int = 0
    overdraft: int = 0
    next_expiry: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.expiring_total + self.permanent_total - self.overdraft


def _consumption_order(bucket: _Bucket):
    expires_at = bucket.grant.expires_at
    return (expires_at is None, expires_at or datetime.max, bucket.grant.created_at, bucket.grant.id)


def replay_grants(grants: Iterable[CreditGrant], as_of: Optional[datetime] = None) -> LedgerReplay:
    """
    Replay a user's grants in creation order.

    Args:
        grants: Full grant history (active and inactive rows)
        as_of: Point in time to evaluate; rows created later are ignored

    Returns:
        LedgerReplay with per-grant remainders and the partitioned totals
    """
    as_of = as_of or utcnow()
    history = sorted(
        (g for g in grants if g.created_at <= as_of),
        # Credits written at the same instant as a debit are applied first
        key=lambda g: (g.created_at, g.amount < 0, g.id),
    )

    buckets: List[_Bucket] = []
    overdraft = 0

    for grant in history:
        if grant.amount > 0:
            bucket = _Bucket(grant=grant, remaining=grant.amount)
            if overdraft and bucket.is_live(grant.created_at):
                settled = min(overdraft, bucket.remaining)
                bucket.remaining -= settled
                overdraft -= settled
            buckets.append(bucket)
            continue

        need = -grant.amount
        if need == 0:
            continue

        live = sorted(
            (b for b in buckets if b.remaining > 0 and b.is_live(grant.created_at)),
            key=_consumption_order,
        )
        for bucket in live:
            take = min(need, bucket.remaining)
            bucket.remaining -= take
            need -= take
            if need == 0:
                break
        overdraft += need

    replay = LedgerReplay(as_of=as_of, overdraft=overdraft)
    for bucket in buckets:
        replay.remaining[bucket.grant.id] = bucket.remaining
        if not bucket.is_live(as_of) or bucket.remaining <= 0:
            continue
        if bucket.grant.expires_at is None:
            replay.permanent_total += bucket.remaining
        else:
            replay.expiring_total += bucket.remaining
            if replay.next_expiry is None or bucket.grant.expires_at < replay.next_expiry:
                replay.next_expiry = bucket.grant.expires_at

    return replay


def calculate_balance(user_id: str, grants: Iterable[CreditGrant], as_of: Optional[datetime] = None) -> CreditBalance:
    """Balance of one user from their grant history."""
    replay = replay_grants(grants, as_of)
    return CreditBalance(
        user_id=user_id,
        total=replay.total,
        subscription_credits=replay.expiring_total,
        permanent_credits=replay.permanent_total,
        next_expiry=replay.next_expiry,
        as_of=replay.as_of,
    )


class BalanceCalculator:
    """
    Reads grants from the ledger store and computes balances.

    Usage:
        calculator = BalanceCalculator(store)
        balance = await calculator.get_balance(user_id)
        print(balance.total)
    """

    def __init__(self, store):
        self.store = store

    async def get_balance(self, user_id: str, as_of: Optional[datetime] = None) -> CreditBalance:
        async with self.store.transaction() as tx:
            grants = await tx.list_all_grants(user_id)
        return calculate_balance(user_id, grants, as_of)
