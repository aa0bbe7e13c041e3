"""Unit tests for the balance calculator."""

from datetime import timedelta

from credit_ledger.tests.conftest import utc


def grant(user_id, amount, created_at, expires_at=None, kind=None, key=None, is_active=True):
    from credit_ledger.src.billing.domain import CreditGrant, GrantKind

    if kind is None:
        kind = GrantKind.DEDUCTION if amount < 0 else GrantKind.PURCHASE
    return CreditGrant(
        user_id=user_id,
        amount=amount,
        kind=kind,
        source='test',
        idempotency_key=key or f"k_{amount}_{created_at.isoformat()}",
        created_at=created_at,
        expires_at=expires_at,
        is_active=is_active,
    )


class TestCalculateBalance:
    """Balance replay over a grant history."""

    def test_plain_sum_without_expirations(self):
        """Grants minus deductions with nothing expiring."""
        from credit_ledger.src.billing.credits import calculate_balance

        t0 = utc(2026, 1, 1)
        history = [
            grant('u', 1000, t0),
            grant('u', -200, t0 + timedelta(hours=1)),
        ]

        balance = calculate_balance('u', history, as_of=t0 + timedelta(days=1))

        assert balance.total == 800
        assert balance.permanent_credits == 800
        assert balance.subscription_credits == 0
        assert balance.next_expiry is None

    def test_expired_grant_contributes_nothing(self):
        """A grant past its expiry is excluded even before the sweeper runs."""
        from credit_ledger.src.billing.credits import calculate_balance
        from credit_ledger.src.billing.domain import GrantKind

        t0 = utc(2026, 1, 1)
        expires = t0 + timedelta(days=30)
        history = [
            grant('u', 500, t0, expires_at=expires, kind=GrantKind.SUBSCRIPTION),
            grant('u', 100, t0),
        ]

        before = calculate_balance('u', history, as_of=expires - timedelta(seconds=1))
        after = calculate_balance('u', history, as_of=expires)

        assert before.total == 600
        assert before.next_expiry == expires
        assert after.total == 100
        assert after.subscription_credits == 0

    def test_deductions_consume_expiring_credits_first(self):
        """Spending draws down the soonest-expiring credits before permanent ones."""
        from credit_ledger.src.billing.credits import calculate_balance
        from credit_ledger.src.billing.domain import GrantKind

        t0 = utc(2026, 1, 1)
        expires = t0 + timedelta(days=30)
        history = [
            grant('u', 100, t0),
            grant('u', 300, t0, expires_at=expires, kind=GrantKind.SUBSCRIPTION, key='sub'),
            grant('u', -250, t0 + timedelta(days=1)),
        ]

        mid = calculate_balance('u', history, as_of=t0 + timedelta(days=2))
        assert mid.total == 150
        assert mid.subscription_credits == 50
        assert mid.permanent_credits == 100

        # Only the 50 unspent subscription credits are lost at expiry
        end = calculate_balance('u', history, as_of=expires)
        assert end.total == 100

    def test_later_expiring_grant_is_consumed_second(self):
        from credit_ledger.src.billing.credits import replay_grants
        from credit_ledger.src.billing.domain import GrantKind

        t0 = utc(2026, 1, 1)
        soon = grant('u', 100, t0, expires_at=t0 + timedelta(days=5), kind=GrantKind.BONUS, key='soon')
        late = grant('u', 100, t0, expires_at=t0 + timedelta(days=20), kind=GrantKind.BONUS, key='late')
        spend = grant('u', -150, t0 + timedelta(days=1))

        replay = replay_grants([late, soon, spend], as_of=t0 + timedelta(days=2))

        assert replay.remaining[soon.id] == 0
        assert replay.remaining[late.id] == 50
        assert replay.next_expiry == t0 + timedelta(days=20)

    def test_overdraft_is_reported_as_negative_total(self):
        """Inconsistent data shows a negative balance, never floored."""
        from credit_ledger.src.billing.credits import calculate_balance

        t0 = utc(2026, 1, 1)
        history = [
            grant('u', 100, t0),
            grant('u', -300, t0 + timedelta(hours=1)),
        ]

        balance = calculate_balance('u', history, as_of=t0 + timedelta(days=1))

        assert balance.total == -200

    def test_later_grant_settles_overdraft(self):
        from credit_ledger.src.billing.credits import calculate_balance

        t0 = utc(2026, 1, 1)
        history = [
            grant('u', -50, t0),
            grant('u', 200, t0 + timedelta(hours=1)),
        ]

        assert calculate_balance('u', history, as_of=t0 + timedelta(days=1)).total == 150

    def test_future_rows_are_ignored(self):
        from credit_ledger.src.billing.credits import calculate_balance

        t0 = utc(2026, 1, 1)
        history = [grant('u', 100, t0), grant('u', 900, t0 + timedelta(days=10))]

        assert calculate_balance('u', history, as_of=t0 + timedelta(days=1)).total == 100

    def test_deactivated_permanent_grant_does_not_count(self):
        from credit_ledger.src.billing.credits import calculate_balance

        t0 = utc(2026, 1, 1)
        history = [grant('u', 100, t0, is_active=False), grant('u', 40, t0, key='other')]

        assert calculate_balance('u', history, as_of=t0 + timedelta(days=1)).total == 40


class TestBalanceToDict:
    """Serialised balance shape."""

    def test_by_source_keys(self):
        from credit_ledger.src.billing.domain import CreditBalance

        expiry = utc(2026, 2, 1)
        data = CreditBalance(
            user_id='u', total=10, subscription_credits=4, permanent_credits=6, next_expiry=expiry
        ).to_dict()

        assert data == {
            'total': 10,
            'bySource': {'subscriptionCredits': 4, 'permanentCredits': 6},
            'nextExpiry': expiry.isoformat(),
        }
