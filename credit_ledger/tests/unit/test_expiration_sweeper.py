"""Unit tests for the expiration sweeper, cycle allocation and maintenance."""

from datetime import timedelta

import pytest

from credit_ledger.src.billing.domain.credit_grant import utcnow


async def expiring_grant(ledger, amount, expires_at, key, user_id='user-1'):
    from credit_ledger.src.billing.domain import GrantKind

    return await ledger.grants.grant(
        user_id, amount, GrantKind.BONUS, source='promo', idempotency_key=key, expires_at=expires_at
    )


class TestSweep:
    """Deactivating expired grants."""

    @pytest.mark.asyncio
    async def test_sweep_deactivates_and_logs_unspent(self, store, ledger):
        from credit_ledger.src.billing.domain import TransactionType

        expires_at = utcnow() + timedelta(days=1)
        granted = await expiring_grant(ledger, 400, expires_at, 'bonus_1')
        await ledger.deductions.deduct('user-1', 150, reason='job')

        deactivated = await ledger.sweeper.sweep(as_of=expires_at)

        assert deactivated == 1
        assert store.grants[granted.grant.id].is_active is False
        expiration = store.transactions[-1]
        assert expiration.type == TransactionType.EXPIRATION
        assert expiration.amount == -250
        assert (expiration.balance_before, expiration.balance_after) == (250, 0)

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, store, ledger):
        """Re-running with the same as_of changes nothing."""
        expires_at = utcnow() + timedelta(days=1)
        await expiring_grant(ledger, 100, expires_at, 'a')
        await expiring_grant(ledger, 100, expires_at, 'b', user_id='user-2')

        first = await ledger.sweeper.sweep(as_of=expires_at)
        log_size = len(store.transactions)
        second = await ledger.sweeper.sweep(as_of=expires_at)

        assert first == 2
        assert second == 0
        assert len(store.transactions) == log_size

    @pytest.mark.asyncio
    async def test_sweep_leaves_future_and_permanent_grants(self, store, ledger):
        from credit_ledger.src.billing.domain import GrantKind

        now = utcnow()
        await expiring_grant(ledger, 100, now + timedelta(days=1), 'soon')
        await expiring_grant(ledger, 100, now + timedelta(days=10), 'later')
        await ledger.grants.grant('user-1', 100, GrantKind.PURCHASE, source='x', idempotency_key='perm')

        assert await ledger.sweeper.sweep(as_of=now + timedelta(days=2)) == 1
        assert sum(1 for g in store.grants.values() if g.is_active) == 2

    @pytest.mark.asyncio
    async def test_balance_is_same_before_and_after_sweep(self, ledger):
        """Expired credits are excluded whether or not the sweeper ran."""
        expires_at = utcnow() + timedelta(days=1)
        await expiring_grant(ledger, 300, expires_at, 'a')
        later = expires_at + timedelta(hours=1)

        before = await ledger.get_balance('user-1', as_of=later)
        await ledger.sweeper.sweep(as_of=later)
        after = await ledger.get_balance('user-1', as_of=later)

        assert before.total == after.total == 0

    @pytest.mark.asyncio
    async def test_sweep_restricted_to_one_user(self, ledger):
        expires_at = utcnow() + timedelta(days=1)
        await expiring_grant(ledger, 100, expires_at, 'a')
        await expiring_grant(ledger, 100, expires_at, 'b', user_id='user-2')

        assert await ledger.sweeper.sweep(as_of=expires_at, user_id='user-2') == 1

    @pytest.mark.asyncio
    async def test_sweep_in_batches(self, store):
        from credit_ledger.src.billing.credits import CreditLedger, ExpirationSweeper

        ledger = CreditLedger(store)
        expires_at = utcnow() + timedelta(days=1)
        for i in range(5):
            await expiring_grant(ledger, 10, expires_at, f"k{i}", user_id=f"user-{i}")

        sweeper = ExpirationSweeper(store, batch_size=2)

        assert await sweeper.sweep(as_of=expires_at) == 5


class TestLazySweep:
    """Balance reads sweep when the cached next expiry has passed."""

    @pytest.mark.asyncio
    async def test_get_balance_runs_sweep_when_due(self, ledger):
        from unittest.mock import AsyncMock, patch

        expires_at = utcnow() + timedelta(days=1)
        await expiring_grant(ledger, 100, expires_at, 'a')
        later = expires_at + timedelta(minutes=1)

        with patch('credit_ledger.src.billing.credits.manager.is_sweep_due', AsyncMock(return_value=True)), \
             patch.object(ledger.sweeper, 'sweep', AsyncMock(return_value=1)) as mock_sweep:
            balance = await ledger.get_balance('user-1', as_of=later)

        mock_sweep.assert_awaited_once_with(as_of=later, user_id='user-1')
        assert balance.total == 0

    @pytest.mark.asyncio
    async def test_cache_failure_fails_open(self, ledger):
        from unittest.mock import AsyncMock, MagicMock, patch

        redis = MagicMock()
        redis.get = AsyncMock(side_effect=ConnectionError('redis down'))
        redis.set = AsyncMock(side_effect=ConnectionError('redis down'))
        redis.delete = AsyncMock(side_effect=ConnectionError('redis down'))

        with patch('credit_ledger.database.redis.redis_client', redis):
            await expiring_grant(ledger, 100, utcnow() + timedelta(days=1), 'a')
            balance = await ledger.get_balance('user-1')

        assert balance.total == 100


class TestFinalizeCancellations:
    """pending_cancellation -> cancelled at period end."""

    @pytest.mark.asyncio
    async def test_finalizes_only_ended_periods(self, store, ledger):
        from credit_ledger.src.billing.domain import Subscription, SubscriptionStatus

        now = utcnow()
        ended = Subscription(
            user_id='user-1', plan='basic', billing_period='monthly',
            status=SubscriptionStatus.PENDING_CANCELLATION, provider_subscription_id='sub_ended',
            current_period_start=now - timedelta(days=31), next_billing_date=now - timedelta(days=1),
        )
        running = Subscription(
            user_id='user-2', plan='basic', billing_period='monthly',
            status=SubscriptionStatus.PENDING_CANCELLATION, provider_subscription_id='sub_running',
            current_period_start=now - timedelta(days=10), next_billing_date=now + timedelta(days=20),
        )
        async with store.transaction() as tx:
            await tx.save_subscription(ended)
            await tx.save_subscription(running)

        assert await ledger.sweeper.finalize_cancellations(as_of=now) == 1
        assert store.subscriptions[ended.id].status == SubscriptionStatus.CANCELLED
        assert store.subscriptions[running.id].status == SubscriptionStatus.PENDING_CANCELLATION


class TestCycleAllocation:
    """Yearly plans receive credits in 30-day cycles."""

    @pytest.mark.asyncio
    async def test_yearly_cycles(self, store, ledger):
        from credit_ledger.src.billing.domain import Subscription, SubscriptionStatus

        now = utcnow()
        start = now - timedelta(days=45)
        subscription = Subscription(
            user_id='user-1', plan='basic', billing_period='yearly',
            status=SubscriptionStatus.ACTIVE, provider_subscription_id='sub_y',
            current_period_start=start, next_billing_date=start + timedelta(days=365),
        )
        async with store.transaction() as tx:
            await tx.save_subscription(subscription)

        cycle_start, cycle_end = subscription.credit_cycle(now)
        assert cycle_start == start + timedelta(days=30)
        assert cycle_end == start + timedelta(days=60)

        assert await ledger.cycles.allocate_due_cycles(as_of=now) == 1
        assert await ledger.cycles.allocate_due_cycles(as_of=now) == 0

        grants = [g for g in store.grants.values() if g.user_id == 'user-1']
        assert len(grants) == 1
        assert grants[0].amount == 16_200
        assert grants[0].expires_at == cycle_end

    def test_last_yearly_cycle_absorbs_remainder(self):
        from credit_ledger.src.billing.domain import Subscription, SubscriptionStatus
        from credit_ledger.tests.conftest import utc

        start = utc(2026, 1, 1)
        end = start + timedelta(days=365)
        subscription = Subscription(
            user_id='u', plan='basic', billing_period='yearly', status=SubscriptionStatus.ACTIVE,
            current_period_start=start, next_billing_date=end,
        )

        assert subscription.credit_cycle(end - timedelta(days=1)) == (start + timedelta(days=330), end)
        assert subscription.credit_cycle(start + timedelta(days=331)) == (start + timedelta(days=330), end)
        assert subscription.credit_cycle(start + timedelta(days=329)) == (
            start + timedelta(days=300), start + timedelta(days=330)
        )

    @pytest.mark.asyncio
    async def test_daily_allocation_grants_twelve_cycles_per_year(self, store, ledger):
        from credit_ledger.src.billing.domain import Subscription, SubscriptionStatus
        from credit_ledger.tests.conftest import utc

        start = utc(2026, 1, 1)
        subscription = Subscription(
            user_id='user-1', plan='basic', billing_period='yearly',
            status=SubscriptionStatus.ACTIVE, provider_subscription_id='sub_y',
            current_period_start=start, next_billing_date=start + timedelta(days=365),
        )
        async with store.transaction() as tx:
            await tx.save_subscription(subscription)

        allocated = 0
        for day in range(366):
            allocated += await ledger.cycles.allocate_due_cycles(as_of=start + timedelta(days=day, hours=1))

        grants = [g for g in store.grants.values() if g.user_id == 'user-1']
        assert allocated == len(grants) == 12
        assert sum(g.amount for g in grants) == 12 * 16_200

    @pytest.mark.asyncio
    async def test_run_maintenance_reports_counts(self, store, ledger):
        expires_at = utcnow() + timedelta(days=1)
        await expiring_grant(ledger, 100, expires_at, 'a')

        result = await ledger.run_maintenance(as_of=expires_at)

        assert result.to_dict() == {
            'deactivated_grants': 1,
            'allocated_cycles': 0,
            'finalized_cancellations': 0,
        }
