"""Unit tests for the grant manager."""

import asyncio

from datetime import timedelta

import pytest

from credit_ledger.src.billing.domain.credit_grant import utcnow


def make_subscription(plan='basic', billing_period='monthly', subscription_id='sub_1', user_id='user-1', days_in=1):
    from credit_ledger.src.billing.domain import Subscription, SubscriptionStatus

    start = utcnow() - timedelta(days=days_in)
    return Subscription(
        user_id=user_id,
        plan=plan,
        billing_period=billing_period,
        status=SubscriptionStatus.ACTIVE,
        provider_subscription_id=subscription_id,
        current_period_start=start,
        next_billing_date=start + timedelta(days=30),
    )


class TestGrant:
    """Generic grant behaviour."""

    @pytest.mark.asyncio
    async def test_grant_writes_row_and_transaction(self, store, ledger):
        """A grant appends one ledger row and one credit transaction."""
        from credit_ledger.src.billing.domain import GrantKind, TransactionType

        result = await ledger.grants.grant('user-1', 500, GrantKind.BONUS, source='promo', idempotency_key='promo_1')

        assert result.duplicate is False
        assert result.new_balance == 500
        assert result.grant.expires_at is None
        assert len(store.grants) == 1
        assert store.transactions[0].type == TransactionType.CREDIT
        assert store.transactions[0].balance_before == 0
        assert store.transactions[0].balance_after == 500

    @pytest.mark.asyncio
    async def test_replaying_same_key_grants_once(self, store, ledger):
        """N replays of the same key produce exactly one grant and one balance delta."""
        from credit_ledger.src.billing.domain import GrantKind

        results = []
        for _ in range(5):
            results.append(await ledger.grants.grant(
                'user-1', 1000, GrantKind.PURCHASE, source='credit_purchase', idempotency_key='purchase_pay_1'
            ))

        assert [r.duplicate for r in results] == [False, True, True, True, True]
        assert len({r.grant.id for r in results}) == 1
        assert len(store.grants) == 1
        assert len(store.transactions) == 1
        assert (await ledger.get_balance('user-1')).total == 1000

    @pytest.mark.asyncio
    async def test_concurrent_replays_grant_once(self, store, ledger):
        from credit_ledger.src.billing.domain import GrantKind

        results = await asyncio.gather(*[
            ledger.grants.grant('user-1', 300, GrantKind.BONUS, source='promo', idempotency_key='same')
            for _ in range(10)
        ])

        assert sum(1 for r in results if not r.duplicate) == 1
        assert (await ledger.get_balance('user-1')).total == 300

    @pytest.mark.asyncio
    @pytest.mark.parametrize('amount', [0, -5, True, 1.5])
    async def test_invalid_amount_rejected(self, ledger, amount):
        from credit_ledger.src.billing.domain import GrantKind

        with pytest.raises(ValueError):
            await ledger.grants.grant('user-1', amount, GrantKind.BONUS, source='promo', idempotency_key='k')

    @pytest.mark.asyncio
    async def test_deduction_kind_rejected(self, ledger):
        from credit_ledger.src.billing.domain import GrantKind

        with pytest.raises(ValueError):
            await ledger.grants.grant('user-1', 10, GrantKind.DEDUCTION, source='x', idempotency_key='k')

    @pytest.mark.asyncio
    async def test_sentinel_expiry_means_never(self, ledger):
        """The legacy far-future timestamp is stored as 'never expires'."""
        from credit_ledger.src.billing.domain import GrantKind
        from credit_ledger.src.billing.shared.config import NEVER_EXPIRES_SENTINEL

        result = await ledger.grants.grant(
            'user-1', 10, GrantKind.BONUS, source='promo', idempotency_key='k', expires_at=NEVER_EXPIRES_SENTINEL
        )

        assert result.grant.expires_at is None
        assert (await ledger.get_balance('user-1')).permanent_credits == 10

    @pytest.mark.asyncio
    async def test_subscription_grant_defaults_to_cycle_end(self, ledger):
        from credit_ledger.src.billing.domain import GrantKind

        subscription = make_subscription()
        result = await ledger.grants.grant(
            'user-1', 100, GrantKind.SUBSCRIPTION, source='subscription_renewal',
            idempotency_key='k', subscription=subscription,
        )

        assert result.grant.expires_at == subscription.next_billing_date


class TestSubscriptionCredits:
    """Cycle allocation for subscriptions."""

    @pytest.mark.asyncio
    async def test_grants_plan_credits_for_cycle(self, ledger):
        subscription = make_subscription(plan='creator')
        start, end = subscription.credit_cycle()

        result = await ledger.grants.grant_subscription_credits(subscription, start, end)

        assert result.grant.amount == 44_400
        assert result.grant.expires_at == end
        assert result.grant.idempotency_key == f"sub_sub_1_{start:%Y-%m-%d}"
        assert result.grant.metadata['subscription_id'] == 'sub_1'

    @pytest.mark.asyncio
    async def test_same_cycle_granted_once(self, ledger):
        subscription = make_subscription()
        start, end = subscription.credit_cycle()

        first = await ledger.grants.grant_subscription_credits(subscription, start, end, source='subscription_activation')
        second = await ledger.grants.grant_subscription_credits(subscription, start, end, source='subscription_payment')

        assert first.duplicate is False
        assert second.duplicate is True
        assert (await ledger.get_balance('user-1')).total == 16_200


class TestPlanChangeProration:
    """Top-up of the current cycle on plan change."""

    @pytest.mark.asyncio
    async def test_no_prior_allocation_grants_full_target(self, ledger):
        """With nothing allocated this period the full target allocation is granted, then nothing."""
        subscription = make_subscription(plan='creator')

        first = await ledger.grants.apply_plan_change(subscription, 'creator', 'pdt_creator_m', previous_plan='basic')
        second = await ledger.grants.apply_plan_change(subscription, 'creator', 'pdt_creator_m', previous_plan='basic')

        assert first.grant.amount == 44_400
        assert second is None
        assert (await ledger.get_balance('user-1')).total == 44_400

    @pytest.mark.asyncio
    async def test_upgrade_grants_only_delta(self, ledger):
        from credit_ledger.src.billing.domain import GrantKind

        subscription = make_subscription(plan='basic')
        start, end = subscription.credit_cycle()
        await ledger.grants.grant_subscription_credits(subscription, start, end)

        result = await ledger.grants.apply_plan_change(subscription, 'creator', 'pdt_creator_m', previous_plan='basic')

        assert result.grant.amount == 44_400 - 16_200
        assert result.grant.kind == GrantKind.PLAN_CHANGE_ADJUSTMENT
        assert result.grant.expires_at == end
        assert result.grant.idempotency_key == f"plan_change_sub_1_{end:%Y-%m-%d}_pdt_creator_m"
        assert (await ledger.get_balance('user-1')).total == 44_400

    @pytest.mark.asyncio
    async def test_downgrade_grants_nothing(self, ledger):
        subscription = make_subscription(plan='professional')
        start, end = subscription.credit_cycle()
        await ledger.grants.grant_subscription_credits(subscription, start, end)

        result = await ledger.grants.apply_plan_change(subscription, 'basic', 'pdt_basic_m', previous_plan='professional')

        assert result is None
        assert (await ledger.get_balance('user-1')).total == 73_800

    @pytest.mark.asyncio
    async def test_successive_upgrades_accumulate_to_target(self, ledger):
        subscription = make_subscription(plan='basic')
        start, end = subscription.credit_cycle()
        await ledger.grants.grant_subscription_credits(subscription, start, end)

        await ledger.grants.apply_plan_change(subscription, 'creator', 'pdt_creator_m')
        result = await ledger.grants.apply_plan_change(subscription, 'enterprise', 'pdt_ent_m')

        assert result.grant.amount == 187_800 - 44_400
        assert (await ledger.get_balance('user-1')).total == 187_800

    @pytest.mark.asyncio
    async def test_period_ended_grants_nothing(self, ledger):
        subscription = make_subscription(days_in=40)

        assert await ledger.grants.apply_plan_change(subscription, 'creator', 'pdt_creator_m') is None


class TestAdminGrant:
    """Operator grants."""

    @pytest.mark.asyncio
    async def test_admin_grant_is_permanent(self, ledger):
        from credit_ledger.src.billing.domain import GrantKind

        result = await ledger.grants.grant_admin_credits('user-1', 250, reason='support', granted_by='ops')

        assert result.grant.kind == GrantKind.ADMIN
        assert result.grant.expires_at is None
        assert result.grant.metadata == {'reason': 'support', 'granted_by': 'ops'}

    @pytest.mark.asyncio
    async def test_admin_grant_cap(self, ledger):
        from credit_ledger.core.conf import settings

        with pytest.raises(ValueError):
            await ledger.grants.grant_admin_credits(
                'user-1', settings.ADMIN_GRANT_MAX_CREDITS + 1, reason='oops', granted_by='ops'
            )


class TestPurchaseGrant:

    @pytest.mark.asyncio
    async def test_purchase_keyed_by_payment(self, ledger):
        from credit_ledger.src.billing.shared.config import get_credit_package

        package = get_credit_package('popular')
        result = await ledger.grants.grant_purchase_credits('user-1', 3000, 'pay_1', package=package, amount_paid=2000)

        assert result.grant.idempotency_key == 'purchase_pay_1'
        assert result.grant.expires_at is None
        assert result.grant.metadata['package'] == 'popular'
