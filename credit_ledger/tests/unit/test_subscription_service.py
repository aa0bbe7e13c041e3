"""Unit tests for user-initiated subscription operations."""

from datetime import timedelta

import pytest

from credit_ledger.src.billing.domain.credit_grant import utcnow


async def save_subscription(store, status='active', plan='basic', days_in=1, user_id='user-1', subscription_id='sub_1'):
    from credit_ledger.src.billing.domain import Subscription, SubscriptionStatus

    start = utcnow() - timedelta(days=days_in)
    subscription = Subscription(
        user_id=user_id,
        plan=plan,
        billing_period='monthly',
        status=SubscriptionStatus(status),
        provider_subscription_id=subscription_id,
        provider_customer_id='cus_1',
        current_period_start=start,
        next_billing_date=start + timedelta(days=30),
    )
    async with store.transaction() as tx:
        await tx.save_subscription(subscription)
    return subscription


class TestRegisterCheckout:
    """Subscription checkout creation."""

    @pytest.mark.asyncio
    async def test_checkout_records_pending_state(self, store, provider, subscription_service):
        from credit_ledger.src.billing.domain import SubscriptionStatus

        result = await subscription_service.register_checkout(
            'user-1', 'Creator', 'Month', email='ada@example.com', name='Ada', billing={'country': 'US'}
        )

        assert result['checkout_id'] == 'sub_checkout_1'
        assert result['subscription']['status'] == 'pending'
        assert provider.calls == [(
            'create_subscription_checkout',
            'pdt_creator_m',
            {'userId': 'user-1', 'plan': 'creator', 'billingPeriod': 'monthly'},
        )]
        pending = next(iter(store.subscriptions.values()))
        assert pending.status == SubscriptionStatus.PENDING
        assert list(store.pending_checkouts) == ['user-1:creator:monthly']

    @pytest.mark.asyncio
    async def test_second_checkout_reuses_pending_row(self, store, subscription_service):
        await subscription_service.register_checkout('user-1', 'basic', 'monthly', email='a@example.com')
        await subscription_service.register_checkout('user-1', 'creator', 'yearly', email='a@example.com')

        assert len(store.subscriptions) == 1
        only = next(iter(store.subscriptions.values()))
        assert (only.plan, only.billing_period) == ('creator', 'yearly')

    @pytest.mark.asyncio
    async def test_already_subscribed(self, store, subscription_service):
        from credit_ledger.src.billing.shared.exceptions import SubscriptionError

        await save_subscription(store)

        with pytest.raises(SubscriptionError) as exc_info:
            await subscription_service.register_checkout('user-1', 'creator', 'monthly', email='a@example.com')

        assert exc_info.value.code == 'ALREADY_SUBSCRIBED'

    @pytest.mark.asyncio
    async def test_unknown_plan(self, subscription_service):
        from credit_ledger.src.billing.shared.exceptions import PlanNotFoundError

        with pytest.raises(PlanNotFoundError):
            await subscription_service.register_checkout('user-1', 'platinum', 'monthly', email='a@example.com')

    @pytest.mark.asyncio
    async def test_unconfigured_product(self, monkeypatch, subscription_service):
        from credit_ledger.core.conf import settings
        from credit_ledger.src.billing.shared.exceptions import SubscriptionError

        monkeypatch.setattr(settings, 'DODO_PRODUCT_IDS', {})

        with pytest.raises(SubscriptionError) as exc_info:
            await subscription_service.register_checkout('user-1', 'basic', 'monthly', email='a@example.com')

        assert exc_info.value.code == 'PRODUCT_NOT_CONFIGURED'

    @pytest.mark.asyncio
    async def test_webhook_adopts_pending_row(self, store, subscription_service, webhook_service):
        """The first webhook without a user reference lands on the checkout's row."""
        from credit_ledger.tests.conftest import make_body, signed_headers, subscription_data

        checkout = await subscription_service.register_checkout('user-1', 'creator', 'monthly', email='a@example.com')
        body = make_body('subscription.active', subscription_data(user_id=None))

        await webhook_service.process_webhook(body, signed_headers(body))

        assert list(store.subscriptions) == [checkout['subscription']['id']]
        status = await subscription_service.get_status('user-1')
        assert status['has_active_subscription'] is True
        assert status['current_plan'] == 'creator'


class TestTopUpCheckout:

    @pytest.mark.asyncio
    async def test_requires_live_subscription(self, subscription_service):
        from credit_ledger.src.billing.shared.exceptions import SubscriptionError

        with pytest.raises(SubscriptionError) as exc_info:
            await subscription_service.create_top_up_checkout('user-1', 'starter', email='a@example.com')

        assert exc_info.value.code == 'SUBSCRIPTION_REQUIRED'

    @pytest.mark.asyncio
    async def test_pending_subscription_cannot_buy(self, store, subscription_service):
        from credit_ledger.src.billing.shared.exceptions import SubscriptionError

        await save_subscription(store, status='pending')

        with pytest.raises(SubscriptionError) as exc_info:
            await subscription_service.create_top_up_checkout('user-1', 'starter', email='a@example.com')

        assert exc_info.value.code == 'SUBSCRIPTION_REQUIRED'

    @pytest.mark.asyncio
    async def test_unknown_package(self, store, subscription_service):
        from credit_ledger.src.billing.shared.exceptions import SubscriptionError

        await save_subscription(store)

        with pytest.raises(SubscriptionError) as exc_info:
            await subscription_service.create_top_up_checkout('user-1', 'mega', email='a@example.com')

        assert exc_info.value.code == 'PACKAGE_NOT_FOUND'

    @pytest.mark.asyncio
    async def test_checkout_carries_credit_metadata(self, store, provider, subscription_service):
        await save_subscription(store)

        result = await subscription_service.create_top_up_checkout('user-1', 'popular', email='a@example.com')

        assert result['credits'] == 3_000
        assert provider.calls[-1] == (
            'create_payment_checkout',
            'pdt_pack_popular',
            {'userId': 'user-1', 'package': 'popular', 'credits': '3000'},
        )

    @pytest.mark.asyncio
    async def test_cancelling_subscription_may_still_buy(self, store, subscription_service):
        await save_subscription(store, status='pending_cancellation')

        result = await subscription_service.create_top_up_checkout('user-1', 'starter', email='a@example.com')

        assert result['checkout_id'] == 'pay_checkout_1'


class TestCancel:
    """Cancellation at period end."""

    @pytest.mark.asyncio
    async def test_cancel_sets_pending_cancellation(self, store, provider, subscription_service):
        subscription = await save_subscription(store)

        result = await subscription_service.cancel('user-1')

        assert result['status'] == 'pending_cancellation'
        assert result['access_until'] == subscription.next_billing_date.isoformat()
        assert ('set_cancel_at_period_end', 'sub_1', True) in provider.calls

    @pytest.mark.asyncio
    async def test_stale_provider_date_does_not_shorten_access(self, store, provider, subscription_service):
        from credit_ledger.src.billing.payments.interfaces import ProviderSubscription

        subscription = await save_subscription(store)
        provider.subscriptions['sub_1'] = ProviderSubscription(
            subscription_id='sub_1', status='active', next_billing_date=utcnow() - timedelta(minutes=1)
        )

        await subscription_service.cancel('user-1')

        assert store.subscriptions[subscription.id].next_billing_date == subscription.next_billing_date

    @pytest.mark.asyncio
    async def test_cancel_twice_is_noop(self, store, provider, subscription_service):
        await save_subscription(store)

        await subscription_service.cancel('user-1')
        result = await subscription_service.cancel('user-1')

        assert result['status'] == 'pending_cancellation'
        assert sum(1 for call in provider.calls if call[0] == 'set_cancel_at_period_end') == 1

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, subscription_service):
        from credit_ledger.src.billing.shared.exceptions import SubscriptionNotFoundError

        with pytest.raises(SubscriptionNotFoundError) as exc_info:
            await subscription_service.cancel('user-1')

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_row_untouched(self, store, provider, subscription_service):
        from credit_ledger.src.billing.domain import SubscriptionStatus
        from credit_ledger.src.billing.shared.exceptions import ProviderUnavailableError

        subscription = await save_subscription(store)
        provider.fail_with = ProviderUnavailableError(operation='update_subscription')

        with pytest.raises(ProviderUnavailableError):
            await subscription_service.cancel('user-1')

        assert store.subscriptions[subscription.id].status == SubscriptionStatus.ACTIVE


class TestReactivate:

    @pytest.mark.asyncio
    async def test_reactivate_pending_cancellation(self, store, provider, subscription_service):
        from credit_ledger.src.billing.domain import SubscriptionStatus

        subscription = await save_subscription(store, status='pending_cancellation')

        result = await subscription_service.reactivate('user-1')

        assert result == {'success': True, 'status': 'active'}
        assert store.subscriptions[subscription.id].status == SubscriptionStatus.ACTIVE
        assert ('set_cancel_at_period_end', 'sub_1', False) in provider.calls

    @pytest.mark.asyncio
    async def test_reactivate_after_period_end(self, store, subscription_service):
        from credit_ledger.src.billing.shared.exceptions import SubscriptionError

        await save_subscription(store, status='pending_cancellation', days_in=31)

        with pytest.raises(SubscriptionError) as exc_info:
            await subscription_service.reactivate('user-1')

        assert exc_info.value.code == 'PERIOD_ENDED'

    @pytest.mark.asyncio
    async def test_reactivate_active_subscription(self, store, subscription_service):
        from credit_ledger.src.billing.shared.exceptions import SubscriptionNotFoundError

        await save_subscription(store)

        with pytest.raises(SubscriptionNotFoundError):
            await subscription_service.reactivate('user-1')


class TestChangePlan:
    """Plan changes with immediate proration."""

    @pytest.mark.asyncio
    async def test_upgrade_adds_difference(self, store, provider, ledger, subscription_service):
        subscription = await save_subscription(store, plan='basic')
        start, end = subscription.credit_cycle()
        await ledger.grants.grant_subscription_credits(subscription, start, end)

        result = await subscription_service.change_plan('user-1', 'creator')

        assert result['credits_added'] == 44_400 - 16_200
        assert result['new_balance'] == 44_400
        assert ('change_plan', 'sub_1', 'pdt_creator_m') in provider.calls
        assert store.subscriptions[subscription.id].plan == 'creator'

    @pytest.mark.asyncio
    async def test_downgrade_adds_nothing(self, store, ledger, subscription_service):
        subscription = await save_subscription(store, plan='professional')
        start, end = subscription.credit_cycle()
        await ledger.grants.grant_subscription_credits(subscription, start, end)

        result = await subscription_service.change_plan('user-1', 'basic')

        assert result['credits_added'] == 0
        assert (await ledger.get_balance('user-1')).total == 73_800

    @pytest.mark.asyncio
    async def test_same_plan_rejected(self, store, provider, subscription_service):
        from credit_ledger.src.billing.shared.exceptions import SubscriptionError

        await save_subscription(store, plan='basic')

        with pytest.raises(SubscriptionError) as exc_info:
            await subscription_service.change_plan('user-1', 'basic')

        assert exc_info.value.code == 'SAME_PLAN'
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_billing_period_switch_is_a_change(self, store, provider, subscription_service):
        await save_subscription(store, plan='basic')

        result = await subscription_service.change_plan('user-1', 'basic', billing_period='yearly')

        assert result['billing_period'] == 'yearly'
        assert ('change_plan', 'sub_1', 'pdt_basic_y') in provider.calls


class TestGetStatus:

    @pytest.mark.asyncio
    async def test_no_subscription_is_free(self, subscription_service):
        status = await subscription_service.get_status('user-1')

        assert status == {'has_active_subscription': False, 'current_plan': 'free', 'subscription': None}

    @pytest.mark.asyncio
    async def test_pending_cancellation_still_active(self, store, subscription_service):
        await save_subscription(store, status='pending_cancellation', plan='enterprise')

        status = await subscription_service.get_status('user-1')

        assert status['has_active_subscription'] is True
        assert status['current_plan'] == 'enterprise'
        assert status['subscription']['status'] == 'pending_cancellation'

    @pytest.mark.asyncio
    async def test_lapsed_period_reports_free(self, store, subscription_service):
        await save_subscription(store, status='pending_cancellation', days_in=40)

        status = await subscription_service.get_status('user-1')

        assert status['has_active_subscription'] is False
        assert status['current_plan'] == 'free'


class TestStateMachine:
    """Status changes go through the subscription state machine."""

    def test_allowed_path(self):
        from credit_ledger.src.billing.domain import Subscription, SubscriptionStatus

        subscription = Subscription(
            user_id='user-1', plan='basic', billing_period='monthly', status=SubscriptionStatus.PENDING
        )

        for status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PENDING_CANCELLATION,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
        ):
            subscription.transition_to(status)

        assert subscription.status == SubscriptionStatus.CANCELLED

    @pytest.mark.parametrize('current, target', [
        ('pending', 'pending_cancellation'),
        ('cancelled', 'pending_cancellation'),
    ])
    def test_rejected_transition_leaves_status(self, current, target):
        from credit_ledger.src.billing.domain import Subscription, SubscriptionStatus
        from credit_ledger.src.billing.shared.exceptions import SubscriptionError

        subscription = Subscription(
            user_id='user-1', plan='basic', billing_period='monthly', status=SubscriptionStatus(current)
        )

        with pytest.raises(SubscriptionError) as exc_info:
            subscription.transition_to(SubscriptionStatus(target))

        assert exc_info.value.code == 'INVALID_TRANSITION'
        assert subscription.status == SubscriptionStatus(current)

    @pytest.mark.asyncio
    async def test_cancellation_before_activation_fails_for_redelivery(self, store, webhook_service):
        from credit_ledger.src.billing.domain import SubscriptionStatus, WebhookEventStatus
        from credit_ledger.src.billing.shared.exceptions import SubscriptionError
        from credit_ledger.tests.conftest import make_body, signed_headers, subscription_data

        subscription = await save_subscription(store, status='pending')
        body = make_body('subscription.cancelled', subscription_data())

        with pytest.raises(SubscriptionError):
            await webhook_service.process_webhook(body, signed_headers(body, msg_id='msg_early_cancel'))

        assert store.subscriptions[subscription.id].status == SubscriptionStatus.PENDING
        assert store.webhook_events['msg_early_cancel'].status == WebhookEventStatus.FAILED
