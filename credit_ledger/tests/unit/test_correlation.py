"""Unit tests for pending checkout correlation."""

from datetime import timedelta

import pytest

from credit_ledger.src.billing.domain.credit_grant import utcnow


async def pending(store, user_id, plan='creator', billing_period='monthly', age_seconds=0):
    from credit_ledger.src.billing.domain import PendingCheckout

    checkout = PendingCheckout(
        user_id=user_id,
        plan=plan,
        billing_period=billing_period,
        created_at=utcnow() - timedelta(seconds=age_seconds),
    )
    async with store.transaction() as tx:
        await tx.save_pending_checkout(checkout)
    return checkout


def event(data=None, event_type='subscription.active'):
    from credit_ledger.src.billing.domain import PaymentEvent

    return PaymentEvent(id='msg_1', type=event_type, data=data or {})


class TestScore:

    def test_plan_and_period_outweigh_recency(self):
        from credit_ledger.src.billing.domain import PendingCheckout
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        now = utcnow()
        correlator = CheckoutCorrelator(store=None)
        exact_but_old = PendingCheckout('a', 'creator', 'monthly', created_at=now - timedelta(minutes=14))
        fresh_but_wrong = PendingCheckout('b', 'basic', 'yearly', created_at=now)

        assert correlator.score(exact_but_old, 'creator', 'monthly', now) > correlator.score(
            fresh_but_wrong, 'creator', 'monthly', now
        )

    def test_recency_component_decays(self):
        from credit_ledger.src.billing.domain import PendingCheckout
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        now = utcnow()
        correlator = CheckoutCorrelator(store=None, window_seconds=100, base_score=0, recency_weight=10)

        fresh = PendingCheckout('a', 'creator', 'monthly', created_at=now)
        half = PendingCheckout('a', 'creator', 'monthly', created_at=now - timedelta(seconds=50))

        assert correlator.score(fresh, None, None, now) == pytest.approx(10)
        assert correlator.score(half, None, None, now) == pytest.approx(5)


class TestFindBestMatch:
    """Window and ranking."""

    @pytest.mark.asyncio
    async def test_best_scored_candidate_wins(self, store):
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        await pending(store, 'user-a', plan='basic', age_seconds=10)
        await pending(store, 'user-b', plan='creator', age_seconds=60)

        match = await CheckoutCorrelator(store).find_best_match('creator', 'monthly')

        assert match.user_id == 'user-b'

    @pytest.mark.asyncio
    async def test_checkouts_outside_window_are_ignored(self, store):
        from credit_ledger.core.conf import settings
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        await pending(store, 'user-a', age_seconds=settings.PENDING_CHECKOUT_TTL_SECONDS + 5)

        assert await CheckoutCorrelator(store).find_best_match('creator', 'monthly') is None

    @pytest.mark.asyncio
    async def test_register_refreshes_same_key(self, store):
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        correlator = CheckoutCorrelator(store)
        await correlator.register('user-a', 'Creator', 'monthly')
        await correlator.register('user-a', 'creator', 'monthly', 'a@example.com')

        assert list(store.pending_checkouts) == ['user-a:creator:monthly']
        assert store.pending_checkouts['user-a:creator:monthly'].user_email == 'a@example.com'


class TestResolveUser:
    """Precedence of user references."""

    @pytest.mark.asyncio
    async def test_metadata_user_wins(self, store):
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        await pending(store, 'user-pending')

        user_id = await CheckoutCorrelator(store).resolve_user(event({'metadata': {'userId': 'user-meta'}}))

        assert user_id == 'user-meta'
        assert len(store.pending_checkouts) == 1

    @pytest.mark.asyncio
    async def test_customer_metadata_user(self, store):
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        data = {'customer': {'customer_id': 'cus_1', 'metadata': {'user_id': 'user-cust'}}}

        assert await CheckoutCorrelator(store).resolve_user(event(data)) == 'user-cust'

    @pytest.mark.asyncio
    async def test_known_subscription_before_pending(self, store):
        from credit_ledger.src.billing.domain import Subscription, SubscriptionStatus
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        async with store.transaction() as tx:
            await tx.save_subscription(Subscription(
                user_id='user-known', plan='basic', billing_period='monthly',
                status=SubscriptionStatus.ACTIVE, provider_subscription_id='sub_1',
            ))
        await pending(store, 'user-pending')

        user_id = await CheckoutCorrelator(store).resolve_user(event({'subscription_id': 'sub_1'}))

        assert user_id == 'user-known'

    @pytest.mark.asyncio
    async def test_pending_match_is_consumed(self, store):
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        await pending(store, 'user-pending')
        correlator = CheckoutCorrelator(store)

        assert await correlator.resolve_user(event(), plan='creator', billing_period='monthly') == 'user-pending'
        assert store.pending_checkouts == {}

    @pytest.mark.asyncio
    async def test_pending_not_used_for_one_time_payments(self, store):
        from credit_ledger.src.billing.shared.exceptions import UserResolutionFailedError
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        await pending(store, 'user-pending')

        with pytest.raises(UserResolutionFailedError):
            await CheckoutCorrelator(store).resolve_user(event(event_type='payment.succeeded'), allow_pending=False)

        assert len(store.pending_checkouts) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_go_on(self, store):
        from credit_ledger.src.billing.shared.exceptions import UserResolutionFailedError
        from credit_ledger.src.billing.subscriptions.correlation import CheckoutCorrelator

        with pytest.raises(UserResolutionFailedError) as exc_info:
            await CheckoutCorrelator(store).resolve_user(event())

        assert exc_info.value.event_id == 'msg_1'
