import base64
import json
import uuid

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from standardwebhooks.webhooks import Webhook

from credit_ledger.core.conf import settings
from credit_ledger.src.billing.payments.interfaces import (
    CheckoutLink,
    PaymentProviderInterface,
    ProviderSubscription,
)

WEBHOOK_SECRET = 'whsec_' + base64.b64encode(b'credit-ledger-test-secret-0123456789').decode()

PRODUCT_IDS = {
    'basic_monthly': 'pdt_basic_m',
    'basic_yearly': 'pdt_basic_y',
    'creator_monthly': 'pdt_creator_m',
    'creator_yearly': 'pdt_creator_y',
    'professional_monthly': 'pdt_pro_m',
    'professional_yearly': 'pdt_pro_y',
    'enterprise_monthly': 'pdt_ent_m',
    'enterprise_yearly': 'pdt_ent_y',
}

CREDIT_PRODUCT_IDS = {
    'starter': 'pdt_pack_starter',
    'popular': 'pdt_pack_popular',
}


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FakeProvider(PaymentProviderInterface):
    """Records calls and answers like Dodo would."""

    def __init__(self):
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        self.calls.append(('retrieve_subscription', subscription_id))
        self._check()
        if subscription_id not in self.subscriptions:
            from credit_ledger.src.billing.shared.exceptions import SubscriptionNotFoundError

            raise SubscriptionNotFoundError(subscription_id=subscription_id)
        return self.subscriptions[subscription_id]

    async def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> ProviderSubscription:
        self.calls.append(('set_cancel_at_period_end', subscription_id, cancel))
        self._check()
        state = self.subscriptions.setdefault(
            subscription_id, ProviderSubscription(subscription_id=subscription_id, status='active')
        )
        state.cancel_at_next_billing_date = cancel
        return state

    async def change_plan(self, subscription_id: str, product_id: str) -> None:
        self.calls.append(('change_plan', subscription_id, product_id))
        self._check()

    async def create_subscription_checkout(self, product_id, customer_email, customer_name, billing, metadata, return_url=None):
        self.calls.append(('create_subscription_checkout', product_id, metadata))
        self._check()
        return CheckoutLink(checkout_id='sub_checkout_1', payment_link='https://checkout.test/sub', kind='subscription')

    async def create_payment_checkout(self, product_id, customer_email, customer_name, billing, metadata, return_url=None):
        self.calls.append(('create_payment_checkout', product_id, metadata))
        self._check()
        return CheckoutLink(checkout_id='pay_checkout_1', payment_link='https://checkout.test/pay', kind='payment')


def make_body(event_type: str, data: Dict[str, Any], timestamp: Optional[datetime] = None) -> bytes:
    return json.dumps({
        'type': event_type,
        'timestamp': (timestamp or datetime.now(timezone.utc)).isoformat(),
        'data': data,
    }).encode()


def signed_headers(body: bytes, msg_id: Optional[str] = None, secret: str = WEBHOOK_SECRET) -> Dict[str, str]:
    msg_id = msg_id or f"msg_{uuid.uuid4().hex}"
    timestamp = datetime.now(timezone.utc)
    signature = Webhook(secret).sign(msg_id, timestamp, body.decode())
    return {
        'webhook-id': msg_id,
        'webhook-timestamp': str(int(timestamp.timestamp())),
        'webhook-signature': signature,
    }


def subscription_data(
    subscription_id: str = 'sub_1',
    product_id: str = 'pdt_creator_m',
    user_id: Optional[str] = 'user-1',
    period_start: Optional[datetime] = None,
    next_billing: Optional[datetime] = None,
    **extra,
) -> Dict[str, Any]:
    period_start = period_start or datetime.now(timezone.utc) - timedelta(minutes=1)
    next_billing = next_billing or period_start + timedelta(days=30)
    data = {
        'subscription_id': subscription_id,
        'product_id': product_id,
        'customer': {'customer_id': 'cus_1', 'email': 'ada@example.com'},
        'previous_billing_date': period_start.isoformat(),
        'next_billing_date': next_billing.isoformat(),
        'payment_frequency_interval': 'Month',
        'metadata': {'userId': user_id} if user_id else {},
    }
    data.update(extra)
    return data


@pytest.fixture(autouse=True)
def billing_settings(monkeypatch):
    """Product catalogue and webhook secret used across the suite."""
    monkeypatch.setattr(settings, 'DODO_PRODUCT_IDS', dict(PRODUCT_IDS))
    monkeypatch.setattr(settings, 'DODO_CREDIT_PRODUCT_IDS', dict(CREDIT_PRODUCT_IDS))
    monkeypatch.setattr(settings, 'DODO_WEBHOOK_SECRET', WEBHOOK_SECRET)
    monkeypatch.setattr(settings, 'DODO_WEBHOOK_VERIFY', True)
    monkeypatch.setattr(settings, 'ADMIN_API_TOKEN', 'admin-secret')
    monkeypatch.setattr(settings, 'AUTH_JWT_SECRET', 'jwt-test-secret-for-the-credit-ledger-suite')
    monkeypatch.setattr(settings, 'AUTH_JWT_AUDIENCE', 'authenticated')
    yield


@pytest.fixture
def store():
    from credit_ledger.src.billing.ledger import MemoryLedgerStore

    return MemoryLedgerStore()


@pytest.fixture
def ledger(store):
    from credit_ledger.src.billing.credits import CreditLedger

    return CreditLedger(store)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def webhook_service(store, provider):
    from credit_ledger.src.billing.external.dodo.webhooks import WebhookService

    return WebhookService(store=store, provider=provider, webhook_secret=WEBHOOK_SECRET, verify_signatures=True)


@pytest.fixture
def subscription_service(store, provider):
    from credit_ledger.src.billing.subscriptions.service import SubscriptionService

    return SubscriptionService(store=store, provider=provider)


@pytest_asyncio.fixture
async def sql_engine(tmp_path):
    from sqlalchemy.ext.asyncio import create_async_engine

    from credit_ledger.database.db import create_tables

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def sql_store(sql_engine):
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from credit_ledger.src.billing.ledger import SqlLedgerStore

    session_factory = async_sessionmaker(bind=sql_engine, class_=AsyncSession, expire_on_commit=False)
    return SqlLedgerStore(session_factory)
