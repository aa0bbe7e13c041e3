"""
Billing Configuration

This module defines subscription plans, credit packages, and billing constants.

Usage:
    from credit_ledger.src.billing.shared.config import PLANS, get_plan_by_name

    plan = get_plan_by_name('creator')
    print(plan.monthly_credits)  # 44400
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from credit_ledger.src.billing.shared.exceptions import PlanNotFoundError


# =============================================================================
# CREDIT CONSTANTS
# =============================================================================
# Legacy rows store "never expires" as this timestamp instead of NULL
NEVER_EXPIRES_SENTINEL: datetime = datetime(9999, 12, 31, 23, 59, 59, 999000, tzinfo=timezone.utc)

# Any expiry beyond this year is treated as "never"
NEVER_EXPIRES_YEAR_THRESHOLD: int = 9000

# Every plan allocates credits in monthly cycles, yearly plans included
CREDIT_CYCLE_DAYS: int = 30

# Fallback conversion for top-up payments that carry neither credits nor a package
# (amount is in the smallest currency unit: 100 cents -> 10 credits)
CREDITS_PER_CURRENCY_UNIT: int = 10

BILLING_PERIODS: tuple = ('monthly', 'yearly')


# =============================================================================
# PLAN DEFINITION
# =============================================================================
@dataclass
class Plan:
    """
    Subscription plan configuration.

    Attributes:
        name: Internal plan identifier (basic, creator, ...)
        display_name: User-facing plan name
        monthly_credits: Credits granted per credit cycle
        monthly_price: Price in USD for monthly billing
        yearly_price: Price in USD for yearly billing
        images_estimate: Rough number of enhancements the credits cover
    """
    name: str
    display_name: str
    monthly_credits: int
    monthly_price: int
    yearly_price: int
    images_estimate: int = 0

    def price_for(self, billing_period: str) -> int:
        return self.yearly_price if billing_period == 'yearly' else self.monthly_price

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'display_name': self.display_name,
            'monthly_credits': self.monthly_credits,
            'monthly_price': self.monthly_price,
            'yearly_price': self.yearly_price,
            'images_estimate': self.images_estimate,
        }


PLANS: Dict[str, Plan] = {
    'basic': Plan(
        name='basic',
        display_name='Basic',
        monthly_credits=16_200,
        monthly_price=9,
        yearly_price=96,
        images_estimate=135,
    ),
    'creator': Plan(
        name='creator',
        display_name='Creator',
        monthly_credits=44_400,
        monthly_price=25,
        yearly_price=252,
        images_estimate=370,
    ),
    'professional': Plan(
        name='professional',
        display_name='Professional',
        monthly_credits=73_800,
        monthly_price=39,
        yearly_price=408,
        images_estimate=615,
    ),
    'enterprise': Plan(
        name='enterprise',
        display_name='Enterprise',
        monthly_credits=187_800,
        monthly_price=99,
        yearly_price=1008,
        images_estimate=1565,
    ),
}


# =============================================================================
# CREDIT PACKAGES (one-time top-ups)
# =============================================================================
@dataclass
class CreditPackage:
    """One-time credit purchase package."""
    name: str
    credits: int
    price: int
    bonus: int = 0
    currency: str = 'USD'

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus

    @property
    def description(self) -> str:
        return f"{self.credits:,} Credits Package"


CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    'starter': CreditPackage(name='starter', credits=1_000, price=10),
    'popular': CreditPackage(name='popular', credits=2_500, price=20, bonus=500),
    'premium': CreditPackage(name='premium', credits=5_000, price=35, bonus=1_000),
    'ultimate': CreditPackage(name='ultimate', credits=10_000, price=60, bonus=2_500),
}


# =============================================================================
# HELPERS
# =============================================================================
def get_plan_by_name(plan_name: str) -> Plan:
    """Look up a plan by name (case-insensitive). Raises PlanNotFoundError."""
    plan = PLANS.get((plan_name or '').lower())
    if plan is None:
        raise PlanNotFoundError(plan_name)
    return plan


def find_plan(plan_name: Optional[str]) -> Optional[Plan]:
    """Like get_plan_by_name but returns None for unknown names."""
    if not plan_name:
        return None
    return PLANS.get(plan_name.lower())


def get_credit_package(package_name: Optional[str]) -> Optional[CreditPackage]:
    if not package_name:
        return None
    return CREDIT_PACKAGES.get(package_name.lower())


def list_plans() -> List[Plan]:
    return list(PLANS.values())


def normalize_billing_period(value: Optional[str]) -> Optional[str]:
    """Map provider and client spellings (Month, year, annual, ...) to monthly/yearly."""
    if not value:
        return None
    value = value.strip().lower()
    if value in ('monthly', 'month', 'months'):
        return 'monthly'
    if value in ('yearly', 'year', 'years', 'annual', 'annually'):
        return 'yearly'
    return None


def billing_period_length(billing_period: str) -> timedelta:
    """Nominal billing period length, used when the provider omits dates."""
    if billing_period == 'yearly':
        return timedelta(days=365)
    return timedelta(days=CREDIT_CYCLE_DAYS)


def normalize_expiry(expires_at: Optional[datetime]) -> Optional[datetime]:
    """Fold the legacy far-future sentinel into None (never expires)."""
    if expires_at is None:
        return None
    if expires_at.year >= NEVER_EXPIRES_YEAR_THRESHOLD:
        return None
    return expires_at
