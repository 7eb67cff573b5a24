"""
Plan catalog: static limits, credit grants and validity windows per plan.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
import logging

from json4ai.config.environment import Environment
from json4ai.core.error_handler import UnknownPlanError
from json4ai.core.models import Plan, PaymentProvider, UNLIMITED_CREDITS

logger = logging.getLogger(__name__)

DAILY = "daily"
MONTHLY = "monthly"


@dataclass(frozen=True)
class PlanDetails:
    name: Plan
    display_name: str
    credit_grant: Union[int, float]
    reset_cadence: Optional[str]
    daily_limit: Optional[int] = None
    monthly_limit: Optional[int] = None
    duration_days: Optional[int] = None
    is_unlimited: bool = False
    price: float = 0.0
    currency: str = "USD"
    features: List[str] = field(default_factory=list)


PLAN_CATALOG: Dict[Plan, PlanDetails] = {
    Plan.FREE: PlanDetails(
        name=Plan.FREE,
        display_name="Free",
        credit_grant=3,
        reset_cadence=DAILY,
        daily_limit=3,
        features=[
            '3 JSON prompts per day',
            'Basic prompt templates',
            'Community support'
        ]
    ),
    Plan.STARTER: PlanDetails(
        name=Plan.STARTER,
        display_name="Starter",
        credit_grant=30,
        reset_cadence=MONTHLY,
        monthly_limit=30,
        duration_days=30,
        price=1.00,
        features=[
            '30 JSON prompts per month',
            'Advanced prompt templates',
            'Priority support',
            'Export functionality',
            'Custom categories'
        ]
    ),
    Plan.PREMIUM: PlanDetails(
        name=Plan.PREMIUM,
        display_name="Premium",
        credit_grant=UNLIMITED_CREDITS,
        reset_cadence=None,
        duration_days=30,
        is_unlimited=True,
        price=10.00,
        features=[
            'Unlimited JSON prompts',
            'All Starter features',
            'Custom prompt templates',
            'API access',
            'White-label options',
            '24/7 priority support',
            'Advanced analytics'
        ]
    )
}


def resolve_plan(plan_name: Union[str, Plan, None]) -> Plan:
    """Turn a plan name into a Plan, raising UnknownPlanError on a miss."""
    if isinstance(plan_name, Plan):
        return plan_name
    try:
        return Plan(str(plan_name).strip().lower())
    except ValueError:
        raise UnknownPlanError(plan_name)


def plan_details(plan_name: Union[str, Plan]) -> PlanDetails:
    """Look up a plan in the catalog"""
    return PLAN_CATALOG[resolve_plan(plan_name)]


def credit_grant(plan_name: Union[str, Plan]) -> Union[int, float]:
    return plan_details(plan_name).credit_grant


def plan_features(plan_name: Union[str, Plan, None]) -> List[str]:
    """Marketing feature list; unknown plans fall back to free."""
    try:
        return list(plan_details(plan_name).features)
    except UnknownPlanError:
        return list(PLAN_CATALOG[Plan.FREE].features)


def plan_for_provider_price(provider: PaymentProvider, price_id: Optional[str]) -> Optional[Plan]:
    """Map a provider price/plan id from configuration to a catalog plan."""
    if not price_id:
        return None
    if provider == PaymentProvider.STRIPE:
        config = Environment.get_stripe_config()
        price_to_plan = {
            config.get('starter_price_id'): Plan.STARTER,
            config.get('premium_price_id'): Plan.PREMIUM
        }
    elif provider == PaymentProvider.PAYPAL:
        config = Environment.get_paypal_config()
        price_to_plan = {
            config.get('starter_plan_id'): Plan.STARTER,
            config.get('premium_plan_id'): Plan.PREMIUM
        }
    else:
        return None
    price_to_plan.pop(None, None)
    plan = price_to_plan.get(price_id)
    if plan is None:
        logger.warning(f"No plan configured for {provider.value} price {price_id}")
    return plan
