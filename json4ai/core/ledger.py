"""
Credit/usage ledger rules.

Every function takes the user record and the current time explicitly and
mutates the record in place; persistence is the caller's job.
"""

from datetime import datetime
from typing import Optional
import logging

from json4ai.core.models import User, Plan, UNLIMITED_CREDITS
from json4ai.core.plans import credit_grant
from json4ai.core.results import ConsumeResult, GateFailure
from json4ai.utils.helpers import ensure_utc, start_of_next_day, start_of_next_month

logger = logging.getLogger(__name__)


def daily_reset_due(user: User, now: datetime) -> bool:
    """True when now falls on a later UTC calendar day than last_free_reset."""
    last = ensure_utc(user.last_free_reset)
    if last is None:
        return True
    # A clock running backwards must not move the reset marker back
    return ensure_utc(now).date() > last.date()


def monthly_reset_due(user: User, now: datetime) -> bool:
    last = ensure_utc(user.last_monthly_reset)
    if last is None:
        return True
    now = ensure_utc(now)
    return (now.year, now.month) > (last.year, last.month)


def reset_daily_if_due(user: User, now: datetime) -> bool:
    """
    Start a new usage day.

    The daily counter rolls over for every plan; only the free plan gets its
    credit balance refilled.

    Returns:
        bool: True if a reset was applied
    """
    if not daily_reset_due(user, now):
        return False
    user.daily_prompts_used = 0
    user.last_free_reset = ensure_utc(now)
    if user.plan == Plan.FREE:
        user.credits = credit_grant(Plan.FREE)
    return True


def reset_monthly_if_due(user: User, now: datetime) -> bool:
    """
    Start a new usage month.

    The monthly counter rolls over for every plan; only starter gets its
    credit balance refilled.
    """
    if not monthly_reset_due(user, now):
        return False
    user.monthly_prompts_used = 0
    user.last_monthly_reset = ensure_utc(now)
    if user.plan == Plan.STARTER:
        user.credits = credit_grant(Plan.STARTER)
    return True


def can_consume(user: User, now: Optional[datetime] = None) -> bool:
    if user.is_unlimited:
        return True
    if user.credits > 0:
        return True
    if now is None:
        return False
    if user.plan == Plan.FREE and daily_reset_due(user, now):
        return True
    if user.plan == Plan.STARTER and monthly_reset_due(user, now):
        return True
    return False


def consume(user: User, now: datetime) -> ConsumeResult:
    """Spend one credit (premium only counts usage)."""
    if user.is_unlimited:
        _count_usage(user, now)
        return ConsumeResult(ok=True, credits_remaining=UNLIMITED_CREDITS)

    if user.credits <= 0:
        return ConsumeResult(ok=False, credits_remaining=0, failure=GateFailure.NO_CREDITS_REMAINING)

    user.credits = int(user.credits) - 1
    _count_usage(user, now)
    return ConsumeResult(ok=True, credits_remaining=user.credits)


def _count_usage(user: User, now: datetime) -> None:
    user.daily_prompts_used += 1
    user.monthly_prompts_used += 1
    user.total_prompts_used += 1
    user.last_activity = ensure_utc(now)


def next_reset_time(user: User, now: datetime) -> Optional[datetime]:
    """When the user's balance is next refilled, if ever."""
    if user.plan == Plan.FREE:
        return start_of_next_day(now)
    if user.plan == Plan.STARTER:
        return start_of_next_month(now)
    return None
