"""
Usage gate: pre-flight check run before every credit-consuming action.

Order matters: plan expiry is checked before the lazy reset so that a
lapsed one-time plan is never handed a fresh balance.
"""

from datetime import datetime
from typing import Optional
import logging

from json4ai.config.environment import Environment
from json4ai.core import ledger
from json4ai.core.models import User, Plan, SubscriptionStatus
from json4ai.core.plans import plan_details
from json4ai.core.results import GateResult, GateFailure
from json4ai.database.user_store import UserStore
from json4ai.utils.helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def plan_expired(user: User, now: datetime) -> bool:
    """One-time plan whose window has closed; active recurring plans never expire here."""
    if user.plan == Plan.FREE:
        return False
    if user.subscription_status == SubscriptionStatus.ACTIVE:
        return False
    # No end date yet means the activation write is still in flight
    return user.plan_end_date is not None and user.plan_end_date <= ensure_utc(now)


class UsageGate:
    def __init__(self, store: UserStore, max_retries: Optional[int] = None):
        self.store = store
        self.max_retries = max_retries or Environment.ERROR_HANDLING['max_retries']

    def check_and_consume(self, user_id: str, now: Optional[datetime] = None) -> GateResult:
        """
        Check access and spend one credit.

        Args:
            user_id: Authenticated principal
            now: Evaluation time (defaults to the current UTC time)

        Returns:
            GateResult: ok with the remaining balance, or the failure reason
        """
        now = ensure_utc(now) if now else utcnow()

        for attempt in range(self.max_retries):
            user = self.store.find_by_id(user_id)
            if user is None:
                return GateResult(ok=False, failure=GateFailure.USER_NOT_FOUND, message='User not found')

            expected_version = user.version
            result, dirty = self._evaluate(user, now, consume=True)
            if not dirty:
                return result

            if self.store.compare_and_set(user, expected_version):
                if result.ok:
                    logger.info(f"User {user_id} consumed a credit ({result.credits_remaining} remaining)")
                return result

            logger.warning(f"Usage gate conflict for user {user_id}, attempt {attempt + 1}")

        logger.error(f"Usage gate gave up on user {user_id} after {self.max_retries} conflicts")
        return GateResult(ok=False, failure=GateFailure.RETRY_LATER,
                          message='The service is busy. Please try again.')

    def check(self, user_id: str, now: Optional[datetime] = None) -> GateResult:
        """Same decision as check_and_consume without spending or persisting anything."""
        now = ensure_utc(now) if now else utcnow()
        user = self.store.find_by_id(user_id)
        if user is None:
            return GateResult(ok=False, failure=GateFailure.USER_NOT_FOUND, message='User not found')
        result, _ = self._evaluate(user.model_copy(deep=True), now, consume=False)
        return result

    def _evaluate(self, user: User, now: datetime, consume: bool):
        """Returns (GateResult, whether the user record was modified)."""
        plan = user.plan.value

        if plan_expired(user, now):
            return GateResult(
                ok=False,
                failure=GateFailure.NOT_ACTIVE,
                message='Your plan has expired. Please purchase a new plan to continue.',
                plan=plan,
                plan_end_date=user.plan_end_date
            ), False

        dirty = ledger.reset_daily_if_due(user, now)
        dirty = ledger.reset_monthly_if_due(user, now) or dirty

        if not ledger.can_consume(user):
            return self._no_credits(user), dirty

        if not consume:
            return GateResult(ok=True, credits_remaining=user.credits, plan=plan), dirty

        consumed = ledger.consume(user, now)
        if not consumed.ok:
            return self._no_credits(user), dirty
        return GateResult(ok=True, credits_remaining=consumed.credits_remaining, plan=plan), True

    @staticmethod
    def _no_credits(user: User) -> GateResult:
        details = plan_details(user.plan)
        if details.monthly_limit:
            limit = details.monthly_limit
            message = (f"Monthly limit reached ({limit} prompts/month). "
                       f"Your credits refill on the 1st of next month.")
        else:
            limit = details.daily_limit
            message = (f"Daily limit reached ({limit} prompts/day). "
                       f"Please upgrade your plan for unlimited access.")
        return GateResult(
            ok=False,
            failure=GateFailure.NO_CREDITS_REMAINING,
            message=message,
            plan=user.plan.value,
            daily_limit=limit,
            remaining_credits=user.credits,
            plan_end_date=user.plan_end_date
        )
