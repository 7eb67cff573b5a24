"""
Scheduled maintenance sweeps.

Resets are applied lazily by the usage gate anyway; the sweeps only bring
idle accounts up to date and send reminders. Every write goes through the
same version check as request traffic, and a user that keeps conflicting
is skipped until the next run.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

import pandas as pd

from json4ai.config.environment import Environment
from json4ai.core import ledger
from json4ai.core.error_handler import ConcurrencyConflict
from json4ai.core.models import User, Plan, SubscriptionStatus
from json4ai.core.plans import credit_grant
from json4ai.database.user_store import UserStore, update_with_retry
from json4ai.utils.helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)

REPORT_COLUMNS = ['plan', 'users', 'active_users', 'past_due', 'daily_prompts', 'monthly_prompts', 'total_prompts']


class MaintenanceJobs:
    def __init__(self, store: UserStore, notifier=None, max_retries: Optional[int] = None):
        self.store = store
        self.notifier = notifier
        self.max_retries = max_retries or Environment.ERROR_HANDLING['max_retries']

    def _update_each(self, users: List[User], mutate: Callable[[User], bool], job: str) -> List[User]:
        """Apply mutate to each user under the version check; returns the users actually changed"""
        changed = []
        for user in users:
            applied = []

            def _mutate(fresh: User) -> bool:
                result = mutate(fresh)
                applied.append(result)
                return result

            try:
                updated = update_with_retry(self.store, user.id, _mutate, self.max_retries)
            except ConcurrencyConflict:
                logger.warning(f"{job}: skipping user {user.id} after repeated conflicts")
                continue
            if updated is not None and applied and applied[-1]:
                changed.append(updated)
        return changed

    def _notify(self, kind: str, user: User, context: Optional[Dict[str, Any]] = None) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(kind, user, context or {})
        except Exception as e:
            logger.error(f"Failed to queue {kind} for user {user.id}: {str(e)}")

    def reset_daily_credits(self, now: Optional[datetime] = None) -> int:
        """Roll the daily counter for every user whose last reset is before today (UTC)"""
        now = ensure_utc(now) if now else utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        users = self.store.find({'last_free_reset': ('<', start_of_day)})
        changed = self._update_each(users, lambda user: ledger.reset_daily_if_due(user, now), 'daily reset')
        logger.info(f"Daily reset applied to {len(changed)} of {len(users)} users")
        return len(changed)

    def reset_monthly_usage(self, now: Optional[datetime] = None) -> int:
        """Roll the monthly counter (and refill starter) for users last reset in an earlier month"""
        now = ensure_utc(now) if now else utcnow()
        start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        users = self.store.find({'last_monthly_reset': ('<', start_of_month)})
        changed = self._update_each(users, lambda user: ledger.reset_monthly_if_due(user, now), 'monthly reset')
        logger.info(f"Monthly reset applied to {len(changed)} of {len(users)} users")
        return len(changed)

    def downgrade_lapsed_plans(self, now: Optional[datetime] = None) -> int:
        """Move users whose one-time plan has ended back to free"""
        now = ensure_utc(now) if now else utcnow()
        users = self.store.find({'plan_end_date': ('<=', now)})

        def _downgrade(user: User) -> bool:
            if user.plan == Plan.FREE or user.subscription_status == SubscriptionStatus.ACTIVE:
                return False
            if user.plan_end_date is None or user.plan_end_date > now:
                return False
            user.plan = Plan.FREE
            user.credits = credit_grant(Plan.FREE)
            user.plan_start_date = None
            user.plan_end_date = None
            user.plan_ending_notified_at = None
            user.daily_prompts_used = 0
            user.last_free_reset = max(user.last_free_reset, now)
            return True

        changed = self._update_each(users, _downgrade, 'plan downgrade')
        for user in changed:
            self._notify('subscription_expired', user, {'plan': Plan.FREE.value})
        logger.info(f"Downgraded {len(changed)} lapsed plans to free")
        return len(changed)

    def plan_ending_reminders(self, now: Optional[datetime] = None, days: Optional[int] = None) -> int:
        """Warn users whose one-time plan ends within the notice window, once per plan"""
        now = ensure_utc(now) if now else utcnow()
        days = days or Environment.get_billing_settings()['plan_ending_notice_days']
        window_end = now + timedelta(days=days)
        users = self.store.find({'plan_end_date': [('>=', now), ('<=', window_end)]})

        def _mark_notified(user: User) -> bool:
            if user.plan_end_date is None or not now <= user.plan_end_date <= window_end:
                return False
            notified = user.plan_ending_notified_at
            # A notice sent before the current plan started belongs to an earlier plan
            if notified is not None and (user.plan_start_date is None or notified >= user.plan_start_date):
                return False
            user.plan_ending_notified_at = now
            return True

        changed = self._update_each(users, _mark_notified, 'plan ending reminder')
        for user in changed:
            self._notify('plan_ending', user, {'plan': user.plan.value, 'plan_end_date': user.plan_end_date})
        logger.info(f"Sent {len(changed)} plan ending reminders")
        return len(changed)

    def past_due_reminders(self) -> int:
        users = self.store.find({'subscription_status': SubscriptionStatus.PAST_DUE.value})
        for user in users:
            self._notify('payment_reminder', user, {'plan': user.plan.value})
        logger.info(f"Sent {len(users)} past due reminders")
        return len(users)

    def usage_report(self) -> pd.DataFrame:
        """Per-plan user counts and prompt totals"""
        rows = [{
            'plan': user.plan.value,
            'status': user.subscription_status.value,
            'daily_prompts': user.daily_prompts_used,
            'monthly_prompts': user.monthly_prompts_used,
            'total_prompts': user.total_prompts_used
        } for user in self.store.find()]

        if not rows:
            return pd.DataFrame(columns=REPORT_COLUMNS)

        df = pd.DataFrame(rows)
        report = df.groupby('plan').agg(
            users=('status', 'size'),
            active_users=('monthly_prompts', lambda s: int((s > 0).sum())),
            past_due=('status', lambda s: int((s == SubscriptionStatus.PAST_DUE.value).sum())),
            daily_prompts=('daily_prompts', 'sum'),
            monthly_prompts=('monthly_prompts', 'sum'),
            total_prompts=('total_prompts', 'sum')
        ).reset_index()
        return report[REPORT_COLUMNS]

    def run_all(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run every sweep once, in dependency order"""
        now = ensure_utc(now) if now else utcnow()
        results = {
            'lapsed_plans': self.downgrade_lapsed_plans(now),
            'daily_resets': self.reset_daily_credits(now),
            'monthly_resets': self.reset_monthly_usage(now),
            'plan_ending_reminders': self.plan_ending_reminders(now),
            'past_due_reminders': self.past_due_reminders()
        }
        logger.info(f"Maintenance run complete: {results}")
        return results
