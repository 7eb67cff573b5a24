from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union
import logging
import math

import pandas as pd

from json4ai.config.environment import Environment
from json4ai.core.error_handler import ValidationError, handle_error
from json4ai.core.models import User, Plan, PromptRecord, SubscriptionStatus, UNLIMITED_CREDITS
from json4ai.core.plans import resolve_plan, plan_details, plan_features, credit_grant
from json4ai.core.ledger import next_reset_time
from json4ai.core.usage_gate import UsageGate
from json4ai.database.schema import SubscriptionHistory
from json4ai.database.user_store import UserStore, update_with_retry
from json4ai.utils.helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def display_credits(user: User) -> Union[int, str]:
    if user.is_unlimited or user.credits == UNLIMITED_CREDITS:
        return 'Unlimited'
    return int(user.credits)


ADMIN_SORT_FIELDS = ('created_at', 'email', 'plan', 'credits', 'total_prompts_used', 'last_activity')


def admin_view(user: User) -> Dict[str, Any]:
    """User fields shown to administrators; processed event ids and versions stay internal"""
    ref = user.external_subscription_ref
    return {
        'id': user.id,
        'email': user.email,
        'firstName': user.first_name,
        'lastName': user.last_name,
        'plan': user.plan.value,
        'credits': display_credits(user),
        'subscriptionStatus': user.subscription_status.value,
        'provider': ref.provider.value if ref else None,
        'planEndDate': user.plan_end_date,
        'currentPeriodEnd': user.current_period_end,
        'totalPromptsUsed': user.total_prompts_used,
        'lastActivity': user.last_activity,
        'createdAt': user.created_at
    }


class SubscriptionService:
    """Account-facing reads and writes around the subscriber record"""

    def __init__(self, store: UserStore, gate: Optional[UsageGate] = None, prompt_store=None, history_db=None):
        self.store = store
        self.gate = gate or UsageGate(store)
        self.prompt_store = prompt_store
        self.history_db = history_db

    def _get_user(self, user_id: str) -> User:
        user = self.store.find_by_id(user_id)
        if user is None:
            raise ValidationError("User not found", error_code="USER_NOT_FOUND", details=user_id)
        return user

    @handle_error
    def register_user(self, email: str, first_name: str = "", last_name: str = "",
                      user_id: Optional[str] = None, now: Optional[datetime] = None) -> User:
        """Create a free account: 3 credits, counters at zero, resets at now"""
        now = ensure_utc(now) if now else utcnow()
        email = (email or '').strip().lower()
        if not email or '@' not in email:
            raise ValidationError("A valid email is required", error_code="INVALID_EMAIL")
        if self.store.find_one('email', email) is not None:
            raise ValidationError("Email already registered", error_code="EMAIL_TAKEN")

        fields = dict(
            email=email,
            first_name=first_name,
            last_name=last_name,
            plan=Plan.FREE,
            credits=credit_grant(Plan.FREE),
            last_free_reset=now,
            last_monthly_reset=now,
            created_at=now,
            updated_at=now
        )
        if user_id:
            fields['id'] = user_id
        user = self.store.create(User(**fields))
        logger.info(f"Registered user {user.id} ({email})")
        return user

    @handle_error
    def get_user_subscription(self, user_id: str) -> Dict[str, Any]:
        """Get the user's current subscription"""
        user = self._get_user(user_id)
        ref = user.external_subscription_ref
        return {
            'plan': user.plan.value,
            'credits': display_credits(user),
            'subscriptionStatus': user.subscription_status.value,
            'currentPeriodStart': user.current_period_start,
            'currentPeriodEnd': user.current_period_end,
            'nextBillingDate': user.current_period_end,
            'cancelAtPeriodEnd': user.cancel_at_period_end,
            'planStartDate': user.plan_start_date,
            'planEndDate': user.plan_end_date,
            'provider': ref.provider.value if ref else None,
            'externalSubscriptionId': ref.external_id if ref else None,
            'hasActiveSubscription': user.has_active_recurring,
            'remainingCredits': display_credits(user),
            'planFeatures': plan_features(user.plan)
        }

    @handle_error
    def get_subscription_analytics(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = ensure_utc(now) if now else utcnow()
        user = self._get_user(user_id)
        started = user.plan_start_date or user.created_at
        return {
            'currentPlan': user.plan.value,
            'planStartDate': user.plan_start_date,
            'daysSincePlanStart': max((now - started).days, 0),
            'totalPromptsUsed': user.total_prompts_used,
            'monthlyPromptsUsed': user.monthly_prompts_used,
            'dailyPromptsUsed': user.daily_prompts_used,
            'creditsRemaining': display_credits(user),
            'subscriptionStatus': user.subscription_status.value,
            'nextBillingDate': user.current_period_end,
            'nextResetTime': next_reset_time(user, now),
            'cancelAtPeriodEnd': user.cancel_at_period_end
        }

    @handle_error
    def get_usage(self, user_id: str) -> Dict[str, Any]:
        """Usage summary shown on the dashboard; does not consume a credit"""
        user = self._get_user(user_id)
        result = self.gate.check(user_id)
        details = plan_details(user.plan)
        return {
            'plan': user.plan.value,
            'dailyLimit': details.daily_limit or details.monthly_limit,
            'remainingCredits': display_credits(user),
            'totalPromptsUsed': user.total_prompts_used,
            'monthlyPromptsUsed': user.monthly_prompts_used,
            'hasUnlimitedAccess': details.is_unlimited,
            'canGenerate': result.ok,
            'reason': result.message or None
        }

    @handle_error
    def upgrade_user_plan(self, user_id: str, plan: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Admin plan change outside of any payment provider.

        Paid plans get the one-time validity window; the user must not hold
        a live recurring subscription.
        """
        now = ensure_utc(now) if now else utcnow()
        target = resolve_plan(plan)
        details = plan_details(target)

        def _upgrade(user: User) -> bool:
            if user.has_active_recurring:
                raise ValidationError("User has an active recurring subscription",
                                      error_code="ACTIVE_SUBSCRIPTION")
            user.plan = target
            user.credits = details.credit_grant
            user.plan_start_date = now
            user.plan_end_date = now + timedelta(days=details.duration_days) if details.duration_days else None
            user.daily_prompts_used = 0
            user.monthly_prompts_used = 0
            user.last_free_reset = max(user.last_free_reset, now)
            user.last_monthly_reset = max(user.last_monthly_reset, now)
            return True

        user = update_with_retry(self.store, user_id, _upgrade)
        if user is None:
            raise ValidationError("User not found", error_code="USER_NOT_FOUND", details=user_id)

        if self.history_db is not None:
            self.history_db.add_subscription_history(SubscriptionHistory(
                user_id=user.id,
                event_type='admin.plan_upgrade',
                plan=target.value,
                status=user.subscription_status.value,
                event_time=now
            ))
        logger.info(f"Admin changed user {user_id} to {target.value}")
        return {'success': True, 'plan': target.value, 'credits': display_credits(user)}

    @handle_error
    def list_users(self, page: int = 1, limit: int = 50, plan: Optional[str] = None,
                   subscription_status: Optional[str] = None, search: Optional[str] = None,
                   sort_by: str = 'created_at', sort_order: str = 'desc') -> Dict[str, Any]:
        """
        Admin user listing with filters and pagination.

        Plan and status are matched by the store; the case-insensitive search
        over name and email runs here, since Firestore has no substring queries.
        """
        if sort_by not in ADMIN_SORT_FIELDS:
            raise ValidationError(f"Cannot sort users by {sort_by}", error_code="INVALID_SORT")
        page = max(int(page), 1)
        limit = min(max(int(limit), 1), 200)

        filters = {}
        if plan:
            filters['plan'] = resolve_plan(plan).value
        if subscription_status:
            try:
                filters['subscription_status'] = SubscriptionStatus(subscription_status).value
            except ValueError:
                raise ValidationError(f"Unknown subscription status: {subscription_status}",
                                      error_code="INVALID_STATUS")
        users = self.store.find(filters)

        if search:
            needle = search.strip().lower()
            users = [u for u in users
                     if needle in u.email.lower() or needle in u.first_name.lower() or needle in u.last_name.lower()]

        # Records without the sort field go last in either order
        present = [u for u in users if getattr(u, sort_by) is not None]
        missing = [u for u in users if getattr(u, sort_by) is None]
        present.sort(key=lambda u: getattr(u, sort_by), reverse=sort_order == 'desc')
        users = present + missing

        total = len(users)
        start = (page - 1) * limit
        return {
            'users': [admin_view(u) for u in users[start:start + limit]],
            'pagination': {
                'currentPage': page,
                'totalPages': math.ceil(total / limit),
                'totalUsers': total,
                'hasNext': start + limit < total,
                'hasPrev': page > 1
            }
        }

    @handle_error
    def get_subscription_summary(self, now: Optional[datetime] = None, window_days: int = 30) -> Dict[str, Any]:
        """Admin overview: plan and status distribution, paying subscribers, recent starts and churn"""
        now = ensure_utc(now) if now else utcnow()
        since = now - timedelta(days=window_days)
        rows = []
        for user in self.store.find():
            ended = user.subscription_status in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)
            rows.append({
                'plan': user.plan.value,
                'status': user.subscription_status.value,
                'subscribed': user.has_active_recurring,
                'price': plan_details(user.plan).price if user.has_active_recurring else 0.0,
                'started_recently': (user.plan != Plan.FREE and user.plan_start_date is not None
                                     and user.plan_start_date >= since),
                'churned_recently': ended and user.updated_at is not None and user.updated_at >= since
            })

        if not rows:
            return {'totalUsers': 0, 'planDistribution': {}, 'statusDistribution': {},
                    'subscribersByPlan': [], 'recentPaidStarts': 0, 'recentChurn': 0}

        df = pd.DataFrame(rows)
        subscribers = df[df['subscribed']].groupby('plan').agg(
            subscribers=('status', 'size'),
            monthly_revenue=('price', 'sum')
        ).reset_index()

        return {
            'totalUsers': len(df),
            'planDistribution': {plan: int(n) for plan, n in df['plan'].value_counts().items()},
            'statusDistribution': {status: int(n) for status, n in df['status'].value_counts().items()},
            'subscribersByPlan': [
                {'plan': row.plan, 'subscribers': int(row.subscribers),
                 'monthlyRevenue': round(float(row.monthly_revenue), 2)}
                for row in subscribers.itertuples(index=False)
            ],
            'recentPaidStarts': int(df['started_recently'].sum()),
            'recentChurn': int(df['churned_recently'].sum())
        }

    def generate_prompt(self, user_id: str, input_text: str, quality: str = "standard",
                        now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Spend one credit and store a generated prompt.

        Returns:
            Dict with 'http_status' and the response body fields
        """
        if not input_text or not input_text.strip():
            return {'status': 'error', 'http_status': 400, 'message': 'Missing comment'}

        now = ensure_utc(now) if now else utcnow()
        result = self.gate.check_and_consume(user_id, now)
        if not result.ok:
            response = result.to_response()
            response.update({'status': 'error', 'http_status': result.http_status})
            return response

        generated = {'user_query': input_text.strip(), 'structured': True, 'quality': quality}
        record = PromptRecord.create(
            user_id, input_text.strip(), generated, quality=quality,
            retention_hours=Environment.get_billing_settings()['prompt_retention_hours'], now=now
        )
        if self.prompt_store is not None:
            self.prompt_store.save(record)

        response = result.to_response()
        response.update({
            'status': 'success',
            'http_status': 200,
            'promptId': record.id,
            'prompt': generated,
            'expiresAt': record.expires_at
        })
        return response
