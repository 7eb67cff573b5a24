import requests
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from json4ai.config.environment import Environment
from json4ai.core.error_handler import AppError, ConfigurationError, ValidationError, handle_error
from json4ai.core.models import EventType, PaymentProvider, Plan, RecurringSubscriptionEvent
from json4ai.core.plans import plan_details, resolve_plan
from json4ai.core.reconciler import SubscriptionReconciler
from json4ai.core.results import ReconcileOutcome
from json4ai.database.user_store import UserStore
from json4ai.services.normalizers.paypal_normalizer import build_custom_id, fetch_access_token
from json4ai.utils.helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class PayPalSubscriptionService:
    """Starts and cancels PayPal recurring subscriptions"""

    def __init__(self, store: UserStore, reconciler: SubscriptionReconciler,
                 config: Optional[Dict[str, Any]] = None, session: Optional[requests.Session] = None,
                 frontend_url: Optional[str] = None):
        self.config = config or Environment.get_paypal_config()
        self.session = session or requests.Session()
        self.frontend_url = (frontend_url or Environment.FRONTEND_URL).rstrip('/')
        self.store = store
        self.reconciler = reconciler

    @handle_error
    def create_subscription(self, user_id: str, plan: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Create a PayPal subscription and record it on the user as awaiting approval.

        The subscription's custom_id is ``user_<id>_<plan>`` so its webhooks
        can be tied back to the user even before the subscription id is stored.

        Returns:
            Dict with 'status' and, on success, the subscription id and approval url
        """
        now = ensure_utc(now) if now else utcnow()
        target = resolve_plan(plan)
        if target == Plan.FREE:
            raise ValidationError("The free plan cannot be purchased", error_code="INVALID_PLAN")

        user = self.store.find_by_id(user_id)
        if user is None:
            raise ValidationError("User not found", error_code="USER_NOT_FOUND", details=user_id)
        if user.has_active_recurring or user.has_active_one_time_plan(now):
            return {
                'status': 'error',
                'message': 'You already have an active plan.',
                'currentPlan': user.plan.value,
                'planEndDate': user.plan_end_date
            }

        plan_id = self.config.get(f"{target.value}_plan_id")
        if not plan_id:
            raise ConfigurationError(f"PayPal plan ID not found for plan: {target.value}", error_code="PAYPAL_CONFIG")

        subscriber = {'email_address': user.email}
        if user.first_name or user.last_name:
            subscriber['name'] = {'given_name': user.first_name, 'surname': user.last_name}

        subscription = self._post('/v1/billing/subscriptions', {
            'plan_id': plan_id,
            'subscriber': subscriber,
            'application_context': {
                'brand_name': 'JSON4AI',
                'locale': 'en-US',
                'shipping_preference': 'NO_SHIPPING',
                'user_action': 'SUBSCRIBE_NOW',
                'return_url': f"{self.frontend_url}/dashboard?success=true",
                'cancel_url': f"{self.frontend_url}/pricing?canceled=true"
            },
            'custom_id': build_custom_id(user.id, target.value)
        })

        subscription_id = subscription.get('id')
        approval_url = next((link.get('href') for link in subscription.get('links') or []
                             if link.get('rel') == 'approve'), None)
        if not subscription_id or not approval_url:
            raise AppError("PayPal approval URL not found", error_code="PAYPAL_API", details=subscription)

        details = plan_details(target)
        result = self.reconciler.apply(RecurringSubscriptionEvent(
            provider=PaymentProvider.PAYPAL,
            external_event_id=f"subscription:{subscription_id}",
            event_type=EventType.SUBSCRIPTION_CREATED.value,
            correlation_ref=subscription_id,
            plan_identifier=target.value,
            amount=details.price,
            currency=details.currency,
            timestamp=now,
            user_id=user.id
        ), now=now)

        if result.outcome != ReconcileOutcome.APPLIED:
            logger.warning(f"Subscription {subscription_id} for user {user_id} not recorded: {result.message}")
            self._cancel_quietly(subscription_id, 'Superseded before approval')
            return {'status': 'error', 'message': result.message, 'outcome': result.outcome.value}

        logger.info(f"Created {target.value} PayPal subscription {subscription_id} for user {user_id}")
        return {'status': 'success', 'subscriptionId': subscription_id, 'approvalUrl': approval_url,
                'plan': target.value}

    @handle_error
    def cancel_subscription(self, user_id: str, reason: str = 'User requested cancellation') -> Dict[str, Any]:
        """
        Ask PayPal to cancel the user's subscription.

        The record itself changes when the BILLING.SUBSCRIPTION.CANCELLED
        webhook is reconciled.
        """
        user = self.store.find_by_id(user_id)
        if user is None:
            raise ValidationError("User not found", error_code="USER_NOT_FOUND", details=user_id)
        ref = user.external_subscription_ref
        if ref is None or ref.provider != PaymentProvider.PAYPAL:
            return {'status': 'error', 'message': 'No subscription found'}

        self._post(f"/v1/billing/subscriptions/{ref.external_id}/cancel", {'reason': reason})
        logger.info(f"Requested cancellation of PayPal subscription {ref.external_id} for user {user_id}")
        return {'status': 'success', 'subscriptionId': ref.external_id}

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(
                f"{self.config['base_url']}{path}",
                json=body,
                headers={
                    'Authorization': f"Bearer {fetch_access_token(self.session, self.config)}",
                    'Content-Type': 'application/json',
                    'Prefer': 'return=representation'
                },
                timeout=self.config.get('timeout', 15)
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise AppError(f"PayPal request to {path} failed", error_code="PAYPAL_API", details=str(e)) from e
        # Cancellation answers 204 with no body
        return response.json() if response.content else {}

    def _cancel_quietly(self, subscription_id: str, reason: str) -> None:
        try:
            self._post(f"/v1/billing/subscriptions/{subscription_id}/cancel", {'reason': reason})
        except AppError as e:
            logger.error(f"Error cancelling PayPal subscription {subscription_id}: {e.message}")
