import stripe
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from json4ai.config.environment import Environment
from json4ai.core.error_handler import ConfigurationError, ValidationError, handle_error
from json4ai.core.models import EventType, OneTimeOrderEvent, PaymentProvider, Plan
from json4ai.core.plans import plan_details, resolve_plan
from json4ai.core.reconciler import SubscriptionReconciler
from json4ai.core.results import ReconcileOutcome
from json4ai.database.user_store import UserStore
from json4ai.utils.helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class PaymentService:
    """Starts one-time purchases through Stripe Checkout"""

    def __init__(self, store: UserStore, reconciler: SubscriptionReconciler,
                 config: Optional[Dict[str, Any]] = None):
        self.config = config or Environment.get_stripe_config()
        self.stripe = stripe
        self.stripe.api_key = self.config.get('secret_key')
        self.store = store
        self.reconciler = reconciler

    @handle_error
    def create_one_time_order(self, user_id: str, plan: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Create a Checkout session in payment mode and record it as the user's pending order.

        Returns:
            Dict with 'status' and, on success, the session id and hosted checkout url
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
                'message': 'You already have an active plan. Please wait for it to expire before purchasing a new one.',
                'currentPlan': user.plan.value,
                'planEndDate': user.plan_end_date
            }

        price_id = self.config.get(f"{target.value}_price_id")
        if not price_id:
            raise ConfigurationError(f"Price ID not found for plan: {target.value}", error_code="STRIPE_CONFIG")

        details = plan_details(target)
        session = self.stripe.checkout.Session.create(
            mode='payment',
            customer_email=user.email,
            client_reference_id=user.id,
            line_items=[{
                'price': price_id,
                'quantity': 1,
            }],
            success_url=self.config['success_url'],
            cancel_url=self.config['cancel_url'],
            metadata={
                'user_id': user.id,
                'plan': target.value
            }
        )

        result = self.reconciler.apply(OneTimeOrderEvent(
            provider=PaymentProvider.STRIPE,
            external_event_id=f"order:{session.id}",
            event_type=EventType.ORDER_CREATED.value,
            correlation_ref=session.id,
            plan_identifier=target.value,
            amount=details.price,
            currency=details.currency,
            timestamp=now,
            user_id=user.id
        ), now=now)

        if result.outcome != ReconcileOutcome.APPLIED:
            logger.warning(f"Order {session.id} for user {user_id} not recorded: {result.message}")
            self._expire_session(session.id)
            return {'status': 'error', 'message': result.message, 'outcome': result.outcome.value}

        logger.info(f"Created {target.value} checkout {session.id} for user {user_id}")
        return {'status': 'success', 'session_id': session.id, 'url': session.url, 'plan': target.value}

    def _expire_session(self, session_id: str) -> None:
        try:
            self.stripe.checkout.Session.expire(session_id)
        except Exception as e:
            logger.error(f"Error expiring checkout session {session_id}: {str(e)}")

    def verify_payment(self, session_id: str) -> bool:
        """Verify if a payment was successful"""
        session = self.stripe.checkout.Session.retrieve(session_id)
        return session.payment_status == 'paid'
