import stripe
from typing import Any, Dict, Mapping, Optional
import logging

from json4ai.config.environment import Environment
from json4ai.core.error_handler import ConfigurationError, UnknownPlanError, WebhookVerificationError
from json4ai.core.models import (
    EventType, OneTimeOrderEvent, PaymentProvider, RecurringSubscriptionEvent, SubscriptionStatus
)
from json4ai.core.plans import plan_for_provider_price, resolve_plan
from json4ai.services.normalizers.base import WebhookNormalizer, Event, get_header, cents_to_amount, event_time
from json4ai.utils.helpers import to_datetime

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    'active': SubscriptionStatus.ACTIVE,
    'trialing': SubscriptionStatus.ACTIVE,
    'past_due': SubscriptionStatus.PAST_DUE,
    'unpaid': SubscriptionStatus.PAST_DUE,
    'incomplete': SubscriptionStatus.PENDING,
    'paused': SubscriptionStatus.PAST_DUE,
    'canceled': SubscriptionStatus.CANCELED,
    'incomplete_expired': SubscriptionStatus.EXPIRED
}


class StripeNormalizer(WebhookNormalizer):
    """Stripe Checkout (one-time) and Billing (recurring) webhooks"""

    provider = PaymentProvider.STRIPE

    def __init__(self, webhook_secret: Optional[str] = None):
        self.webhook_secret = webhook_secret or Environment.get_stripe_config().get('webhook_secret')

        self.event_handlers = {
            'checkout.session.completed': self._handle_checkout_session_completed,
            'checkout.session.async_payment_succeeded': self._handle_checkout_session_completed,
            'checkout.session.async_payment_failed': self._handle_checkout_session_failed,
            'checkout.session.expired': self._handle_checkout_session_expired,
            'customer.subscription.created': self._handle_subscription_created,
            'customer.subscription.updated': self._handle_subscription_updated,
            'customer.subscription.deleted': self._handle_subscription_deleted,
            'invoice.payment_succeeded': self._handle_invoice_payment_succeeded,
            'invoice.payment_failed': self._handle_invoice_payment_failed
        }

    def verify(self, raw: bytes, headers: Mapping[str, str], data: Dict[str, Any]) -> None:
        if not self.webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured", error_code="STRIPE_CONFIG")
        sig_header = get_header(headers, 'Stripe-Signature')
        if not sig_header:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                raw.decode('utf-8'), sig_header, self.webhook_secret,
                tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError("Invalid Stripe signature", details=str(e))

    def normalize(self, data: Dict[str, Any]) -> Optional[Event]:
        event_type = data.get('type')
        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled Stripe event type: {event_type}")
            return None
        obj = (data.get('data') or {}).get('object') or {}
        return handler(data, obj)

    # Checkout sessions (one-time orders)

    def _order_event(self, data: Dict, session: Dict, event_type: EventType) -> OneTimeOrderEvent:
        metadata = session.get('metadata') or {}
        return OneTimeOrderEvent(
            provider=self.provider,
            external_event_id=data.get('id'),
            event_type=event_type.value,
            correlation_ref=session.get('id'),
            plan_identifier=metadata.get('plan') or metadata.get('plan_type'),
            amount=cents_to_amount(session.get('amount_total')),
            currency=(session.get('currency') or '').upper() or None,
            timestamp=event_time(data.get('created'), session.get('created')),
            user_id=session.get('client_reference_id') or metadata.get('user_id')
        )

    def _handle_checkout_session_completed(self, data: Dict, session: Dict) -> Optional[Event]:
        # Subscription checkouts are reconciled from customer.subscription.* instead
        if session.get('mode') != 'payment':
            return None
        if session.get('payment_status') not in ('paid', 'no_payment_required'):
            logger.info(f"Checkout session {session.get('id')} completed without payment yet")
            return None
        return self._order_event(data, session, EventType.PAYMENT_SUCCEEDED)

    def _handle_checkout_session_failed(self, data: Dict, session: Dict) -> Optional[Event]:
        if session.get('mode') != 'payment':
            return None
        return self._order_event(data, session, EventType.PAYMENT_FAILED)

    def _handle_checkout_session_expired(self, data: Dict, session: Dict) -> Optional[Event]:
        if session.get('mode') != 'payment':
            return None
        return self._order_event(data, session, EventType.PAYMENT_DROPPED)

    # Subscriptions

    @staticmethod
    def _first_item(subscription: Dict) -> Dict:
        items = (subscription.get('items') or {}).get('data') or []
        return items[0] if items else {}

    def _plan_identifier(self, subscription: Dict, keep_unmapped: bool) -> Optional[str]:
        """Plan from metadata, else from the configured price ids.

        Metadata naming no known plan is ignored. An unmapped price id is
        only passed through when the event cannot be applied without a plan,
        so the reconciler reports it as malformed.
        """
        metadata = subscription.get('metadata') or {}
        plan = metadata.get('plan') or metadata.get('plan_type')
        if plan:
            try:
                return resolve_plan(plan).value
            except UnknownPlanError:
                logger.warning(f"Ignoring unknown plan metadata '{plan}' on subscription {subscription.get('id')}")
        price_id = (self._first_item(subscription).get('price') or {}).get('id')
        mapped = plan_for_provider_price(self.provider, price_id)
        if mapped:
            return mapped.value
        return price_id if keep_unmapped else None

    def _subscription_event(self, data: Dict, subscription: Dict, event_type: EventType,
                            status: Optional[SubscriptionStatus] = None) -> RecurringSubscriptionEvent:
        item = self._first_item(subscription)
        price = item.get('price') or {}
        # Newer API versions carry the billing period on the item
        period_start = subscription.get('current_period_start') or item.get('current_period_start')
        period_end = subscription.get('current_period_end') or item.get('current_period_end')
        return RecurringSubscriptionEvent(
            provider=self.provider,
            external_event_id=data.get('id'),
            event_type=event_type.value,
            correlation_ref=subscription.get('id'),
            plan_identifier=self._plan_identifier(
                subscription, keep_unmapped=event_type == EventType.SUBSCRIPTION_ACTIVATED),
            amount=cents_to_amount(price.get('unit_amount')),
            currency=(price.get('currency') or '').upper() or None,
            timestamp=event_time(data.get('created'), subscription.get('created')),
            user_id=(subscription.get('metadata') or {}).get('user_id'),
            subscription_status=status or STRIPE_STATUS_MAP.get(subscription.get('status')),
            current_period_start=to_datetime(period_start),
            current_period_end=to_datetime(period_end),
            cancel_at_period_end=subscription.get('cancel_at_period_end')
        )

    def _handle_subscription_created(self, data: Dict, subscription: Dict) -> Optional[Event]:
        status = STRIPE_STATUS_MAP.get(subscription.get('status'))
        if status != SubscriptionStatus.ACTIVE:
            # Activated later by the customer.subscription.updated that confirms payment
            logger.info(f"Stripe subscription {subscription.get('id')} created as {subscription.get('status')}")
            return None
        return self._subscription_event(data, subscription, EventType.SUBSCRIPTION_ACTIVATED)

    def _handle_subscription_updated(self, data: Dict, subscription: Dict) -> Optional[Event]:
        previous = (data.get('data') or {}).get('previous_attributes') or {}
        status = STRIPE_STATUS_MAP.get(subscription.get('status'))
        if status == SubscriptionStatus.ACTIVE and previous.get('status') in ('incomplete', 'incomplete_expired'):
            return self._subscription_event(data, subscription, EventType.SUBSCRIPTION_ACTIVATED)
        return self._subscription_event(data, subscription, EventType.SUBSCRIPTION_UPDATED)

    def _handle_subscription_deleted(self, data: Dict, subscription: Dict) -> Optional[Event]:
        return self._subscription_event(data, subscription, EventType.SUBSCRIPTION_CANCELED,
                                        status=SubscriptionStatus.CANCELED)

    # Invoices (renewals)

    @staticmethod
    def _invoice_subscription_id(invoice: Dict) -> Optional[str]:
        subscription = invoice.get('subscription')
        if isinstance(subscription, dict):
            return subscription.get('id')
        if subscription:
            return subscription
        details = ((invoice.get('parent') or {}).get('subscription_details') or {})
        return details.get('subscription')

    def _invoice_event(self, data: Dict, invoice: Dict, event_type: EventType) -> Optional[Event]:
        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"Ignoring invoice {invoice.get('id')} without a subscription")
            return None
        amount_key = 'amount_paid' if event_type == EventType.INVOICE_PAYMENT_SUCCEEDED else 'amount_due'
        metadata = ((invoice.get('subscription_details') or {}).get('metadata')
                    or (invoice.get('metadata') or {}))
        return RecurringSubscriptionEvent(
            provider=self.provider,
            external_event_id=data.get('id'),
            event_type=event_type.value,
            correlation_ref=subscription_id,
            amount=cents_to_amount(invoice.get(amount_key)),
            currency=(invoice.get('currency') or '').upper() or None,
            timestamp=event_time(data.get('created'), invoice.get('created')),
            user_id=metadata.get('user_id')
        )

    def _handle_invoice_payment_succeeded(self, data: Dict, invoice: Dict) -> Optional[Event]:
        return self._invoice_event(data, invoice, EventType.INVOICE_PAYMENT_SUCCEEDED)

    def _handle_invoice_payment_failed(self, data: Dict, invoice: Dict) -> Optional[Event]:
        return self._invoice_event(data, invoice, EventType.INVOICE_PAYMENT_FAILED)
