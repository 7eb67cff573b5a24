import requests
from typing import Any, Dict, Mapping, Optional, Tuple
import logging

from json4ai.config.environment import Environment
from json4ai.core.error_handler import AppError, ConfigurationError, UnknownPlanError, WebhookVerificationError
from json4ai.core.models import (
    EventType, OneTimeOrderEvent, PaymentProvider, RecurringSubscriptionEvent, SubscriptionStatus
)
from json4ai.core.plans import plan_for_provider_price, resolve_plan
from json4ai.services.normalizers.base import WebhookNormalizer, Event, get_header, event_time
from json4ai.utils.helpers import to_datetime, utcnow

logger = logging.getLogger(__name__)

PAYPAL_STATUS_MAP = {
    'APPROVAL_PENDING': SubscriptionStatus.PENDING,
    'APPROVED': SubscriptionStatus.PENDING,
    'ACTIVE': SubscriptionStatus.ACTIVE,
    'SUSPENDED': SubscriptionStatus.PAST_DUE,
    'CANCELLED': SubscriptionStatus.CANCELED,
    'EXPIRED': SubscriptionStatus.EXPIRED
}

VERIFICATION_HEADERS = {
    'auth_algo': 'PAYPAL-AUTH-ALGO',
    'cert_url': 'PAYPAL-CERT-URL',
    'transmission_id': 'PAYPAL-TRANSMISSION-ID',
    'transmission_sig': 'PAYPAL-TRANSMISSION-SIG',
    'transmission_time': 'PAYPAL-TRANSMISSION-TIME'
}


def fetch_access_token(session: requests.Session, config: Dict[str, Any]) -> str:
    """OAuth client-credentials token for the PayPal REST API"""
    if not (config.get('client_id') and config.get('client_secret')):
        raise ConfigurationError("PayPal client credentials are not configured", error_code="PAYPAL_CONFIG")
    response = session.post(
        f"{config['base_url']}/v1/oauth2/token",
        auth=(config['client_id'], config['client_secret']),
        data={'grant_type': 'client_credentials'},
        headers={'Accept': 'application/json'},
        timeout=config.get('timeout', 15)
    )
    response.raise_for_status()
    return response.json()['access_token']


def build_custom_id(user_id: str, plan: str) -> str:
    return f"user_{user_id}_{plan}"


def parse_custom_id(custom_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a subscription custom_id into user id and plan name.

    Subscriptions created by this service carry ``user_<id>_<plan>``;
    anything else is taken as a bare user id.
    """
    if not custom_id:
        return None, None
    if custom_id.startswith('user_') and custom_id.count('_') >= 2:
        user_id, plan_name = custom_id[len('user_'):].rsplit('_', 1)
        try:
            return user_id, resolve_plan(plan_name).value
        except UnknownPlanError:
            pass
    return custom_id, None


class PayPalNormalizer(WebhookNormalizer):
    """PayPal Subscriptions and Orders webhooks"""

    provider = PaymentProvider.PAYPAL

    def __init__(self, config: Optional[Dict[str, Any]] = None, session: Optional[requests.Session] = None):
        self.config = config or Environment.get_paypal_config()
        self.session = session or requests.Session()

        self.event_handlers = {
            'BILLING.SUBSCRIPTION.CREATED': self._handle_subscription_created,
            'BILLING.SUBSCRIPTION.ACTIVATED': self._handle_subscription_activated,
            'BILLING.SUBSCRIPTION.UPDATED': self._handle_subscription_updated,
            'BILLING.SUBSCRIPTION.SUSPENDED': self._handle_subscription_updated,
            'BILLING.SUBSCRIPTION.CANCELLED': self._handle_subscription_cancelled,
            'BILLING.SUBSCRIPTION.EXPIRED': self._handle_subscription_expired,
            'BILLING.SUBSCRIPTION.PAYMENT.FAILED': self._handle_subscription_payment_failed,
            'PAYMENT.SALE.COMPLETED': self._handle_sale_completed,
            'PAYMENT.CAPTURE.COMPLETED': self._handle_capture_completed,
            'PAYMENT.CAPTURE.DENIED': self._handle_capture_denied
        }

    # Verification

    def verify(self, raw: bytes, headers: Mapping[str, str], data: Dict[str, Any]) -> None:
        if not self.config.get('webhook_id'):
            raise ConfigurationError("PAYPAL_WEBHOOK_ID is not configured", error_code="PAYPAL_CONFIG")

        values = {field: get_header(headers, name) for field, name in VERIFICATION_HEADERS.items()}
        missing = [VERIFICATION_HEADERS[field] for field, value in values.items() if not value]
        if missing:
            raise WebhookVerificationError(f"Missing PayPal headers: {', '.join(missing)}")

        self._check_transmission_time(values['transmission_time'])

        body = dict(values)
        body['webhook_id'] = self.config['webhook_id']
        body['webhook_event'] = data

        try:
            response = self.session.post(
                f"{self.config['base_url']}/v1/notifications/verify-webhook-signature",
                json=body,
                headers={'Authorization': f"Bearer {self._get_access_token()}"},
                timeout=self.config.get('timeout', 15)
            )
            response.raise_for_status()
            result = response.json()
        except requests.RequestException as e:
            # Not a forged request, PayPal should redeliver once we can reach the API
            raise AppError("PayPal signature verification unavailable",
                           error_code="VERIFICATION_UNAVAILABLE", details=str(e)) from e

        if result.get('verification_status') != 'SUCCESS':
            raise WebhookVerificationError("Invalid PayPal signature",
                                           details=result.get('verification_status'))

    def _check_transmission_time(self, value: str) -> None:
        sent_at = to_datetime(value)
        if sent_at is None:
            raise WebhookVerificationError("Invalid PayPal transmission time", details=value)
        age = abs((utcnow() - sent_at).total_seconds())
        if age > self.config.get('max_transmission_age', 300):
            raise WebhookVerificationError("PayPal webhook too old", details=f"{int(age)}s")

    def _get_access_token(self) -> str:
        return fetch_access_token(self.session, self.config)

    # Normalization

    def normalize(self, data: Dict[str, Any]) -> Optional[Event]:
        event_type = data.get('event_type')
        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled PayPal event type: {event_type}")
            return None
        return handler(data, data.get('resource') or {})

    def _plan_identifier(self, resource: Dict, keep_unmapped: bool) -> Optional[str]:
        """Configured plan id, else on activation the plan named in custom_id"""
        plan_id = resource.get('plan_id')
        mapped = plan_for_provider_price(self.provider, plan_id)
        if mapped:
            return mapped.value
        if not keep_unmapped:
            return None
        return parse_custom_id(resource.get('custom_id'))[1] or plan_id

    def _subscription_event(self, data: Dict, resource: Dict, event_type: EventType,
                            status: Optional[SubscriptionStatus] = None) -> RecurringSubscriptionEvent:
        billing_info = resource.get('billing_info') or {}
        last_payment = billing_info.get('last_payment') or {}
        amount = (last_payment.get('amount') or {})
        return RecurringSubscriptionEvent(
            provider=self.provider,
            external_event_id=data.get('id'),
            event_type=event_type.value,
            correlation_ref=resource.get('id'),
            plan_identifier=self._plan_identifier(
                resource, keep_unmapped=event_type == EventType.SUBSCRIPTION_ACTIVATED),
            amount=float(amount['value']) if amount.get('value') else None,
            currency=amount.get('currency_code'),
            timestamp=event_time(data.get('create_time')),
            user_id=parse_custom_id(resource.get('custom_id'))[0],
            subscription_status=status or PAYPAL_STATUS_MAP.get(resource.get('status')),
            current_period_start=to_datetime(last_payment.get('time') or resource.get('start_time')),
            current_period_end=to_datetime(billing_info.get('next_billing_time'))
        )

    def _handle_subscription_created(self, data: Dict, resource: Dict) -> Optional[Event]:
        return self._subscription_event(data, resource, EventType.SUBSCRIPTION_CREATED,
                                        status=SubscriptionStatus.PENDING)

    def _handle_subscription_activated(self, data: Dict, resource: Dict) -> Optional[Event]:
        return self._subscription_event(data, resource, EventType.SUBSCRIPTION_ACTIVATED,
                                        status=SubscriptionStatus.ACTIVE)

    def _handle_subscription_updated(self, data: Dict, resource: Dict) -> Optional[Event]:
        return self._subscription_event(data, resource, EventType.SUBSCRIPTION_UPDATED)

    def _handle_subscription_cancelled(self, data: Dict, resource: Dict) -> Optional[Event]:
        return self._subscription_event(data, resource, EventType.SUBSCRIPTION_CANCELED,
                                        status=SubscriptionStatus.CANCELED)

    def _handle_subscription_expired(self, data: Dict, resource: Dict) -> Optional[Event]:
        return self._subscription_event(data, resource, EventType.SUBSCRIPTION_EXPIRED,
                                        status=SubscriptionStatus.EXPIRED)

    def _handle_subscription_payment_failed(self, data: Dict, resource: Dict) -> Optional[Event]:
        return self._subscription_event(data, resource, EventType.INVOICE_PAYMENT_FAILED,
                                        status=SubscriptionStatus.PAST_DUE)

    def _handle_sale_completed(self, data: Dict, resource: Dict) -> Optional[Event]:
        subscription_id = resource.get('billing_agreement_id')
        if not subscription_id:
            logger.info(f"Ignoring PayPal sale {resource.get('id')} without a billing agreement")
            return None
        amount = resource.get('amount') or {}
        return RecurringSubscriptionEvent(
            provider=self.provider,
            external_event_id=data.get('id'),
            event_type=EventType.INVOICE_PAYMENT_SUCCEEDED.value,
            correlation_ref=subscription_id,
            amount=float(amount['total']) if amount.get('total') else None,
            currency=amount.get('currency'),
            timestamp=event_time(data.get('create_time'), resource.get('create_time')),
            user_id=parse_custom_id(resource.get('custom'))[0]
        )

    def _capture_event(self, data: Dict, resource: Dict, event_type: EventType) -> Optional[Event]:
        related = ((resource.get('supplementary_data') or {}).get('related_ids') or {})
        order_id = related.get('order_id')
        if not order_id:
            logger.info(f"Ignoring PayPal capture {resource.get('id')} without an order id")
            return None
        amount = resource.get('amount') or {}
        return OneTimeOrderEvent(
            provider=self.provider,
            external_event_id=data.get('id'),
            event_type=event_type.value,
            correlation_ref=order_id,
            amount=float(amount['value']) if amount.get('value') else None,
            currency=amount.get('currency_code'),
            timestamp=event_time(data.get('create_time'), resource.get('create_time')),
            user_id=parse_custom_id(resource.get('custom_id'))[0]
        )

    def _handle_capture_completed(self, data: Dict, resource: Dict) -> Optional[Event]:
        return self._capture_event(data, resource, EventType.PAYMENT_SUCCEEDED)

    def _handle_capture_denied(self, data: Dict, resource: Dict) -> Optional[Event]:
        return self._capture_event(data, resource, EventType.PAYMENT_FAILED)
