import base64
import hashlib
import hmac
import time
from typing import Any, Dict, Mapping, Optional
import logging

from json4ai.config.environment import Environment
from json4ai.core.error_handler import ConfigurationError, WebhookVerificationError
from json4ai.core.models import EventType, OneTimeOrderEvent, PaymentProvider
from json4ai.services.normalizers.base import WebhookNormalizer, Event, get_header, event_time

logger = logging.getLogger(__name__)

CASHFREE_EVENT_MAP = {
    'PAYMENT_SUCCESS_WEBHOOK': EventType.PAYMENT_SUCCEEDED,
    'PAYMENT_FAILED_WEBHOOK': EventType.PAYMENT_FAILED,
    'PAYMENT_USER_DROPPED_WEBHOOK': EventType.PAYMENT_DROPPED
}


def compute_signature(secret: str, timestamp: str, raw: bytes) -> str:
    """base64(HMAC-SHA256(secret, timestamp + raw body))"""
    digest = hmac.new(secret.encode('utf-8'), timestamp.encode('utf-8') + raw, hashlib.sha256).digest()
    return base64.b64encode(digest).decode('ascii')


class CashfreeNormalizer(WebhookNormalizer):
    """Cashfree Payment Gateway order webhooks (one-time purchases only)"""

    provider = PaymentProvider.CASHFREE

    def __init__(self, secret_key: Optional[str] = None, max_timestamp_age: Optional[int] = None):
        config = Environment.get_cashfree_config()
        self.secret_key = secret_key or config.get('secret_key')
        self.max_timestamp_age = max_timestamp_age or config.get('max_timestamp_age', 300)

    def verify(self, raw: bytes, headers: Mapping[str, str], data: Dict[str, Any]) -> None:
        if not self.secret_key:
            raise ConfigurationError("CASHFREE_SECRET_KEY is not configured", error_code="CASHFREE_CONFIG")
        signature = get_header(headers, 'x-webhook-signature')
        timestamp = get_header(headers, 'x-webhook-timestamp')
        if not signature or not timestamp:
            raise WebhookVerificationError("Missing Cashfree signature headers")

        expected = compute_signature(self.secret_key, timestamp, raw)
        if not hmac.compare_digest(expected, signature):
            raise WebhookVerificationError("Invalid Cashfree signature")

        try:
            sent_at = float(timestamp)
        except ValueError:
            raise WebhookVerificationError("Invalid Cashfree timestamp", details=timestamp)
        # Cashfree sends epoch milliseconds
        if sent_at > 1e12:
            sent_at = sent_at / 1000
        if abs(time.time() - sent_at) > self.max_timestamp_age:
            raise WebhookVerificationError("Cashfree webhook too old", details=timestamp)

    def normalize(self, data: Dict[str, Any]) -> Optional[Event]:
        webhook_type = data.get('type')
        event_type = CASHFREE_EVENT_MAP.get(webhook_type)
        if event_type is None:
            logger.info(f"Unhandled Cashfree event type: {webhook_type}")
            return None

        payload = data.get('data') or {}
        order = payload.get('order') or {}
        payment = payload.get('payment') or {}
        customer = payload.get('customer_details') or {}
        order_id = order.get('order_id')

        # Cashfree has no event id; the payment id is unique per attempt
        event_id = payment.get('cf_payment_id')
        if event_id is not None:
            event_id = f"{event_id}:{webhook_type}"
        elif order_id:
            event_id = f"{order_id}:{webhook_type}"

        amount = payment.get('payment_amount', order.get('order_amount'))
        return OneTimeOrderEvent(
            provider=self.provider,
            external_event_id=event_id,
            event_type=event_type.value,
            correlation_ref=order_id,
            plan_identifier=(order.get('order_tags') or {}).get('plan_type'),
            amount=float(amount) if amount is not None else None,
            currency=payment.get('payment_currency') or order.get('order_currency'),
            timestamp=event_time(data.get('event_time'), payment.get('payment_time')),
            user_id=customer.get('customer_id')
        )
