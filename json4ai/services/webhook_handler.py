from typing import Any, Dict, Mapping, Optional, Union
import logging

from json4ai.core.error_handler import (
    AppError, DatabaseError, MalformedEventError, WebhookVerificationError, log_error
)
from json4ai.core.models import PaymentProvider
from json4ai.core.reconciler import SubscriptionReconciler
from json4ai.core.results import ReconcileOutcome
from json4ai.services.normalizers import (
    CashfreeNormalizer, PayPalNormalizer, StripeNormalizer, WebhookNormalizer
)

logger = logging.getLogger(__name__)


class WebhookHandler:
    """
    Entry point for provider webhooks: verify, normalize, reconcile, ack.

    Every delivery gets an HTTP status for the provider. Anything the
    reconciler has settled (applied, duplicate, orphan, ignored, rejected,
    malformed) is acknowledged with 200 so the provider stops redelivering;
    a bad signature gets 400; a retry-later outcome or a store failure gets
    500 so the provider redelivers.
    """

    def __init__(self, reconciler: SubscriptionReconciler,
                 normalizers: Optional[Dict[PaymentProvider, WebhookNormalizer]] = None):
        self.reconciler = reconciler
        self.normalizers = normalizers if normalizers is not None else {
            PaymentProvider.STRIPE: StripeNormalizer(),
            PaymentProvider.PAYPAL: PayPalNormalizer(),
            PaymentProvider.CASHFREE: CashfreeNormalizer()
        }

    def handle_event(self, provider: Union[str, PaymentProvider], payload: Union[str, bytes],
                     headers: Mapping[str, str]) -> Dict[str, Any]:
        """Handle one incoming webhook delivery"""
        try:
            provider = PaymentProvider(provider)
            normalizer = self.normalizers[provider]
        except (ValueError, KeyError):
            logger.warning(f"Webhook for unsupported provider {provider}")
            return {'status': 'error', 'http_status': 404, 'error': f"Unsupported provider {provider}"}

        try:
            event = normalizer.parse(payload, headers)
        except WebhookVerificationError as e:
            logger.warning(f"Rejected {provider.value} webhook: {e.message}")
            return {'status': 'error', 'http_status': 400, 'error': e.message}
        except MalformedEventError as e:
            logger.warning(f"Malformed {provider.value} webhook: {e.message}")
            return {'status': 'malformed', 'http_status': 200, 'outcome': ReconcileOutcome.MALFORMED.value,
                    'message': e.message}
        except AppError as e:
            # Configuration or verification backend failures; let the provider retry
            log_error(e, context=f"{provider.value} webhook verification")
            return {'status': 'error', 'http_status': 500, 'error': e.message}

        if event is None:
            return {'status': 'unhandled', 'http_status': 200, 'outcome': ReconcileOutcome.IGNORED.value}

        try:
            result = self.reconciler.apply(event)
        except DatabaseError as e:
            log_error(e, context=f"{provider.value} event {event.external_event_id}")
            return {'status': 'error', 'http_status': 500, 'error': 'Database unavailable'}

        response = result.to_dict()
        response['status'] = 'success' if result.outcome == ReconcileOutcome.APPLIED else result.outcome.value
        response['http_status'] = 200 if result.should_ack else 500
        response['event_type'] = event.event_type
        return response
