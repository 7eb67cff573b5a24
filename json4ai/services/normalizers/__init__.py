from .base import WebhookNormalizer
from .stripe_normalizer import StripeNormalizer
from .paypal_normalizer import PayPalNormalizer
from .cashfree_normalizer import CashfreeNormalizer

__all__ = ['WebhookNormalizer', 'StripeNormalizer', 'PayPalNormalizer', 'CashfreeNormalizer']
