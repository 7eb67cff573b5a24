"""
Environment configuration for the JSON4AI billing core.
This file manages environment-specific settings and configurations.
"""

import os
from typing import Dict, Any
import logging
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()


def _int_env(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        logger.warning(f"Invalid integer for {key}, using {default}")
        return default


class Environment:
    """Environment configuration class"""

    # Application Settings
    APP_NAME = "JSON4AI"
    APP_VERSION = "1.0.0"
    DEBUG_MODE = os.getenv('DEBUG_MODE', 'False').lower() == 'true'
    FRONTEND_URL = os.getenv('FRONTEND_URL', 'https://json4ai.com')
    UPGRADE_URL = os.getenv('UPGRADE_URL', '/pricing.html')

    # Firebase Settings
    FIREBASE_CONFIG = {
        'projectId': os.getenv('FIREBASE_PROJECT_ID'),
        'credentials': os.getenv('FIREBASE_CREDENTIALS'),
        'credentialsPath': os.getenv('FIREBASE_CREDENTIALS_PATH'),
        'usersCollection': os.getenv('FIREBASE_USERS_COLLECTION', 'users'),
        'historyCollection': os.getenv('FIREBASE_HISTORY_COLLECTION', 'subscription_history')
    }

    # Stripe Settings
    STRIPE_CONFIG = {
        'secret_key': os.getenv('STRIPE_SECRET_KEY'),
        'webhook_secret': os.getenv('STRIPE_WEBHOOK_SECRET'),
        'starter_price_id': os.getenv('STRIPE_STARTER_PRICE_ID'),
        'premium_price_id': os.getenv('STRIPE_PREMIUM_PRICE_ID'),
        'success_url': os.getenv('STRIPE_SUCCESS_URL', 'https://json4ai.com/pricing?success=true'),
        'cancel_url': os.getenv('STRIPE_CANCEL_URL', 'https://json4ai.com/pricing?canceled=true')
    }

    # PayPal Settings
    PAYPAL_CONFIG = {
        'client_id': os.getenv('PAYPAL_CLIENT_ID'),
        'client_secret': os.getenv('PAYPAL_CLIENT_SECRET'),
        'webhook_id': os.getenv('PAYPAL_WEBHOOK_ID'),
        'base_url': os.getenv('PAYPAL_BASE_URL', 'https://api-m.sandbox.paypal.com'),
        'starter_plan_id': os.getenv('PAYPAL_STARTER_PLAN_ID'),
        'premium_plan_id': os.getenv('PAYPAL_PREMIUM_PLAN_ID'),
        'max_transmission_age': _int_env('PAYPAL_MAX_TRANSMISSION_AGE', 300),
        'timeout': _int_env('PAYPAL_TIMEOUT', 15)
    }

    # Cashfree Settings
    CASHFREE_CONFIG = {
        'secret_key': os.getenv('CASHFREE_SECRET_KEY'),
        'max_timestamp_age': _int_env('CASHFREE_MAX_TIMESTAMP_AGE', 300)
    }

    # Email Settings
    SMTP_CONFIG = {
        'host': os.getenv('SMTP_HOST', 'smtp.gmail.com'),
        'port': _int_env('SMTP_PORT', 587),
        'user': os.getenv('SMTP_USER', ''),
        'password': os.getenv('SMTP_PASS', ''),
        'from_address': os.getenv('MAIL_FROM', os.getenv('SMTP_USER', '')),
        'from_name': os.getenv('MAIL_FROM_NAME', 'JSON4AI'),
        'workers': _int_env('MAIL_WORKERS', 2)
    }

    # Billing Settings
    BILLING = {
        'pending_order_ttl_hours': _int_env('PENDING_ORDER_TTL_HOURS', 24),
        'prompt_retention_hours': _int_env('PROMPT_RETENTION_HOURS', 24),
        'plan_ending_notice_days': _int_env('PLAN_ENDING_NOTICE_DAYS', 3)
    }

    # Logging Settings
    LOGGING_CONFIG = {
        'level': os.getenv('LOG_LEVEL', 'INFO'),
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        'file': os.getenv('LOG_FILE')
    }

    # Error Handling
    ERROR_HANDLING = {
        'max_retries': _int_env('RECONCILE_MAX_RETRIES', 3),
        'retry_delay': _int_env('RETRY_DELAY_SECONDS', 1)
    }

    @classmethod
    def validate_config(cls) -> bool:
        """Validate the configuration"""
        try:
            if not (cls.FIREBASE_CONFIG.get('credentials') or cls.FIREBASE_CONFIG.get('credentialsPath')):
                logger.error("Missing Firebase credentials")
                return False

            # Each provider webhook must be verifiable before it reaches the reconciler
            if cls.STRIPE_CONFIG.get('secret_key') and not cls.STRIPE_CONFIG.get('webhook_secret'):
                logger.error("Missing STRIPE_WEBHOOK_SECRET")
                return False

            if cls.PAYPAL_CONFIG.get('client_id') and not cls.PAYPAL_CONFIG.get('webhook_id'):
                logger.error("Missing PAYPAL_WEBHOOK_ID")
                return False

            if cls.ERROR_HANDLING['max_retries'] < 1:
                logger.error("Invalid retry setting")
                return False

            return True
        except Exception as e:
            logger.error(f"Configuration validation failed: {str(e)}")
            return False

    @classmethod
    def get_firebase_config(cls) -> Dict[str, Any]:
        """Get Firebase configuration"""
        return cls.FIREBASE_CONFIG

    @classmethod
    def get_stripe_config(cls) -> Dict[str, Any]:
        return cls.STRIPE_CONFIG.copy()

    @classmethod
    def get_paypal_config(cls) -> Dict[str, Any]:
        return cls.PAYPAL_CONFIG.copy()

    @classmethod
    def get_cashfree_config(cls) -> Dict[str, Any]:
        return cls.CASHFREE_CONFIG.copy()

    @classmethod
    def get_smtp_config(cls) -> Dict[str, Any]:
        return cls.SMTP_CONFIG.copy()

    @classmethod
    def get_billing_settings(cls) -> Dict[str, Any]:
        """Get billing settings"""
        return cls.BILLING.copy()


def configure_logging(level: str = None) -> None:
    """Configure root logging from LOGGING_CONFIG"""
    config = Environment.LOGGING_CONFIG
    handlers = [logging.StreamHandler()]
    if config.get('file'):
        handlers.append(logging.FileHandler(config['file']))
    logging.basicConfig(
        level=getattr(logging, (level or config['level']).upper(), logging.INFO),
        format=config['format'],
        handlers=handlers
    )
