"""
Error handling module for the JSON4AI billing core.
This module provides consistent error handling across the application.
"""

from json4ai.config.environment import Environment
import logging
import traceback
from functools import wraps
import time

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base exception class for application errors"""
    def __init__(self, message, error_code=None, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class DatabaseError(AppError):
    """Document store errors"""
    pass


class ValidationError(AppError):
    """Data validation errors"""
    pass


class ConfigurationError(AppError):
    """Missing or invalid configuration"""
    pass


class UnknownPlanError(AppError):
    """Plan catalog lookup miss"""
    def __init__(self, plan_name, details=None):
        super().__init__(f"Unknown plan: {plan_name}", error_code="UNKNOWN_PLAN", details=details)
        self.plan_name = plan_name


class WebhookVerificationError(AppError):
    """Webhook signature or freshness check failed"""
    def __init__(self, message, details=None):
        super().__init__(message, error_code="INVALID_SIGNATURE", details=details)


class MalformedEventError(AppError):
    """Provider payload cannot be turned into a normalized event"""
    def __init__(self, message, details=None):
        super().__init__(message, error_code="MALFORMED_EVENT", details=details)


class ConcurrencyConflict(AppError):
    """Conditional write lost against a concurrent writer"""
    def __init__(self, user_id, details=None):
        super().__init__(f"Concurrent update on user {user_id}", error_code="CONFLICT", details=details)
        self.user_id = user_id


def handle_error(func):
    """
    Decorator for consistent error handling

    Args:
        func: Function to wrap with error handling

    Returns:
        Wrapped function with error handling
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except AppError as e:
            # Log application-specific errors
            logger.error(f"Application error: {e.message}")
            if Environment.DEBUG_MODE:
                logger.error(f"Error details: {e.details}")
            raise
        except Exception as e:
            # Log unexpected errors
            logger.error(f"Unexpected error: {str(e)}")
            if Environment.DEBUG_MODE:
                logger.error(f"Traceback: {traceback.format_exc()}")
            raise AppError(
                "An unexpected error occurred",
                error_code="UNEXPECTED_ERROR",
                details=str(e)
            ) from e
    return wrapper


def retry_on_error(max_retries=None, delay=None, exceptions=(Exception,)):
    """
    Decorator for retrying operations on failure

    Args:
        max_retries: Maximum number of retry attempts
        delay: Delay between retries in seconds (RETRY_DELAY_SECONDS when None)
        exceptions: Exception types that trigger a retry

    Returns:
        Wrapped function with retry logic
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            retries = max_retries or Environment.ERROR_HANDLING['max_retries']
            wait = Environment.ERROR_HANDLING['retry_delay'] if delay is None else delay

            for attempt in range(retries):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt < retries - 1:
                        logger.warning(f"Attempt {attempt + 1} failed, retrying...")
                        if wait:
                            time.sleep(wait)
                    else:
                        logger.error(f"All {retries} attempts failed")
                        raise e
        return wrapper
    return decorator


def log_error(error, context=None):
    """
    Log an error with context

    Args:
        error: The error to log
        context: Additional context information
    """
    error_message = str(error)
    if context:
        error_message += f" | Context: {context}"

    logger.error(error_message)
    if Environment.DEBUG_MODE:
        logger.error(f"Traceback: {traceback.format_exc()}")

    return {
        'success': False,
        'message': error_message,
        'error_code': getattr(error, 'error_code', 'UNKNOWN_ERROR'),
        'details': getattr(error, 'details', None) if Environment.DEBUG_MODE else None
    }
