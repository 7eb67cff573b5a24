"""
Email notifications for subscription lifecycle changes.

Notifications are fire-and-forget: they are handed to a small thread pool
after the state change has been persisted, and a failed send is logged,
never raised back to the webhook or the job that triggered it.
"""

import smtplib
from concurrent.futures import Future, ThreadPoolExecutor
from email.message import EmailMessage
from html import escape
from typing import Any, Callable, Dict, Optional, Tuple
import logging

from json4ai.config.environment import Environment
from json4ai.core.models import User
from json4ai.core.plans import plan_details, plan_features
from json4ai.core.error_handler import UnknownPlanError, retry_on_error
from json4ai.utils.helpers import format_date

logger = logging.getLogger(__name__)


# Connection-level failures; rejected logins and recipients are not retried
SMTP_RETRYABLE = (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, ConnectionError, TimeoutError)


@retry_on_error(max_retries=3, exceptions=SMTP_RETRYABLE)
def send_email(to_email: str, subject: str, html: str, text: Optional[str] = None,
               config: Optional[Dict[str, Any]] = None) -> bool:
    """
    Send one email over SMTP with STARTTLS.

    Returns:
        bool: False when SMTP is not configured
    """
    config = config or Environment.get_smtp_config()
    if not config.get('user') or not config.get('password'):
        logger.warning("SMTP not configured: missing SMTP_USER/SMTP_PASS")
        return False

    msg = EmailMessage()
    msg['Subject'] = subject
    msg['From'] = f"{config['from_name']} <{config['from_address'] or config['user']}>"
    msg['To'] = to_email
    msg.set_content(text or "Your email client does not support HTML.")
    msg.add_alternative(html, subtype='html')

    with smtplib.SMTP(config['host'], config['port']) as smtp:
        smtp.ehlo()
        smtp.starttls()
        smtp.login(config['user'], config['password'])
        smtp.send_message(msg)
    return True


def _plan_name(plan: Optional[str]) -> str:
    try:
        return plan_details(plan).display_name
    except UnknownPlanError:
        return str(plan)


def _greeting(user: User) -> str:
    return f"<h2>Hello {escape(user.first_name or 'there')}!</h2>"


def _link(path: str, label: str) -> str:
    return f'<p><a href="{Environment.FRONTEND_URL}{path}">{label}</a></p>'


def _subscription_activated(user: User, context: Dict[str, Any]) -> Tuple[str, str]:
    name = _plan_name(context.get('plan'))
    features = ''.join(f"<li>{escape(f)}</li>" for f in plan_features(context.get('plan')))
    return (
        f"Welcome to JSON4AI {name} Plan!",
        f"{_greeting(user)}<p>Your {name} subscription is now active.</p>"
        f"<ul>{features}</ul>{_link('/dashboard', 'Go to your dashboard')}"
    )


def _plan_purchased(user: User, context: Dict[str, Any]) -> Tuple[str, str]:
    name = _plan_name(context.get('plan'))
    return (
        f"Your JSON4AI {name} Plan is Ready",
        f"{_greeting(user)}<p>Thanks for your purchase. Your {name} plan is valid until "
        f"{format_date(context.get('plan_end_date'))}.</p>{_link('/dashboard', 'Start generating prompts')}"
    )


def _subscription_updated(user: User, context: Dict[str, Any]) -> Tuple[str, str]:
    name = _plan_name(context.get('plan'))
    return (
        "Your JSON4AI Subscription Has Been Updated",
        f"{_greeting(user)}<p>Your subscription is now on the {name} plan.</p>"
        f"{_link('/dashboard', 'View your subscription')}"
    )


def _subscription_canceled(user: User, context: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Your JSON4AI Subscription Has Been Cancelled",
        f"{_greeting(user)}<p>Your subscription has been cancelled and your account is back on the "
        f"Free plan with 3 prompts per day.</p>{_link('/pricing', 'Resubscribe anytime')}"
    )


def _subscription_expired(user: User, context: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Your JSON4AI Subscription Has Expired",
        f"{_greeting(user)}<p>Your subscription has expired and your account is back on the Free plan.</p>"
        f"{_link('/pricing', 'Choose a new plan')}"
    )


def _payment_failed(user: User, context: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Payment Failed - Action Required",
        f"{_greeting(user)}<p>We could not process your latest JSON4AI payment. "
        f"Please update your payment method to avoid service interruption.</p>"
        f"{_link('/dashboard', 'Update Payment Method')}"
    )


def _plan_ending(user: User, context: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Your JSON4AI Plan is Ending Soon",
        f"{_greeting(user)}<p>Your JSON4AI plan will end on {format_date(user.plan_end_date)}.</p>"
        f"<p>To continue enjoying premium features, please purchase a new plan.</p>"
        f"{_link('/pricing', 'Buy New Plan')}"
    )


def _payment_reminder(user: User, context: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Payment Required - Your JSON4AI Subscription",
        f"{_greeting(user)}<p>Your JSON4AI subscription payment is past due. "
        f"Please update your payment method to avoid service interruption.</p>"
        f"{_link('/dashboard', 'Update Payment Method')}"
    )


TEMPLATES: Dict[str, Callable[[User, Dict[str, Any]], Tuple[str, str]]] = {
    'subscription_activated': _subscription_activated,
    'plan_purchased': _plan_purchased,
    'subscription_updated': _subscription_updated,
    'subscription_canceled': _subscription_canceled,
    'subscription_expired': _subscription_expired,
    'payment_failed': _payment_failed,
    'plan_ending': _plan_ending,
    'payment_reminder': _payment_reminder
}


class EmailNotifier:
    """Renders a template per notification kind and sends it in the background"""

    def __init__(self, executor: Optional[ThreadPoolExecutor] = None, config: Optional[Dict[str, Any]] = None,
                 sender: Callable[..., bool] = send_email):
        self.config = config or Environment.get_smtp_config()
        self.executor = executor
        self.sender = sender

    @classmethod
    def with_thread_pool(cls, workers: Optional[int] = None) -> 'EmailNotifier':
        workers = workers or Environment.get_smtp_config()['workers']
        return cls(executor=ThreadPoolExecutor(max_workers=workers, thread_name_prefix='mailer'))

    def notify(self, kind: str, user: User, context: Optional[Dict[str, Any]] = None) -> Optional[Future]:
        """
        Queue a notification.

        Args:
            kind: Template name, e.g. 'subscription_activated'
            user: Recipient
            context: Template values (plan, amount, plan_end_date...)

        Returns:
            Future of the send when a thread pool is used, else None
        """
        template = TEMPLATES.get(kind)
        if template is None:
            logger.warning(f"No email template for notification {kind}")
            return None
        if not user.email:
            logger.warning(f"User {user.id} has no email, skipping {kind}")
            return None

        subject, html = template(user, context or {})
        if self.executor is None:
            self._deliver(kind, user.email, subject, html)
            return None
        return self.executor.submit(self._deliver, kind, user.email, subject, html)

    def _deliver(self, kind: str, to_email: str, subject: str, html: str) -> bool:
        try:
            sent = self.sender(to_email, subject, html, config=self.config)
            if sent:
                logger.info(f"Sent {kind} email to {to_email}")
            return sent
        except Exception as e:
            logger.error(f"Failed to send {kind} email to {to_email}: {str(e)}")
            return False

    def shutdown(self, wait: bool = True) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=wait)
