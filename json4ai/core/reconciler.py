"""
Subscription reconciler.

Applies normalized payment-provider events to subscriber records. Every
transition is a read, an in-memory change and a conditional write on the
record's version; the event id is added to ``processed_event_ids`` inside
that same write, so a redelivered event is detected no matter how many
times the provider sends it or in what order.
"""

from collections import namedtuple
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union
import logging

from json4ai.config.environment import Environment
from json4ai.core.error_handler import UnknownPlanError, MalformedEventError
from json4ai.core.models import (
    User, Plan, SubscriptionStatus, EventType, ExternalRef,
    OneTimeOrderEvent, RecurringSubscriptionEvent, WebhookEvent
)
from json4ai.core.plans import resolve_plan, plan_details, credit_grant
from json4ai.core.results import ReconcileResult, ReconcileOutcome
from json4ai.database.schema import SubscriptionHistory
from json4ai.database.user_store import UserStore
from json4ai.utils.helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)

ONE_TIME_EVENTS = {
    EventType.ORDER_CREATED,
    EventType.PAYMENT_SUCCEEDED,
    EventType.PAYMENT_FAILED,
    EventType.PAYMENT_DROPPED
}

# Result of a handler: outcome, log message, notification to send after the write
Transition = namedtuple('Transition', ['outcome', 'message', 'notification'])


def _applied(message: str, notification: Optional[str] = None) -> Transition:
    return Transition(ReconcileOutcome.APPLIED, message, notification)


def _rejected(message: str) -> Transition:
    return Transition(ReconcileOutcome.REJECTED, message, None)


def _ignored(message: str) -> Transition:
    return Transition(ReconcileOutcome.IGNORED, message, None)


def _advance(current: Optional[datetime], now: datetime) -> datetime:
    """Reset markers only ever move forward."""
    if current is None:
        return now
    return max(ensure_utc(current), now)


class SubscriptionReconciler:
    """Idempotent state machine from webhook events to subscriber state"""

    def __init__(self, store: UserStore, history_db=None, notifier=None,
                 max_retries: Optional[int] = None, pending_order_ttl_hours: Optional[int] = None):
        self.store = store
        self.history_db = history_db
        self.notifier = notifier
        self.max_retries = max_retries or Environment.ERROR_HANDLING['max_retries']
        self.pending_order_ttl = timedelta(
            hours=pending_order_ttl_hours or Environment.get_billing_settings()['pending_order_ttl_hours']
        )

        self.event_handlers = {
            EventType.ORDER_CREATED: self._handle_order_created,
            EventType.PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            EventType.PAYMENT_FAILED: self._handle_payment_failed,
            EventType.PAYMENT_DROPPED: self._handle_payment_dropped,
            EventType.SUBSCRIPTION_CREATED: self._handle_subscription_created,
            EventType.SUBSCRIPTION_ACTIVATED: self._handle_subscription_activated,
            EventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventType.SUBSCRIPTION_CANCELED: self._handle_subscription_canceled,
            EventType.SUBSCRIPTION_EXPIRED: self._handle_subscription_expired,
            EventType.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_payment_succeeded,
            EventType.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed
        }

    def apply(self, event: Union[OneTimeOrderEvent, RecurringSubscriptionEvent],
              now: Optional[datetime] = None) -> ReconcileResult:
        """
        Apply one normalized event.

        Args:
            event: Normalized provider event
            now: Processing time (defaults to the current UTC time)

        Returns:
            ReconcileResult: what happened; only RETRY_LATER asks the provider to redeliver

        Raises:
            DatabaseError: if the document store itself fails
        """
        now = ensure_utc(now) if now else utcnow()
        event_id = event.external_event_id

        if not event_id:
            logger.warning(f"Malformed {event.provider.value} event without an id: {event.event_type}")
            return ReconcileResult(ReconcileOutcome.MALFORMED, message='Missing event id')

        try:
            event_type = EventType(event.event_type)
        except ValueError:
            logger.info(f"Ignoring unknown event type {event.event_type} ({event_id})")
            return ReconcileResult(ReconcileOutcome.IGNORED, event_id=event_id,
                                   message=f"Unknown event type {event.event_type}")

        if not event.user_id and not event.correlation_ref:
            logger.warning(f"Malformed event {event_id}: no user id or correlation ref")
            return ReconcileResult(ReconcileOutcome.MALFORMED, event_id=event_id,
                                   message='Missing correlation reference')

        handler = self.event_handlers[event_type]

        for attempt in range(self.max_retries):
            user = self._correlate(event, event_type)
            if user is None:
                if self._already_processed(event_id):
                    logger.info(f"Duplicate event {event_id}")
                    return ReconcileResult(ReconcileOutcome.DUPLICATE, event_id=event_id,
                                           message='Event already processed')
                logger.warning(f"Orphan {event.provider.value} event {event_id} ({event_type.value}, "
                               f"ref={event.correlation_ref}, user={event.user_id})")
                return ReconcileResult(ReconcileOutcome.ORPHAN, event_id=event_id,
                                       message='No matching user')

            if user.has_processed(event_id):
                logger.info(f"Duplicate event {event_id} for user {user.id}")
                return ReconcileResult(ReconcileOutcome.DUPLICATE, event_id=event_id, user_id=user.id,
                                       message='Event already processed')

            expected_version = user.version
            try:
                transition = handler(user, event, now)
            except (MalformedEventError, UnknownPlanError) as e:
                logger.warning(f"Malformed event {event_id}: {e.message}")
                return ReconcileResult(ReconcileOutcome.MALFORMED, event_id=event_id, user_id=user.id,
                                       message=e.message)

            if transition.outcome != ReconcileOutcome.APPLIED:
                logger.info(f"{transition.outcome.value.capitalize()} {event_type.value} "
                            f"{event_id} for user {user.id}: {transition.message}")
                return ReconcileResult(transition.outcome, event_id=event_id, user_id=user.id,
                                       message=transition.message)

            user.mark_processed(event_id)
            if self.store.compare_and_set(user, expected_version):
                logger.info(f"Applied {event_type.value} {event_id} to user {user.id}: {transition.message}")
                self._record_history(user, event, event_type, now)
                self._notify(transition.notification, user, event)
                return ReconcileResult(ReconcileOutcome.APPLIED, event_id=event_id, user_id=user.id,
                                       message=transition.message)

            logger.warning(f"Conflict applying {event_id} to user {user.id}, attempt {attempt + 1}")

        logger.error(f"Giving up on event {event_id} after {self.max_retries} conflicts")
        return ReconcileResult(ReconcileOutcome.RETRY_LATER, event_id=event_id,
                               message='Concurrent updates, retry later')

    def _correlate(self, event: WebhookEvent, event_type: EventType) -> Optional[User]:
        """Find the subscriber an event belongs to"""
        if event.user_id:
            user = self.store.find_by_id(event.user_id)
            if user is not None:
                return user
            logger.warning(f"Event user {event.user_id} not found, falling back to correlation ref")

        if not event.correlation_ref:
            return None
        if event_type in ONE_TIME_EVENTS:
            return self.store.find_one('pending_order_ref', event.correlation_ref)
        return self.store.find_one('external_subscription_ref.external_id', event.correlation_ref)

    def _already_processed(self, event_id: str) -> bool:
        return bool(self.store.find({'processed_event_ids': ('array_contains', event_id)}))

    def _pending_order_is_stale(self, user: User, now: datetime) -> bool:
        created = user.pending_order_created_at
        return created is None or created + self.pending_order_ttl <= now

    @staticmethod
    def _current_ref_matches(user: User, event: WebhookEvent) -> bool:
        ref = user.external_subscription_ref
        return ref is not None and ref.external_id == event.correlation_ref

    @staticmethod
    def _paid_plan(plan_identifier: Optional[str], event_type: EventType) -> Plan:
        if not plan_identifier:
            raise MalformedEventError(f"{event_type.value} without a plan")
        plan = resolve_plan(plan_identifier)
        if plan == Plan.FREE:
            raise MalformedEventError(f"{event_type.value} for the free plan")
        return plan

    @staticmethod
    def _known_plan(event: WebhookEvent) -> Optional[Plan]:
        """Plan carried by an event that does not need one; unknown names are dropped."""
        if not event.plan_identifier:
            return None
        try:
            return resolve_plan(event.plan_identifier)
        except UnknownPlanError as e:
            logger.warning(f"Ignoring plan on {event.event_type} {event.external_event_id}: {e.message}")
            return None

    # One-time orders

    def _handle_order_created(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        plan = self._paid_plan(event.plan_identifier, EventType.ORDER_CREATED)
        if not event.correlation_ref:
            raise MalformedEventError("order.created without an order reference")

        if user.has_active_recurring:
            return _rejected('User already has an active recurring subscription')
        if user.has_active_one_time_plan(now):
            return _rejected(f"User already has an active {user.plan.value} plan")
        if (user.pending_order_ref and user.pending_order_ref != event.correlation_ref
                and not self._pending_order_is_stale(user, now)):
            return _rejected(f"Another order ({user.pending_order_ref}) is still pending")

        user.pending_order_ref = event.correlation_ref
        user.pending_order_plan = plan
        user.pending_order_created_at = now
        return _applied(f"Pending {plan.value} order {event.correlation_ref}")

    def _handle_payment_succeeded(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        if user.pending_order_ref and user.pending_order_ref != event.correlation_ref:
            return _rejected(f"Payment for {event.correlation_ref} while {user.pending_order_ref} is pending")
        if user.has_active_recurring:
            return _rejected('User already has an active recurring subscription')

        plan_name = event.plan_identifier or (user.pending_order_plan.value if user.pending_order_plan else None)
        plan = self._paid_plan(plan_name, EventType.PAYMENT_SUCCEEDED)
        details = plan_details(plan)

        user.plan = plan
        user.credits = details.credit_grant
        user.plan_start_date = now
        user.plan_end_date = now + timedelta(days=details.duration_days) if details.duration_days else None
        user.daily_prompts_used = 0
        user.monthly_prompts_used = 0
        user.last_free_reset = _advance(user.last_free_reset, now)
        user.last_monthly_reset = _advance(user.last_monthly_reset, now)
        user.last_payment_date = now
        user.clear_pending_order()
        return _applied(f"Activated one-time {plan.value} plan until {user.plan_end_date}", 'plan_purchased')

    def _clear_matching_order(self, user: User, event: WebhookEvent, notification: Optional[str]) -> Transition:
        if not user.pending_order_ref or user.pending_order_ref != event.correlation_ref:
            return _ignored(f"Order {event.correlation_ref} is not the pending order")
        user.clear_pending_order()
        return _applied(f"Cleared pending order {event.correlation_ref}", notification)

    def _handle_payment_failed(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        return self._clear_matching_order(user, event, 'payment_failed')

    def _handle_payment_dropped(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        return self._clear_matching_order(user, event, None)

    # Recurring subscriptions

    def _handle_subscription_created(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        """Record a subscription awaiting approval so its activation can be correlated"""
        if not event.correlation_ref:
            raise MalformedEventError("subscription.created without a subscription id")

        if self._current_ref_matches(user, event):
            return _ignored(f"Subscription {event.correlation_ref} already recorded")
        if user.has_active_one_time_plan(now):
            return _rejected(f"User already has an active one-time {user.plan.value} plan")
        if user.has_active_recurring:
            return _rejected(f"User already has subscription {user.external_subscription_ref.external_id}")

        user.external_subscription_ref = ExternalRef(provider=event.provider, external_id=event.correlation_ref)
        user.subscription_status = SubscriptionStatus.PENDING
        user.current_period_start = None
        user.current_period_end = None
        user.cancel_at_period_end = False
        return _applied(f"Subscription {event.correlation_ref} awaiting approval")

    def _handle_subscription_activated(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        plan = self._paid_plan(event.plan_identifier, EventType.SUBSCRIPTION_ACTIVATED)
        if not event.correlation_ref:
            raise MalformedEventError("subscription.activated without a subscription id")

        if user.has_active_one_time_plan(now):
            return _rejected(f"User already has an active one-time {user.plan.value} plan")
        if user.has_active_recurring and not self._current_ref_matches(user, event):
            return _rejected(f"User already has subscription {user.external_subscription_ref.external_id}")

        user.plan = plan
        user.credits = credit_grant(plan)
        user.subscription_status = SubscriptionStatus.ACTIVE
        user.external_subscription_ref = ExternalRef(provider=event.provider, external_id=event.correlation_ref)
        user.current_period_start = getattr(event, 'current_period_start', None) or now
        user.current_period_end = getattr(event, 'current_period_end', None)
        user.cancel_at_period_end = bool(getattr(event, 'cancel_at_period_end', None))
        user.plan_start_date = now
        user.plan_end_date = None
        user.monthly_prompts_used = 0
        user.last_monthly_reset = _advance(user.last_monthly_reset, now)
        user.clear_pending_order()
        return _applied(f"Activated {plan.value} subscription {event.correlation_ref}", 'subscription_activated')

    def _handle_subscription_updated(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        if not self._current_ref_matches(user, event):
            return _ignored(f"Stale subscription {event.correlation_ref}")

        status = getattr(event, 'subscription_status', None)
        if status in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED):
            return self._end_subscription(user, event, now, status)
        if user.subscription_status == SubscriptionStatus.PENDING:
            return _ignored(f"Subscription {event.correlation_ref} not activated yet")

        changes = []
        if status is not None and status != user.subscription_status:
            changes.append(f"status {user.subscription_status.value} -> {status.value}")
            user.subscription_status = status

        for field in ('current_period_start', 'current_period_end', 'cancel_at_period_end'):
            value = getattr(event, field, None)
            if value is not None and value != getattr(user, field):
                setattr(user, field, value)
                changes.append(field)

        notification = None
        plan = self._known_plan(event)
        if plan is not None and plan != Plan.FREE and plan != user.plan:
            changes.append(f"plan {user.plan.value} -> {plan.value}")
            user.plan = plan
            # Never a grant: the balance is only clamped to the new plan
            if plan_details(plan).is_unlimited:
                user.credits = credit_grant(plan)
            else:
                user.credits = min(user.credits, credit_grant(plan))
            notification = 'subscription_updated'

        if not changes:
            return _ignored('No subscription changes')
        return _applied(f"Updated subscription {event.correlation_ref}: {', '.join(changes)}", notification)

    def _end_subscription(self, user: User, event: WebhookEvent, now: datetime,
                          status: SubscriptionStatus) -> Transition:
        if user.subscription_status == SubscriptionStatus.PENDING:
            # Never approved, so there is no paid plan to take back
            user.subscription_status = status
            user.external_subscription_ref = None
            return _applied(f"Pending subscription {event.correlation_ref} {status.value}")

        user.plan = Plan.FREE
        user.credits = credit_grant(Plan.FREE)
        user.subscription_status = status
        user.external_subscription_ref = None
        user.current_period_start = None
        user.current_period_end = None
        user.cancel_at_period_end = False
        user.plan_end_date = None
        user.last_free_reset = _advance(user.last_free_reset, now)
        notification = 'subscription_expired' if status == SubscriptionStatus.EXPIRED else 'subscription_canceled'
        return _applied(f"Subscription {event.correlation_ref} {status.value}, reverted to free", notification)

    def _handle_subscription_canceled(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        if not self._current_ref_matches(user, event):
            return _ignored(f"Stale subscription {event.correlation_ref}")
        return self._end_subscription(user, event, now, SubscriptionStatus.CANCELED)

    def _handle_subscription_expired(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        if not self._current_ref_matches(user, event):
            return _ignored(f"Stale subscription {event.correlation_ref}")
        return self._end_subscription(user, event, now, SubscriptionStatus.EXPIRED)

    def _handle_invoice_payment_succeeded(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        if not self._current_ref_matches(user, event):
            return _ignored(f"Stale subscription {event.correlation_ref}")
        if user.subscription_status == SubscriptionStatus.PENDING:
            return _ignored(f"Subscription {event.correlation_ref} not activated yet")

        if user.plan == Plan.STARTER:
            user.credits = credit_grant(Plan.STARTER)
            user.monthly_prompts_used = 0
            user.last_monthly_reset = _advance(user.last_monthly_reset, now)

        for field in ('current_period_start', 'current_period_end'):
            value = getattr(event, field, None)
            if value is not None:
                setattr(user, field, value)

        user.last_payment_date = now
        if user.subscription_status == SubscriptionStatus.PAST_DUE:
            user.subscription_status = SubscriptionStatus.ACTIVE
        return _applied(f"Renewal payment recorded for {user.plan.value}")

    def _handle_invoice_payment_failed(self, user: User, event: WebhookEvent, now: datetime) -> Transition:
        if not self._current_ref_matches(user, event):
            return _ignored(f"Stale subscription {event.correlation_ref}")
        if user.subscription_status == SubscriptionStatus.PENDING:
            return _ignored(f"Subscription {event.correlation_ref} not activated yet")
        user.subscription_status = SubscriptionStatus.PAST_DUE
        return _applied('Renewal payment failed, subscription past due', 'payment_failed')

    # Side effects

    def _record_history(self, user: User, event: WebhookEvent, event_type: EventType, now: datetime) -> None:
        if self.history_db is None:
            return
        try:
            history = SubscriptionHistory(
                user_id=user.id,
                event_type=event_type.value,
                plan=user.plan.value,
                amount=event.amount or 0.0,
                status=user.subscription_status.value,
                provider=event.provider.value,
                external_event_id=event.external_event_id,
                event_time=now,
                metadata={'correlation_ref': event.correlation_ref, 'currency': event.currency}
            )
            self.history_db.add_subscription_history(history)
        except Exception as e:
            logger.error(f"Error recording history for {event.external_event_id}: {str(e)}")

    def _notify(self, notification: Optional[str], user: User, event: WebhookEvent) -> None:
        if not notification or self.notifier is None:
            return
        context: Dict[str, Any] = {
            'plan': user.plan.value,
            'amount': event.amount,
            'currency': event.currency,
            'plan_end_date': user.plan_end_date,
            'provider': event.provider.value
        }
        try:
            self.notifier.notify(notification, user, context)
        except Exception as e:
            logger.error(f"Error sending {notification} notification to user {user.id}: {str(e)}")
