from typing import List, Optional, Dict, Any, Union, Literal, Annotated
from datetime import datetime, timedelta
from enum import Enum
from pydantic import BaseModel, Field, TypeAdapter, field_validator
from uuid import uuid4

from json4ai.utils.helpers import utcnow, ensure_utc

# Stored in place of a credit balance for plans that are never decremented
UNLIMITED_CREDITS = float('inf')

# Oldest ids are dropped past this many; providers stop redelivering long before
MAX_PROCESSED_EVENT_IDS = 1000


class Plan(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PREMIUM = "premium"


class SubscriptionStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    CASHFREE = "cashfree"


class EventType(str, Enum):
    ORDER_CREATED = "order.created"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_DROPPED = "payment.dropped"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class ExternalRef(BaseModel):
    """Provider-side subscription used to correlate recurring webhooks"""
    provider: PaymentProvider
    external_id: str


class User(BaseModel):
    """Subscriber record: plan, credit balance and usage counters"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    email: str
    first_name: str = ""
    last_name: str = ""

    plan: Plan = Plan.FREE
    credits: Union[int, float] = 3
    daily_prompts_used: int = 0
    monthly_prompts_used: int = 0
    total_prompts_used: int = 0
    last_free_reset: datetime = Field(default_factory=utcnow)
    last_monthly_reset: datetime = Field(default_factory=utcnow)

    # One-time purchase window
    plan_start_date: Optional[datetime] = None
    plan_end_date: Optional[datetime] = None
    plan_ending_notified_at: Optional[datetime] = None

    # Recurring subscription
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    external_subscription_ref: Optional[ExternalRef] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    pending_order_ref: Optional[str] = None
    pending_order_plan: Optional[Plan] = None
    pending_order_created_at: Optional[datetime] = None

    processed_event_ids: List[str] = Field(default_factory=list)

    last_payment_date: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @field_validator('email')
    @classmethod
    def _lowercase_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator(
        'last_free_reset', 'last_monthly_reset', 'plan_start_date', 'plan_end_date', 'plan_ending_notified_at',
        'current_period_start', 'current_period_end', 'pending_order_created_at',
        'last_payment_date', 'last_activity', 'created_at', 'updated_at'
    )
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_unlimited(self) -> bool:
        return self.plan == Plan.PREMIUM

    @property
    def has_active_recurring(self) -> bool:
        return (self.external_subscription_ref is not None and
                self.subscription_status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE))

    def has_active_one_time_plan(self, now: datetime) -> bool:
        return (self.plan != Plan.FREE and self.plan_end_date is not None
                and self.plan_end_date > ensure_utc(now))

    def has_processed(self, event_id: str) -> bool:
        return event_id in self.processed_event_ids

    def mark_processed(self, event_id: str) -> None:
        if event_id not in self.processed_event_ids:
            self.processed_event_ids.append(event_id)
        if len(self.processed_event_ids) > MAX_PROCESSED_EVENT_IDS:
            self.processed_event_ids = self.processed_event_ids[-MAX_PROCESSED_EVENT_IDS:]

    def clear_pending_order(self) -> None:
        self.pending_order_ref = None
        self.pending_order_plan = None
        self.pending_order_created_at = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a document for storage; datetimes stay native."""
        data = self.model_dump()
        data['plan'] = self.plan.value
        data['subscription_status'] = self.subscription_status.value
        data['pending_order_plan'] = self.pending_order_plan.value if self.pending_order_plan else None
        if self.external_subscription_ref:
            data['external_subscription_ref'] = {
                'provider': self.external_subscription_ref.provider.value,
                'external_id': self.external_subscription_ref.external_id
            }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> 'User':
        """Create a user from a stored document."""
        data = dict(data)
        if doc_id:
            data['id'] = doc_id
        return cls(**data)


class PromptRecord(BaseModel):
    """Generated prompt; purged by the store's TTL policy on expires_at"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    input_text: str
    generated: Dict[str, Any] = Field(default_factory=dict)
    quality: str = "standard"
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @classmethod
    def create(cls, user_id: str, input_text: str, generated: Dict[str, Any],
               quality: str = "standard", retention_hours: int = 24,
               now: Optional[datetime] = None) -> 'PromptRecord':
        created = ensure_utc(now) if now else utcnow()
        return cls(
            user_id=user_id,
            input_text=input_text,
            generated=generated,
            quality=quality,
            created_at=created,
            expires_at=created + timedelta(hours=retention_hours)
        )


class WebhookEvent(BaseModel):
    """Provider-agnostic webhook event consumed by the reconciler"""
    provider: PaymentProvider
    external_event_id: Optional[str] = None
    event_type: str
    correlation_ref: Optional[str] = None
    plan_identifier: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    user_id: Optional[str] = None

    @field_validator('timestamp')
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class OneTimeOrderEvent(WebhookEvent):
    kind: Literal['one_time'] = 'one_time'


class RecurringSubscriptionEvent(WebhookEvent):
    kind: Literal['recurring'] = 'recurring'
    subscription_status: Optional[SubscriptionStatus] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None


NormalizedEvent = Annotated[
    Union[OneTimeOrderEvent, RecurringSubscriptionEvent],
    Field(discriminator='kind')
]

_event_adapter = TypeAdapter(NormalizedEvent)


def parse_event(data: Dict[str, Any]) -> Union[OneTimeOrderEvent, RecurringSubscriptionEvent]:
    """Build a normalized event from a plain dict carrying a 'kind' tag."""
    return _event_adapter.validate_python(data)
