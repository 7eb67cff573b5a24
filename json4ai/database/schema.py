from datetime import datetime
from typing import Optional, Dict
from pydantic import BaseModel, Field

from json4ai.utils.helpers import utcnow


class SubscriptionHistory(BaseModel):
    user_id: str
    event_type: str  # normalized event type, e.g. 'subscription.activated'
    plan: str  # plan after the event was applied
    amount: float = 0.0
    status: str  # subscription status after the event was applied
    provider: Optional[str] = None
    external_event_id: Optional[str] = None
    event_time: datetime = Field(default_factory=utcnow)
    metadata: Optional[Dict] = None
