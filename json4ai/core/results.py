"""
Typed outcomes returned by the usage gate and the reconciler.

Callers (route and webhook handlers) decide the HTTP status and response
body from these; nothing here raises for an expected business outcome.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from json4ai.config.environment import Environment


class GateFailure(str, Enum):
    NOT_ACTIVE = "not_active"
    NO_CREDITS_REMAINING = "no_credits_remaining"
    USER_NOT_FOUND = "user_not_found"
    RETRY_LATER = "retry_later"


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ORPHAN = "orphan"
    MALFORMED = "malformed"
    IGNORED = "ignored"
    REJECTED = "rejected"
    RETRY_LATER = "retry_later"


def _display_credits(credits: Union[int, float, None]) -> Union[int, str, None]:
    if credits is None:
        return None
    if credits == float('inf'):
        return 'Unlimited'
    return int(credits)


@dataclass
class ConsumeResult:
    ok: bool
    credits_remaining: Union[int, float, None] = None
    failure: Optional[GateFailure] = None


@dataclass
class GateResult:
    ok: bool
    credits_remaining: Union[int, float, None] = None
    failure: Optional[GateFailure] = None
    message: str = ""
    plan: Optional[str] = None
    daily_limit: Optional[int] = None
    remaining_credits: Union[int, float, None] = None
    plan_end_date: Optional[datetime] = None

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        if self.failure in (GateFailure.NOT_ACTIVE, GateFailure.NO_CREDITS_REMAINING):
            return 402
        if self.failure == GateFailure.USER_NOT_FOUND:
            return 404
        return 503

    def to_response(self) -> Dict[str, Any]:
        """Response body in the shape the frontend expects"""
        if self.ok:
            return {
                'success': True,
                'currentPlan': self.plan,
                'creditsRemaining': _display_credits(self.credits_remaining)
            }
        body = {
            'message': self.message,
            'currentPlan': self.plan
        }
        if self.failure == GateFailure.NOT_ACTIVE:
            body['planEndDate'] = self.plan_end_date.isoformat() if self.plan_end_date else None
            body['upgradeUrl'] = Environment.UPGRADE_URL
        elif self.failure == GateFailure.NO_CREDITS_REMAINING:
            body['dailyLimit'] = self.daily_limit
            body['remainingCredits'] = _display_credits(self.remaining_credits)
            body['upgradeUrl'] = Environment.UPGRADE_URL
        return body


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    event_id: Optional[str] = None
    user_id: Optional[str] = None
    message: str = ""

    @property
    def should_ack(self) -> bool:
        """Whether the provider should be told the delivery succeeded"""
        return self.outcome != ReconcileOutcome.RETRY_LATER

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outcome': self.outcome.value,
            'event_id': self.event_id,
            'user_id': self.user_id,
            'message': self.message
        }
