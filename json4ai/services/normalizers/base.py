"""
Common shape of a provider webhook normalizer.

A normalizer owns everything provider-specific: signature verification
over the raw body, and the mapping from the provider payload to a
OneTimeOrderEvent or RecurringSubscriptionEvent. Payloads that carry
nothing the reconciler acts on normalize to None.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union
import json
import logging

from json4ai.core.error_handler import MalformedEventError
from json4ai.core.models import OneTimeOrderEvent, RecurringSubscriptionEvent, PaymentProvider
from json4ai.utils.helpers import to_datetime, utcnow

logger = logging.getLogger(__name__)

Event = Union[OneTimeOrderEvent, RecurringSubscriptionEvent]


def get_header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup"""
    if not headers:
        return None
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def to_bytes(payload: Union[str, bytes]) -> bytes:
    if isinstance(payload, bytes):
        return payload
    return payload.encode('utf-8')


def event_time(*candidates: Any) -> datetime:
    """First timestamp that parses, else now"""
    for candidate in candidates:
        value = to_datetime(candidate)
        if value is not None:
            return value
    return utcnow()


def cents_to_amount(value: Any) -> Optional[float]:
    if value is None:
        return None
    return round(float(value) / 100, 2)


class WebhookNormalizer(ABC):
    provider: PaymentProvider

    def parse(self, payload: Union[str, bytes], headers: Mapping[str, str]) -> Optional[Event]:
        """
        Verify and normalize one delivery.

        Raises:
            MalformedEventError: if the body is not a JSON object
            WebhookVerificationError: if the signature check fails
        """
        raw = to_bytes(payload)
        # Parse first so garbage bodies are reported as malformed, not as forged
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedEventError(f"Invalid {self.provider.value} payload", details=str(e))
        if not isinstance(data, dict):
            raise MalformedEventError(f"Invalid {self.provider.value} payload")

        self.verify(raw, headers, data)
        return self.normalize(data)

    @abstractmethod
    def verify(self, raw: bytes, headers: Mapping[str, str], data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def normalize(self, data: Dict[str, Any]) -> Optional[Event]:
        ...
