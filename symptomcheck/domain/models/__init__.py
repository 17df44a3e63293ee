"""Domain models for the SymptomCheck billing engine."""

from .subscription import (
    BillingInterval,
    CanonicalStatus,
    PaymentProvider,
    ProviderSubscriptionView,
    SessionHandle,
    SubscriptionStatus,
)
from .user import User
from .webhook_event import ClaimOutcome, EventKind, ProviderEvent

__all__ = [
    "BillingInterval",
    "CanonicalStatus",
    "ClaimOutcome",
    "EventKind",
    "PaymentProvider",
    "ProviderEvent",
    "ProviderSubscriptionView",
    "SessionHandle",
    "SubscriptionStatus",
    "User",
]
