"""Webhook envelope and claim outcome models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .subscription import PaymentProvider, ProviderSubscriptionView


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    ONE_TIME_PAYMENT_SUCCEEDED = "one_time_payment_succeeded"
    UNRECOGNIZED = "unrecognized"


SUBSCRIPTION_SHAPED_EVENTS = frozenset(
    {
        EventKind.SUBSCRIPTION_CREATED,
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_DELETED,
    }
)


@dataclass(frozen=True, slots=True)
class ProviderEvent:
    """
    A verified webhook delivery normalised by a provider adapter.

    ``subscription_view`` is only populated for subscription-shaped events;
    other kinds carry the identifiers needed to fetch the subscription.
    """

    provider: PaymentProvider
    event_id: str
    event_type: str
    kind: EventKind
    subscription_view: Optional[ProviderSubscriptionView] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    user_reference: Optional[str] = None


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    ALREADY_PROCESSED = "already_processed"
    IN_FLIGHT = "in_flight"

