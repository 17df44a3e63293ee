"""Subscription domain values shared by adapters, resolver and persistence."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


PENDING_PREFIX = "pending:"


class PaymentProvider(str, Enum):
    NONE = "none"
    STRIPE = "stripe"
    PAYPAL = "paypal"


class SubscriptionStatus(str, Enum):
    """Canonical, provider-agnostic subscription state stored on the user."""

    INACTIVE = "inactive"
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


# Raw statuses after adapter normalisation (Stripe vocabulary).
RAW_ACTIVE = "active"
RAW_TRIALING = "trialing"
RAW_PAST_DUE = "past_due"
RAW_INCOMPLETE = "incomplete"
RAW_INCOMPLETE_EXPIRED = "incomplete_expired"
RAW_CANCELED = "canceled"
RAW_UNPAID = "unpaid"
RAW_PAUSED = "paused"

TERMINAL_RAW_STATUSES = frozenset({RAW_CANCELED, RAW_INCOMPLETE_EXPIRED})


class BillingInterval(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


@dataclass(frozen=True, slots=True)
class ProviderSubscriptionView:
    """
    A provider's subscription object normalised into one shape.

    Attributes:
        provider_subscription_id: Provider subscription identifier
        raw_status: Provider status translated into the Stripe vocabulary
        cancel_at_period_end: Whether the subscription will not renew
        current_period_end: End of the paid period, when the provider reports it
        plan_name: Display name of the plan, empty when unknown
        customer_id: Provider customer identifier
        billing_cycle_anchor: Start of the current cycle, used when the period end is missing
        billing_interval: Length of one billing cycle
        user_reference: User id the checkout embedded in the provider object
    """

    provider_subscription_id: str
    raw_status: str
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    plan_name: str = ""
    customer_id: Optional[str] = None
    billing_cycle_anchor: Optional[datetime] = None
    billing_interval: BillingInterval = BillingInterval.MONTH
    user_reference: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.raw_status in TERMINAL_RAW_STATUSES


@dataclass(frozen=True, slots=True)
class CanonicalStatus:
    """Subscription state as reported to callers."""

    status: SubscriptionStatus
    is_premium: bool
    access_until: Optional[datetime]
    plan_name: Optional[str]
    cancel_at_period_end: bool = False
    payment_provider: PaymentProvider = PaymentProvider.NONE
    stale: bool = False


@dataclass(frozen=True, slots=True)
class SessionHandle:
    """Checkout session returned by a provider adapter."""

    session_id: str
    url: str
    customer_id: Optional[str] = None
    subscription_reference: Optional[str] = None


def is_pending_reference(value: Optional[str]) -> bool:
    return value is not None and value.startswith(PENDING_PREFIX)
