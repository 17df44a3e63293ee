"""Pydantic schemas for subscription API endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ....domain.models import CanonicalStatus, PaymentProvider, SubscriptionStatus


class SubscriptionStatusResponse(BaseModel):
    """Canonical subscription state for the current user."""

    status: SubscriptionStatus
    is_premium: bool
    access_until: Optional[datetime]
    plan_name: Optional[str]
    cancel_at_period_end: bool
    payment_provider: PaymentProvider
    stale: bool = False

    @classmethod
    def from_status(cls, value: CanonicalStatus) -> "SubscriptionStatusResponse":
        return cls(
            status=value.status,
            is_premium=value.is_premium,
            access_until=value.access_until,
            plan_name=value.plan_name,
            cancel_at_period_end=value.cancel_at_period_end,
            payment_provider=value.payment_provider,
            stale=value.stale,
        )


class CheckoutRequest(BaseModel):
    provider: PaymentProvider


class CheckoutResponse(BaseModel):
    session_id: str
    url: str
    provider: PaymentProvider


class ConfirmCheckoutRequest(BaseModel):
    provider_subscription_id: str = Field(min_length=1)


class PaymentMethodUpdateResponse(BaseModel):
    url: str
