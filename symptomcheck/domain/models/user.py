"""User record carrying the subscription and usage fields the billing engine owns."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .subscription import (
    CanonicalStatus,
    PaymentProvider,
    SubscriptionStatus,
    is_pending_reference,
)


@dataclass(slots=True)
class User:
    """
    User entity as seen by the billing engine.

    Attributes:
        id: Identifier owned by the identity subsystem
        email: Contact address, forwarded to checkout
        payment_provider: Provider fixed at first checkout
        provider_customer_id: Customer id at the provider
        provider_subscription_id: Subscription id, or a pending placeholder
        subscription_status: Canonical status from the last resolver run
        is_premium: Premium flag from the last resolver run
        access_until: Last instant of premium capability
        plan_name: Display name of the plan
        last_reconciled_at: Timestamp of the last resolver run
        analysis_count: Free-tier actions used in the current window
        analysis_window_start: Start of the current 30 day usage window
        cancel_at_period_end: Whether the provider reported the plan will not renew
    """

    id: int
    email: Optional[str] = None
    payment_provider: PaymentProvider = PaymentProvider.NONE
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    is_premium: bool = False
    access_until: Optional[datetime] = None
    plan_name: Optional[str] = None
    last_reconciled_at: Optional[datetime] = None
    analysis_count: int = 0
    analysis_window_start: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def has_premium_access(self, now: datetime) -> bool:
        """Evaluate premium access at ``now`` rather than trusting the stored flag."""
        if self.subscription_status == SubscriptionStatus.ACTIVE:
            return True
        return self.access_until is not None and self.access_until > now

    def has_live_subscription(self) -> bool:
        return bool(self.provider_subscription_id) and not is_pending_reference(
            self.provider_subscription_id
        )

    def is_stale(self, now: datetime, threshold_seconds: int) -> bool:
        if self.last_reconciled_at is None:
            return True
        return (now - self.last_reconciled_at).total_seconds() >= threshold_seconds

    def canonical_status(self, now: datetime, *, stale: bool = False) -> CanonicalStatus:
        return CanonicalStatus(
            status=self.subscription_status,
            is_premium=self.has_premium_access(now),
            access_until=self.access_until,
            plan_name=self.plan_name,
            cancel_at_period_end=self.cancel_at_period_end,
            payment_provider=self.payment_provider,
            stale=stale,
        )

    def __repr__(self) -> str:
        return (
            f"<User id={self.id} provider={self.payment_provider.value} "
            f"status={self.subscription_status.value} premium={self.is_premium}>"
        )
