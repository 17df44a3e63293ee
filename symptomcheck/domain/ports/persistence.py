from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional, Protocol

from ..models import ClaimOutcome, PaymentProvider, User


class SubscriptionStore(Protocol):
    """Narrow read/update access to the user subscription record."""

    def get(self, user_id: int) -> Optional[User]:
        ...

    def update(self, user_id: int, fields: Mapping[str, Any]) -> User:
        ...

    def find_by_provider_subscription(
        self, provider: PaymentProvider, provider_subscription_id: str
    ) -> Optional[User]:
        ...

    def find_by_provider_customer(
        self, provider: PaymentProvider, provider_customer_id: str
    ) -> Optional[User]:
        ...

    def list_stale(self, reconciled_before: datetime, limit: int) -> List[User]:
        ...


class UsageStore(Protocol):
    """Rolling-window counter kept on the user record."""

    def increment_usage(self, user_id: int, now: datetime, window_days: int) -> User:
        ...

    def refund_usage(self, user_id: int, window_start: datetime) -> None:
        ...


class WebhookEventStore(Protocol):
    """Dedup set for provider webhook deliveries."""

    def claim_event(
        self,
        provider: PaymentProvider,
        event_id: str,
        event_type: str,
        now: datetime,
        lease_seconds: int,
    ) -> ClaimOutcome:
        ...

    def complete_event(self, provider: PaymentProvider, event_id: str, now: datetime) -> None:
        ...

    def release_event(self, provider: PaymentProvider, event_id: str) -> None:
        ...


class PersistenceGateway(SubscriptionStore, UsageStore, WebhookEventStore, Protocol):
    """Composite gateway combining every persistence concern used by the app."""

    def close(self) -> None:
        ...
