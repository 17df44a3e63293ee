"""Shared fixtures: a real SQLite store, an in-memory provider and a movable clock."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional

import pytest

from symptomcheck.domain.errors import SubscriptionNotFoundError
from symptomcheck.domain.models import (
    PaymentProvider,
    ProviderEvent,
    ProviderSubscriptionView,
    SessionHandle,
    User,
)
from symptomcheck.domain.models.subscription import PENDING_PREFIX
from symptomcheck.infrastructure.persistence.sqlite import SQLitePersistence
from symptomcheck.infrastructure.providers.registry import ProviderRegistry
from symptomcheck.services.reconciliation_service import ReconciliationService
from symptomcheck.services.usage_quota import UsageQuotaService
from symptomcheck.services.webhook_ingestion import WebhookIngestionService

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(days=30)


class Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAdapter:
    """In-memory provider whose subscriptions are edited directly by tests."""

    def __init__(self, provider: PaymentProvider = PaymentProvider.STRIPE) -> None:
        self.provider = provider
        self.mode = "test"
        self.subscriptions: Dict[str, ProviderSubscriptionView] = {}
        self.events: Dict[bytes, ProviderEvent] = {}
        self.calls: List[tuple] = []
        self.errors: Dict[str, Exception] = {}
        self._sessions = 0

    def _maybe_fail(self, operation: str) -> None:
        error = self.errors.get(operation)
        if error is not None:
            raise error

    def put(self, view: ProviderSubscriptionView) -> ProviderSubscriptionView:
        self.subscriptions[view.provider_subscription_id] = view
        return view

    def fetch_subscription(self, provider_subscription_id: str) -> ProviderSubscriptionView:
        self.calls.append(("fetch", provider_subscription_id))
        self._maybe_fail("fetch")
        try:
            return self.subscriptions[provider_subscription_id]
        except KeyError as exc:
            raise SubscriptionNotFoundError(provider_subscription_id) from exc

    def create_checkout_session(self, user: User) -> SessionHandle:
        self.calls.append(("checkout", user.id))
        self._maybe_fail("checkout")
        self._sessions += 1
        session_id = f"cs_{self._sessions}"
        return SessionHandle(
            session_id=session_id,
            url=f"https://checkout.example/{session_id}",
            customer_id=user.provider_customer_id or f"cus_{user.id}",
            subscription_reference=f"{PENDING_PREFIX}{session_id}",
        )

    def cancel_at_period_end(self, provider_subscription_id: str) -> None:
        self.calls.append(("cancel", provider_subscription_id))
        self._maybe_fail("cancel")
        view = self.fetch_subscription(provider_subscription_id)
        self.put(replace(view, cancel_at_period_end=True))

    def clear_cancellation(self, provider_subscription_id: str) -> None:
        self.calls.append(("reactivate", provider_subscription_id))
        self._maybe_fail("reactivate")
        view = self.fetch_subscription(provider_subscription_id)
        self.put(replace(view, cancel_at_period_end=False))

    def update_payment_method(self, customer_id: str) -> str:
        self.calls.append(("portal", customer_id))
        self._maybe_fail("portal")
        return f"https://billing.example/{customer_id}"

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        self.calls.append(("parse", raw_body))
        self._maybe_fail("parse")
        return self.events[raw_body]

    def network_calls(self) -> List[tuple]:
        return [call for call in self.calls if call[0] != "parse"]


def active_view(
    subscription_id: str = "sub_1",
    *,
    raw_status: str = "active",
    period_end: Optional[datetime] = T1,
    cancel_at_period_end: bool = False,
    customer_id: str = "cus_1",
    plan_name: str = "Premium Monthly",
    user_reference: Optional[str] = None,
) -> ProviderSubscriptionView:
    return ProviderSubscriptionView(
        provider_subscription_id=subscription_id,
        raw_status=raw_status,
        cancel_at_period_end=cancel_at_period_end,
        current_period_end=period_end,
        plan_name=plan_name,
        customer_id=customer_id,
        user_reference=user_reference,
    )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def persistence(tmp_path):
    store = SQLitePersistence(tmp_path / "billing.db")
    yield store
    store.close()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def registry(adapter: FakeAdapter) -> ProviderRegistry:
    return ProviderRegistry(
        {PaymentProvider.STRIPE: adapter},
        {PaymentProvider.PAYPAL: "missing PAYPAL_CLIENT_ID"},
    )


@pytest.fixture
def reconciliation(persistence, registry, clock) -> ReconciliationService:
    return ReconciliationService(persistence, registry, staleness_seconds=300, clock=clock)


@pytest.fixture
def ingestion(persistence, registry, reconciliation, clock) -> WebhookIngestionService:
    return WebhookIngestionService(
        persistence, persistence, registry, reconciliation, lease_seconds=300, clock=clock
    )


@pytest.fixture
def quota(persistence) -> UsageQuotaService:
    return UsageQuotaService(persistence, persistence, free_limit=3)


@pytest.fixture
def subscriber(persistence) -> User:
    """User 1, linked to Stripe subscription ``sub_1`` but never reconciled."""
    persistence.create_user(1, "patient@example.com")
    return persistence.update(
        1,
        {
            "payment_provider": PaymentProvider.STRIPE,
            "provider_customer_id": "cus_1",
            "provider_subscription_id": "sub_1",
        },
    )
