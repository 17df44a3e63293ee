"""HTTP-level tests for the FastAPI routers.

Covers:
- Bearer token handling
- Subscription status, cancel, reactivate and checkout responses
- Error mapping for retryable and conflicting commands
- Webhook status codes for each ingestion outcome
- Quota gating of symptom analysis and the health report
"""

from __future__ import annotations

from datetime import datetime, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from conftest import active_view
from symptomcheck.core.app_factory import create_application
from symptomcheck.core.config import Settings
from symptomcheck.core.container import ApplicationContainer
from symptomcheck.domain.errors import InvalidSignatureError, TransientAdapterError
from symptomcheck.domain.models import EventKind, PaymentProvider, ProviderEvent, SubscriptionStatus
from symptomcheck.services.symptom_analyzer import AnalysisFailedError

SECRET = "test-secret"
FAR_FUTURE = datetime(2099, 1, 1, tzinfo=timezone.utc)


class FakeAnalyzer:
    def __init__(self, configured: bool = True) -> None:
        self._configured = configured
        self.calls = []
        self.error = None

    @property
    def configured(self) -> bool:
        return self._configured

    async def analyze(self, symptoms):
        self.calls.append(symptoms)
        if self.error is not None:
            raise self.error
        return {"summary": "Likely a common cold.", "urgencyLevel": "low"}


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def settings(monkeypatch, tmp_path):
    monkeypatch.setenv("AUTH_TOKEN_SECRET", SECRET)
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "api.db"))
    return Settings()


@pytest.fixture
def client(settings, persistence, registry, reconciliation, ingestion, quota, analyzer):
    app = create_application(settings)
    app.state.container = ApplicationContainer(
        settings=settings,
        persistence=persistence,
        providers=registry,
        reconciliation_service=reconciliation,
        webhook_ingestion_service=ingestion,
        usage_quota_service=quota,
        symptom_analyzer=analyzer,
    )
    return TestClient(app)


def _auth(user_id: int, secret: str = SECRET) -> dict:
    token = jwt.encode({"user_id": user_id}, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    def test_missing_token(self, client):
        assert client.get("/subscription").status_code == 401

    def test_wrong_secret(self, client, subscriber):
        response = client.get("/subscription", headers=_auth(subscriber.id, secret="other"))
        assert response.status_code == 401

    def test_sub_claim_is_accepted(self, client, subscriber, adapter):
        adapter.put(active_view())
        token = jwt.encode({"sub": str(subscriber.id)}, SECRET, algorithm="HS256")

        response = client.get("/subscription", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200


# ---------------------------------------------------------------------------
# Subscription endpoints
# ---------------------------------------------------------------------------


class TestSubscriptionRoutes:
    def test_status_reconciles(self, client, subscriber, adapter):
        adapter.put(active_view())

        body = client.get("/subscription", headers=_auth(subscriber.id)).json()

        assert body["status"] == "active"
        assert body["is_premium"] is True
        assert body["payment_provider"] == "stripe"
        assert body["stale"] is False

    def test_status_during_outage_is_stale(self, client, subscriber, adapter):
        adapter.errors["fetch"] = TransientAdapterError("timeout")

        response = client.get("/subscription", headers=_auth(subscriber.id))

        assert response.status_code == 200
        assert response.json()["stale"] is True

    def test_unknown_user(self, client):
        assert client.get("/subscription", headers=_auth(404)).status_code == 404

    def test_cancel_then_reactivate(self, client, subscriber, adapter):
        adapter.put(active_view())
        client.get("/subscription", headers=_auth(subscriber.id))

        canceled = client.post("/subscription/cancel", headers=_auth(subscriber.id)).json()
        reactivated = client.post("/subscription/reactivate", headers=_auth(subscriber.id)).json()

        assert canceled["status"] == "canceled"
        assert canceled["cancel_at_period_end"] is True
        assert canceled["is_premium"] is True
        assert reactivated["status"] == "active"
        assert reactivated["cancel_at_period_end"] is False

    def test_cancel_failure_is_retryable(self, client, subscriber, adapter):
        adapter.put(active_view())
        client.get("/subscription", headers=_auth(subscriber.id))
        adapter.errors["cancel"] = TransientAdapterError("timeout")

        response = client.post("/subscription/cancel", headers=_auth(subscriber.id))

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "retryable"

    def test_reactivate_active_subscription_conflicts(self, client, subscriber, adapter):
        adapter.put(active_view())
        client.get("/subscription", headers=_auth(subscriber.id))

        response = client.post("/subscription/reactivate", headers=_auth(subscriber.id))

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "invalid_state"

    def test_cancel_without_subscription(self, client, persistence):
        persistence.create_user(2)
        assert client.post("/subscription/cancel", headers=_auth(2)).status_code == 404

    def test_checkout(self, client, persistence):
        persistence.create_user(2, "new@example.com")

        response = client.post("/subscription/checkout", json={"provider": "stripe"}, headers=_auth(2))

        assert response.status_code == 200
        assert response.json() == {
            "session_id": "cs_1",
            "url": "https://checkout.example/cs_1",
            "provider": "stripe",
        }
        assert persistence.get(2).provider_subscription_id == "pending:cs_1"

    def test_checkout_with_unconfigured_provider(self, client, persistence):
        persistence.create_user(2)

        response = client.post("/subscription/checkout", json={"provider": "paypal"}, headers=_auth(2))

        assert response.status_code == 503

    def test_confirm_checkout_links_subscription(self, client, persistence, adapter):
        persistence.create_user(2)
        client.post("/subscription/checkout", json={"provider": "stripe"}, headers=_auth(2))
        adapter.put(active_view("sub_2", customer_id="cus_2", period_end=FAR_FUTURE))

        response = client.post(
            "/subscription/checkout/confirm",
            json={"provider_subscription_id": "sub_2"},
            headers=_auth(2),
        )

        assert response.status_code == 200
        assert response.json()["is_premium"] is True
        assert persistence.get(2).provider_subscription_id == "sub_2"

    def test_payment_method_update(self, client, subscriber, adapter):
        adapter.put(active_view())
        client.get("/subscription", headers=_auth(subscriber.id))

        response = client.get("/subscription/payment-method-update", headers=_auth(subscriber.id))

        assert response.json() == {"url": "https://billing.example/cus_1"}


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def _delivery(adapter, event_id: str) -> bytes:
    view = active_view()
    body = event_id.encode()
    adapter.events[body] = ProviderEvent(
        provider=PaymentProvider.STRIPE,
        event_id=event_id,
        event_type="customer.subscription.updated",
        kind=EventKind.SUBSCRIPTION_UPDATED,
        subscription_view=view,
        subscription_id=view.provider_subscription_id,
        customer_id=view.customer_id,
    )
    return body


class TestWebhookRoute:
    def test_delivery_is_applied(self, client, subscriber, adapter, persistence):
        body = _delivery(adapter, "evt_1")

        response = client.post("/webhooks/stripe", content=body, headers={"Stripe-Signature": "s"})

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "event_id": "evt_1",
            "duplicate": False,
            "ignored": False,
            "user_id": subscriber.id,
        }
        assert persistence.get(subscriber.id).subscription_status == SubscriptionStatus.ACTIVE

    def test_redelivery_is_acknowledged_as_duplicate(self, client, subscriber, adapter):
        body = _delivery(adapter, "evt_1")
        client.post("/webhooks/stripe", content=body)

        response = client.post("/webhooks/stripe", content=body)

        assert response.status_code == 200
        assert response.json()["duplicate"] is True

    def test_bad_signature(self, client, adapter):
        adapter.errors["parse"] = InvalidSignatureError("bad signature")
        assert client.post("/webhooks/stripe", content=b"{}").status_code == 400

    def test_unconfigured_provider(self, client):
        assert client.post("/webhooks/paypal", content=b"{}").status_code == 503

    @pytest.mark.parametrize("provider", ["none", "bitcoin"])
    def test_unknown_provider(self, client, provider):
        assert client.post(f"/webhooks/{provider}", content=b"{}").status_code == 404

    def test_provider_outage_asks_for_redelivery(self, client, subscriber, adapter):
        body = b"evt_2"
        adapter.events[body] = ProviderEvent(
            provider=PaymentProvider.STRIPE,
            event_id="evt_2",
            event_type="invoice.paid",
            kind=EventKind.INVOICE_PAYMENT_SUCCEEDED,
            subscription_id="sub_1",
            customer_id="cus_1",
        )
        adapter.errors["fetch"] = TransientAdapterError("timeout")

        assert client.post("/webhooks/stripe", content=body).status_code == 503


# ---------------------------------------------------------------------------
# Analysis and health
# ---------------------------------------------------------------------------


class TestAnalysisRoutes:
    def test_free_user_is_gated_after_limit(self, client, persistence, analyzer):
        persistence.create_user(2)
        payload = {"symptoms": "sore throat and a mild fever"}

        responses = [client.post("/api/analyze-symptoms", json=payload, headers=_auth(2)) for _ in range(4)]

        assert [r.status_code for r in responses] == [200, 200, 200, 402]
        assert responses[0].json()["analysis"]["urgencyLevel"] == "low"
        assert responses[2].json()["usage"]["remaining"] == 0
        assert responses[3].json()["detail"]["code"] == "quota_exhausted"
        assert len(analyzer.calls) == 3

    def test_premium_user_is_not_counted(self, client, subscriber, adapter, persistence):
        adapter.put(active_view(period_end=FAR_FUTURE))
        payload = {"symptoms": "persistent headache"}

        for _ in range(5):
            response = client.post("/api/analyze-symptoms", json=payload, headers=_auth(subscriber.id))
            assert response.status_code == 200

        assert response.json()["usage"]["is_premium"] is True
        assert persistence.get(subscriber.id).analysis_count == 0

    def test_short_input_is_rejected(self, client, persistence):
        persistence.create_user(2)
        response = client.post("/api/analyze-symptoms", json={"symptoms": "ow"}, headers=_auth(2))
        assert response.status_code == 422

    def test_unconfigured_analyzer(self, client, persistence, analyzer):
        persistence.create_user(2)
        analyzer._configured = False

        response = client.post("/api/analyze-symptoms", json={"symptoms": "cough"}, headers=_auth(2))

        assert response.status_code == 503

    def test_failed_analysis_does_not_use_quota(self, client, persistence, analyzer):
        persistence.create_user(2)
        analyzer.error = AnalysisFailedError("upstream timeout")

        response = client.post("/api/analyze-symptoms", json={"symptoms": "cough"}, headers=_auth(2))

        assert response.status_code == 502
        assert persistence.get(2).analysis_count == 0

        analyzer.error = None
        for _ in range(3):
            client.post("/api/analyze-symptoms", json={"symptoms": "cough"}, headers=_auth(2))
        assert persistence.get(2).analysis_count == 3

    def test_rejected_input_does_not_use_quota(self, client, persistence, analyzer):
        persistence.create_user(2)
        analyzer.error = ValueError("Cannot analyse an empty symptom description.")

        response = client.post("/api/analyze-symptoms", json={"symptoms": "   "}, headers=_auth(2))

        assert response.status_code == 400
        assert persistence.get(2).analysis_count == 0

    def test_usage_report(self, client, persistence):
        persistence.create_user(2)
        client.post("/api/analyze-symptoms", json={"symptoms": "cough"}, headers=_auth(2))

        body = client.get("/api/usage", headers=_auth(2)).json()

        assert body["count"] == 1
        assert body["limit"] == 3
        assert body["remaining"] == 2


class TestHealth:
    def test_reports_provider_availability(self, client):
        body = client.get("/health").json()

        assert body["ok"] is True
        assert body["providers"]["stripe"] == {"available": True, "mode": "test"}
        assert body["providers"]["paypal"]["available"] is False
        assert body["analyzer"] is True
