"""Tests for symptomcheck.infrastructure.providers.paypal_adapter

Covers:
- Status vocabulary mapping, including suspend-as-cancel
- OAuth token caching
- Subscription commands against the billing API
- Error classification (404, 4xx, 5xx)
- Webhook verification through the verify-webhook-signature API
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from symptomcheck.core.config import PayPalSettings
from symptomcheck.domain.errors import (
    InvalidSignatureError,
    SubscriptionNotFoundError,
    TerminalAdapterError,
    TransientAdapterError,
)
from symptomcheck.domain.models import EventKind, User
from symptomcheck.infrastructure.providers.paypal_adapter import PayPalAdapter
from symptomcheck.infrastructure.providers.retry import RetryConfig

SETTINGS = PayPalSettings(
    mode="sandbox",
    client_id="client",
    client_secret="secret",
    plan_id="P-PLAN",
    webhook_id="WH-ID",
    plan_name="Premium Monthly",
)

TRANSMISSION_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/cert.pem",
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-sig": "sig",
    "paypal-transmission-time": "2026-03-01T12:00:00Z",
}


def _resource(**overrides):
    payload = {
        "id": "I-SUB1",
        "status": "ACTIVE",
        "plan_id": "P-PLAN",
        "custom_id": "7",
        "start_time": "2026-02-01T12:00:00Z",
        "subscriber": {"payer_id": "PAYER1", "email_address": "p@example.com"},
        "billing_info": {
            "next_billing_time": "2026-04-01T10:00:00Z",
            "failed_payments_count": 0,
            "last_payment": {"time": "2026-03-01T10:00:00Z"},
        },
    }
    payload.update(overrides)
    return payload


class FakePayPal:
    """Routes requests to canned responses and records what was called."""

    def __init__(self):
        self.requests = []
        self.routes = {}
        self.token_requests = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 32400})
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
        if callable(route):
            return route(request)
        return route


@pytest.fixture
def paypal():
    return FakePayPal()


@pytest.fixture
def adapter(paypal):
    client = httpx.Client(base_url=SETTINGS.base_url, transport=httpx.MockTransport(paypal.handler))
    return PayPalAdapter(
        SETTINGS,
        success_url="https://app.example/profile?subscription=success",
        cancel_url="https://app.example/premium?subscription=canceled",
        retry_config=RetryConfig(max_retries=1, base_delay=0.01, jitter=False),
        http_client=client,
    )


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


class TestStatusMapping:
    def test_active(self, adapter):
        view = adapter.view_from_resource(_resource())

        assert view.raw_status == "active"
        assert view.cancel_at_period_end is False
        assert view.current_period_end == datetime(2026, 4, 1, 10, 0, tzinfo=timezone.utc)
        assert view.plan_name == "Premium Monthly"
        assert view.customer_id == "PAYER1"
        assert view.user_reference == "7"

    def test_suspended_without_failures_is_cancel_at_period_end(self, adapter):
        resource = _resource(status="SUSPENDED")
        resource["billing_info"].pop("next_billing_time")

        view = adapter.view_from_resource(resource)

        assert view.raw_status == "active"
        assert view.cancel_at_period_end is True
        assert view.current_period_end is None
        assert view.billing_cycle_anchor == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_suspended_after_failed_payments_is_past_due(self, adapter):
        resource = _resource(status="SUSPENDED")
        resource["billing_info"]["failed_payments_count"] = 2
        assert adapter.view_from_resource(resource).raw_status == "past_due"

    @pytest.mark.parametrize(
        ("status", "raw"),
        [
            ("APPROVAL_PENDING", "incomplete"),
            ("APPROVED", "incomplete"),
            ("CANCELLED", "canceled"),
            ("EXPIRED", "canceled"),
        ],
    )
    def test_other_statuses(self, adapter, status, raw):
        assert adapter.view_from_resource(_resource(status=status)).raw_status == raw

    def test_anchor_falls_back_to_start_time(self, adapter):
        resource = _resource(billing_info={})
        view = adapter.view_from_resource(resource)
        assert view.billing_cycle_anchor == datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)

    def test_foreign_plan_has_no_name(self, adapter):
        assert adapter.view_from_resource(_resource(plan_id="P-OTHER")).plan_name == ""


# ---------------------------------------------------------------------------
# Commands and transport
# ---------------------------------------------------------------------------


class TestCommands:
    def test_fetch_reuses_cached_token(self, adapter, paypal):
        paypal.routes[("GET", "/v1/billing/subscriptions/I-SUB1")] = httpx.Response(200, json=_resource())

        adapter.fetch_subscription("I-SUB1")
        adapter.fetch_subscription("I-SUB1")

        assert paypal.token_requests == 1
        assert paypal.requests[-1].headers["Authorization"] == "Bearer A21"

    def test_checkout_returns_approval_link(self, adapter, paypal):
        paypal.routes[("POST", "/v1/billing/subscriptions")] = httpx.Response(
            201,
            json={
                "id": "I-NEW",
                "status": "APPROVAL_PENDING",
                "links": [
                    {"rel": "approve", "href": "https://www.sandbox.paypal.com/webapps/billing?ba=1"},
                    {"rel": "self", "href": "https://api-m.sandbox.paypal.com/v1/billing/subscriptions/I-NEW"},
                ],
            },
        )

        handle = adapter.create_checkout_session(User(id=7, email="p@example.com"))

        body = json.loads(paypal.requests[-1].content)
        assert body["plan_id"] == "P-PLAN"
        assert body["custom_id"] == "7"
        assert body["subscriber"] == {"email_address": "p@example.com"}
        assert handle.subscription_reference == "I-NEW"
        assert handle.url.startswith("https://www.sandbox.paypal.com/")

    def test_cancel_suspends_and_reactivate_activates(self, adapter, paypal):
        paypal.routes[("POST", "/v1/billing/subscriptions/I-SUB1/suspend")] = httpx.Response(204)
        paypal.routes[("POST", "/v1/billing/subscriptions/I-SUB1/activate")] = httpx.Response(204)

        adapter.cancel_at_period_end("I-SUB1")
        adapter.clear_cancellation("I-SUB1")

        paths = [request.url.path for request in paypal.requests if "oauth2" not in request.url.path]
        assert paths == [
            "/v1/billing/subscriptions/I-SUB1/suspend",
            "/v1/billing/subscriptions/I-SUB1/activate",
        ]

    def test_request_body_is_sent_as_json(self, adapter, paypal):
        paypal.routes[("POST", "/v1/billing/subscriptions/I-SUB1/suspend")] = httpx.Response(204)

        adapter.cancel_at_period_end("I-SUB1")

        request = paypal.requests[-1]
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"reason": "Cancellation requested by subscriber"}

    def test_payment_method_update_points_at_autopay(self, adapter):
        assert adapter.update_payment_method("PAYER1") == "https://www.sandbox.paypal.com/myaccount/autopay/"

    def test_missing_subscription(self, adapter):
        with pytest.raises(SubscriptionNotFoundError):
            adapter.fetch_subscription("I-GONE")

    def test_server_errors_are_retried_then_transient(self, adapter, paypal):
        paypal.routes[("GET", "/v1/billing/subscriptions/I-SUB1")] = httpx.Response(503)

        with pytest.raises(TransientAdapterError):
            adapter.fetch_subscription("I-SUB1")

        fetches = [r for r in paypal.requests if r.url.path.endswith("I-SUB1")]
        assert len(fetches) == 2

    def test_client_errors_are_terminal(self, adapter, paypal):
        paypal.routes[("POST", "/v1/billing/subscriptions/I-SUB1/activate")] = httpx.Response(
            422, json={"name": "UNPROCESSABLE_ENTITY"}
        )

        with pytest.raises(TerminalAdapterError):
            adapter.clear_cancellation("I-SUB1")

    def test_timeouts_are_transient(self, adapter, paypal):
        def timeout(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        paypal.routes[("GET", "/v1/billing/subscriptions/I-SUB1")] = timeout

        with pytest.raises(TransientAdapterError):
            adapter.fetch_subscription("I-SUB1")


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class TestParseEvent:
    def _verify(self, paypal, status):
        paypal.routes[("POST", "/v1/notifications/verify-webhook-signature")] = httpx.Response(
            200, json={"verification_status": status}
        )

    def _body(self, event_type, resource):
        return json.dumps({"id": "WH-EVT-1", "event_type": event_type, "resource": resource}).encode()

    def test_missing_transmission_headers(self, adapter):
        with pytest.raises(InvalidSignatureError):
            adapter.parse_event(self._body("BILLING.SUBSCRIPTION.ACTIVATED", _resource()), {})

    def test_failed_verification(self, adapter, paypal):
        self._verify(paypal, "FAILURE")
        with pytest.raises(InvalidSignatureError):
            adapter.parse_event(self._body("BILLING.SUBSCRIPTION.ACTIVATED", _resource()), TRANSMISSION_HEADERS)

    def test_subscription_event(self, adapter, paypal):
        self._verify(paypal, "SUCCESS")

        event = adapter.parse_event(
            self._body("BILLING.SUBSCRIPTION.CANCELLED", _resource(status="CANCELLED")),
            TRANSMISSION_HEADERS,
        )

        verification = json.loads(paypal.requests[-1].content)
        assert verification["webhook_id"] == "WH-ID"
        assert verification["transmission_id"] == "tx-1"
        assert event.kind == EventKind.SUBSCRIPTION_DELETED
        assert event.subscription_view.raw_status == "canceled"
        assert event.user_reference == "7"

    def test_sale_completed_links_billing_agreement(self, adapter, paypal):
        self._verify(paypal, "SUCCESS")
        sale = {"id": "SALE-1", "billing_agreement_id": "I-SUB1", "custom": "7"}

        event = adapter.parse_event(self._body("PAYMENT.SALE.COMPLETED", sale), TRANSMISSION_HEADERS)

        assert event.kind == EventKind.INVOICE_PAYMENT_SUCCEEDED
        assert event.subscription_id == "I-SUB1"
        assert event.user_reference == "7"
