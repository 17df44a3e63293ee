"""PayPal Subscriptions implementation of the payment provider adapter.

PayPal has no cancel-at-period-end flag. Cancelling here suspends billing
(``/suspend``), which stops the next charge but remains reversible through
``/activate``; a suspension without failed payments is therefore reported as
``active`` with ``cancel_at_period_end`` set. Suspensions caused by failed
payments are reported as ``past_due``.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

import httpx

from ...core.config import PayPalSettings
from ...domain.errors import (
    AdapterError,
    CustomerDeletedError,
    InvalidSignatureError,
    MalformedEventError,
    SubscriptionNotFoundError,
    TerminalAdapterError,
    TransientAdapterError,
)
from ...domain.models import (
    EventKind,
    PaymentProvider,
    ProviderEvent,
    ProviderSubscriptionView,
    SessionHandle,
    User,
)
from ...domain.models.subscription import (
    RAW_ACTIVE,
    RAW_CANCELED,
    RAW_INCOMPLETE,
    RAW_PAST_DUE,
)
from .retry import RetryConfig, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TOKEN_REFRESH_MARGIN_SECONDS = 60

_VERIFICATION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

_EVENT_KINDS = {
    "BILLING.SUBSCRIPTION.CREATED": EventKind.SUBSCRIPTION_CREATED,
    "BILLING.SUBSCRIPTION.ACTIVATED": EventKind.SUBSCRIPTION_UPDATED,
    "BILLING.SUBSCRIPTION.UPDATED": EventKind.SUBSCRIPTION_UPDATED,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": EventKind.SUBSCRIPTION_UPDATED,
    "BILLING.SUBSCRIPTION.SUSPENDED": EventKind.SUBSCRIPTION_UPDATED,
    "BILLING.SUBSCRIPTION.CANCELLED": EventKind.SUBSCRIPTION_DELETED,
    "BILLING.SUBSCRIPTION.EXPIRED": EventKind.SUBSCRIPTION_DELETED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": EventKind.INVOICE_PAYMENT_FAILED,
    "PAYMENT.SALE.COMPLETED": EventKind.INVOICE_PAYMENT_SUCCEEDED,
}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    result = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if result.tzinfo is None:
        return result.replace(tzinfo=timezone.utc)
    return result.astimezone(timezone.utc)


class PayPalAdapter:
    """PayPal subscription operations bound to one immutable environment."""

    provider = PaymentProvider.PAYPAL

    def __init__(
        self,
        settings: PayPalSettings,
        *,
        success_url: str,
        cancel_url: str,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._settings = settings
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._retry = retry_config or RetryConfig()
        self._http = http_client or httpx.Client(base_url=settings.base_url, timeout=timeout)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @property
    def mode(self) -> str:
        return self._settings.mode

    def close(self) -> None:
        self._http.close()

    # Normalisation --------------------------------------------------------------
    def view_from_resource(self, resource: Mapping[str, Any]) -> ProviderSubscriptionView:
        status = (resource.get("status") or "").upper()
        billing = resource.get("billing_info") or {}
        failed_payments = int(billing.get("failed_payments_count") or 0)

        cancel_at_period_end = False
        if status == "ACTIVE":
            raw_status = RAW_ACTIVE
        elif status == "SUSPENDED" and failed_payments > 0:
            raw_status = RAW_PAST_DUE
        elif status == "SUSPENDED":
            # Suspended by the subscriber's own cancel request: no next cycle.
            raw_status = RAW_ACTIVE
            cancel_at_period_end = True
        elif status in ("APPROVAL_PENDING", "APPROVED"):
            raw_status = RAW_INCOMPLETE
        elif status in ("CANCELLED", "EXPIRED"):
            raw_status = RAW_CANCELED
        else:
            raw_status = status.lower()

        next_billing = _parse_time(billing.get("next_billing_time"))
        if cancel_at_period_end or raw_status == RAW_CANCELED:
            next_billing = None
        last_payment = _parse_time((billing.get("last_payment") or {}).get("time"))
        anchor = last_payment or _parse_time(resource.get("start_time"))

        subscriber = resource.get("subscriber") or {}
        plan_name = self._settings.plan_name if resource.get("plan_id") == self._settings.plan_id else ""
        return ProviderSubscriptionView(
            provider_subscription_id=resource["id"],
            raw_status=raw_status,
            cancel_at_period_end=cancel_at_period_end,
            current_period_end=next_billing,
            plan_name=plan_name,
            customer_id=subscriber.get("payer_id"),
            billing_cycle_anchor=anchor,
            user_reference=resource.get("custom_id"),
        )

    # Subscription queries and commands ---------------------------------------
    def fetch_subscription(self, provider_subscription_id: str) -> ProviderSubscriptionView:
        response = self._request(
            "GET",
            f"/v1/billing/subscriptions/{provider_subscription_id}",
            not_found=SubscriptionNotFoundError,
        )
        return self.view_from_resource(response.json())

    def create_checkout_session(self, user: User) -> SessionHandle:
        body: Dict[str, Any] = {
            "plan_id": self._settings.plan_id,
            "custom_id": str(user.id),
            "application_context": {
                "user_action": "SUBSCRIBE_NOW",
                "return_url": self._success_url,
                "cancel_url": self._cancel_url,
            },
        }
        if user.email:
            body["subscriber"] = {"email_address": user.email}
        response = self._request(
            "POST", "/v1/billing/subscriptions", body=body, not_found=TerminalAdapterError
        )
        data = response.json()
        approve_url = next(
            (link["href"] for link in data.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not approve_url:
            raise TerminalAdapterError("PayPal did not return an approval link")
        logger.info("Created PayPal subscription %s for user %s", data["id"], user.id)
        return SessionHandle(
            session_id=data["id"],
            url=approve_url,
            subscription_reference=data["id"],
        )

    def cancel_at_period_end(self, provider_subscription_id: str) -> None:
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{provider_subscription_id}/suspend",
            body={"reason": "Cancellation requested by subscriber"},
            not_found=SubscriptionNotFoundError,
        )

    def clear_cancellation(self, provider_subscription_id: str) -> None:
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{provider_subscription_id}/activate",
            body={"reason": "Cancellation withdrawn by subscriber"},
            not_found=SubscriptionNotFoundError,
        )

    def update_payment_method(self, customer_id: str) -> str:
        # Funding sources are managed from the payer's PayPal account, not by the merchant.
        if not customer_id:
            raise CustomerDeletedError("No PayPal payer is linked to this account")
        host = "www.paypal.com" if self._settings.mode == "live" else "www.sandbox.paypal.com"
        return f"https://{host}/myaccount/autopay/"

    # Webhooks -----------------------------------------------------------------
    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        verification = {key: headers.get(header) for key, header in _VERIFICATION_HEADERS.items()}
        if not all(verification.values()):
            raise InvalidSignatureError("Missing PayPal transmission headers")
        try:
            event = json.loads(raw_body)
            event_id = event["id"]
            event_type = event["event_type"]
            resource = event["resource"]
        except (ValueError, KeyError, TypeError) as exc:
            raise MalformedEventError("PayPal event is missing id, event_type or resource") from exc

        self._verify_signature(verification, event)

        kind = _EVENT_KINDS.get(event_type, EventKind.UNRECOGNIZED)
        view: Optional[ProviderSubscriptionView] = None
        subscription_id: Optional[str] = None
        user_reference: Optional[str] = resource.get("custom_id") or resource.get("custom")

        if kind in (
            EventKind.SUBSCRIPTION_CREATED,
            EventKind.SUBSCRIPTION_UPDATED,
            EventKind.SUBSCRIPTION_DELETED,
        ):
            try:
                view = self.view_from_resource(resource)
            except (KeyError, ValueError) as exc:
                raise MalformedEventError(f"Unreadable subscription in event {event_id}") from exc
            subscription_id = view.provider_subscription_id
        elif kind == EventKind.INVOICE_PAYMENT_FAILED:
            subscription_id = resource.get("id")
        elif kind == EventKind.INVOICE_PAYMENT_SUCCEEDED:
            subscription_id = resource.get("billing_agreement_id")

        subscriber = resource.get("subscriber") or {}
        return ProviderEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            kind=kind,
            subscription_view=view,
            subscription_id=subscription_id,
            customer_id=subscriber.get("payer_id"),
            user_reference=user_reference,
        )

    def _verify_signature(self, verification: Dict[str, Optional[str]], event: Dict[str, Any]) -> None:
        body = dict(verification, webhook_id=self._settings.webhook_id, webhook_event=event)
        response = self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            body=body,
            not_found=TerminalAdapterError,
        )
        if response.json().get("verification_status") != "SUCCESS":
            raise InvalidSignatureError("PayPal rejected the webhook signature")

    # Transport ------------------------------------------------------------------
    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            try:
                response = self._http.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self._settings.client_id, self._settings.client_secret),
                )
            except httpx.TransportError as exc:
                raise TransientAdapterError(f"PayPal token request failed: {exc}") from exc
            if response.status_code >= 500:
                raise TransientAdapterError(f"PayPal token endpoint returned {response.status_code}")
            if response.status_code != 200:
                raise TerminalAdapterError(
                    f"PayPal rejected client credentials ({response.status_code})"
                )
            payload = response.json()
            self._token = payload["access_token"]
            expires_in = int(payload.get("expires_in", 0))
            self._token_expires_at = time.monotonic() + max(
                expires_in - _TOKEN_REFRESH_MARGIN_SECONDS, 0
            )
            return self._token

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[Dict[str, Any]] = None,
        not_found: type[TerminalAdapterError],
    ) -> httpx.Response:
        def attempt() -> httpx.Response:
            token = self._access_token()
            try:
                response = self._http.request(
                    method,
                    path,
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.TransportError as exc:
                raise TransientAdapterError(f"PayPal request {method} {path} failed: {exc}") from exc
            if response.status_code == 401:
                with self._token_lock:
                    self._token = None
                raise TransientAdapterError("PayPal access token expired")
            error = self._classify(response, not_found)
            if error is not None:
                raise error
            return response

        return self._call(attempt)

    def _call(self, fn: Callable[[], T]) -> T:
        return retry_with_backoff(fn, self._retry)

    @staticmethod
    def _classify(
        response: httpx.Response, not_found: type[TerminalAdapterError]
    ) -> Optional[AdapterError]:
        status = response.status_code
        if status < 400:
            return None
        if status == 429 or status >= 500:
            return TransientAdapterError(f"PayPal returned {status}")
        detail = response.text[:200]
        if status == 404:
            return not_found(f"PayPal resource not found: {detail}")
        return TerminalAdapterError(f"PayPal rejected request ({status}): {detail}")
