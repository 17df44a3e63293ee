"""Stripe implementation of the payment provider adapter."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

import stripe

from ...core.config import StripeSettings
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
    BillingInterval,
    EventKind,
    PaymentProvider,
    ProviderEvent,
    ProviderSubscriptionView,
    SessionHandle,
    User,
)
from ...domain.models.subscription import PENDING_PREFIX
from .retry import RetryConfig, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

SIGNATURE_HEADER = "stripe-signature"

_EVENT_KINDS = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.paused": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.resumed": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.paid": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
    "checkout.session.completed": EventKind.ONE_TIME_PAYMENT_SUCCEEDED,
    "payment_intent.succeeded": EventKind.ONE_TIME_PAYMENT_SUCCEEDED,
}


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = subscription.get("items") or {}
    data = items.get("data") or []
    return data[0] if data else {}


def subscription_view_from_object(subscription: Mapping[str, Any]) -> ProviderSubscriptionView:
    """Normalise a Stripe subscription (SDK object or webhook dict) into a view."""
    item = _first_item(subscription)
    price = item.get("price") or subscription.get("plan") or {}
    recurring = price.get("recurring") or {}
    interval = recurring.get("interval") or price.get("interval") or BillingInterval.MONTH.value

    # Newer API versions report the period on the subscription item.
    period_end = subscription.get("current_period_end") or item.get("current_period_end")

    product = price.get("product")
    plan_name = ""
    if isinstance(product, Mapping) and product.get("name"):
        plan_name = product["name"]
    elif price.get("nickname"):
        plan_name = price["nickname"]

    metadata = subscription.get("metadata") or {}
    return ProviderSubscriptionView(
        provider_subscription_id=subscription["id"],
        raw_status=subscription.get("status") or "",
        cancel_at_period_end=bool(
            subscription.get("cancel_at_period_end") or subscription.get("cancel_at")
        ),
        current_period_end=_timestamp(period_end),
        plan_name=plan_name,
        customer_id=_object_id(subscription.get("customer")),
        billing_cycle_anchor=_timestamp(subscription.get("billing_cycle_anchor")),
        billing_interval=BillingInterval(interval),
        user_reference=metadata.get("user_id"),
    )


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _object_id(details.get("subscription"))


class StripeAdapter:
    """Stripe subscription operations bound to one immutable set of credentials."""

    provider = PaymentProvider.STRIPE

    def __init__(
        self,
        settings: StripeSettings,
        *,
        success_url: str,
        cancel_url: str,
        return_url: str,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 10.0,
        client: Optional[Any] = None,
    ) -> None:
        self._settings = settings
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._return_url = return_url
        self._retry = retry_config or RetryConfig()
        self._client = client or stripe.StripeClient(
            settings.secret_key,
            max_network_retries=0,
            http_client=stripe.RequestsClient(timeout=timeout),
        )

    @property
    def mode(self) -> str:
        return self._settings.mode

    # Subscription queries and commands ---------------------------------------
    def fetch_subscription(self, provider_subscription_id: str) -> ProviderSubscriptionView:
        subscription = self._call(
            lambda: self._client.subscriptions.retrieve(
                provider_subscription_id,
                params={"expand": ["items.data.price.product"]},
            ),
            not_found=SubscriptionNotFoundError,
        )
        return subscription_view_from_object(subscription)

    def create_checkout_session(self, user: User) -> SessionHandle:
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": self._settings.price_id, "quantity": 1}],
            "success_url": self._success_url,
            "cancel_url": self._cancel_url,
            "client_reference_id": str(user.id),
            "metadata": {"user_id": str(user.id)},
            "subscription_data": {"metadata": {"user_id": str(user.id)}},
        }
        if user.provider_customer_id:
            params["customer"] = user.provider_customer_id
        elif user.email:
            params["customer_email"] = user.email

        session = self._call(
            lambda: self._client.checkout.sessions.create(params=params),
            not_found=CustomerDeletedError,
        )
        logger.info("Created Stripe checkout session %s for user %s", session["id"], user.id)
        return SessionHandle(
            session_id=session["id"],
            url=session["url"],
            customer_id=_object_id(session.get("customer")) or user.provider_customer_id,
            subscription_reference=f"{PENDING_PREFIX}{session['id']}",
        )

    def cancel_at_period_end(self, provider_subscription_id: str) -> None:
        self._call(
            lambda: self._client.subscriptions.update(
                provider_subscription_id, params={"cancel_at_period_end": True}
            ),
            not_found=SubscriptionNotFoundError,
        )

    def clear_cancellation(self, provider_subscription_id: str) -> None:
        self._call(
            lambda: self._client.subscriptions.update(
                provider_subscription_id, params={"cancel_at_period_end": False}
            ),
            not_found=SubscriptionNotFoundError,
        )

    def update_payment_method(self, customer_id: str) -> str:
        session = self._call(
            lambda: self._client.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": self._return_url}
            ),
            not_found=CustomerDeletedError,
        )
        return session["url"]

    # Webhooks -----------------------------------------------------------------
    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        signature = headers.get(SIGNATURE_HEADER, "")
        if not signature:
            raise InvalidSignatureError("Missing Stripe-Signature header")
        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedEventError("Stripe event body is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self._settings.webhook_secret, tolerance=300
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignatureError("Invalid Stripe webhook signature") from exc

        try:
            event = json.loads(payload)
            event_id = event["id"]
            event_type = event["type"]
            obj = event["data"]["object"]
        except (ValueError, KeyError, TypeError) as exc:
            raise MalformedEventError("Stripe event is missing id, type or data.object") from exc

        kind = _EVENT_KINDS.get(event_type, EventKind.UNRECOGNIZED)
        view: Optional[ProviderSubscriptionView] = None
        subscription_id: Optional[str] = None
        metadata = obj.get("metadata") or {}
        user_reference = metadata.get("user_id")

        if kind in (
            EventKind.SUBSCRIPTION_CREATED,
            EventKind.SUBSCRIPTION_UPDATED,
            EventKind.SUBSCRIPTION_DELETED,
        ):
            try:
                view = subscription_view_from_object(obj)
            except (KeyError, ValueError) as exc:
                raise MalformedEventError(f"Unreadable subscription in event {event_id}") from exc
            subscription_id = view.provider_subscription_id
            user_reference = view.user_reference
        elif kind in (EventKind.INVOICE_PAYMENT_SUCCEEDED, EventKind.INVOICE_PAYMENT_FAILED):
            subscription_id = _invoice_subscription_id(obj)
        elif kind == EventKind.ONE_TIME_PAYMENT_SUCCEEDED:
            subscription_id = _object_id(obj.get("subscription"))
            user_reference = obj.get("client_reference_id") or user_reference

        return ProviderEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            kind=kind,
            subscription_view=view,
            subscription_id=subscription_id,
            customer_id=_object_id(obj.get("customer")),
            user_reference=user_reference,
        )

    # Error classification -------------------------------------------------------
    def _call(self, fn: Callable[[], T], *, not_found: type[TerminalAdapterError]) -> T:
        def attempt() -> T:
            try:
                return fn()
            except stripe.StripeError as exc:
                raise self._classify(exc, not_found) from exc

        return retry_with_backoff(attempt, self._retry)

    @staticmethod
    def _classify(exc: "stripe.StripeError", not_found: type[TerminalAdapterError]) -> AdapterError:
        if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
            return TransientAdapterError(f"Stripe unavailable: {exc.user_message or exc}")
        status = getattr(exc, "http_status", None) or 0
        if status >= 500 or isinstance(exc, stripe.APIError):
            return TransientAdapterError(f"Stripe error {status}: {exc.user_message or exc}")
        if status == 404 or getattr(exc, "code", None) == "resource_missing":
            return not_found(str(exc.user_message or exc))
        return TerminalAdapterError(f"Stripe rejected request ({status}): {exc.user_message or exc}")
