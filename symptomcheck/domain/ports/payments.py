from __future__ import annotations

from typing import Mapping, Protocol

from ..models import PaymentProvider, ProviderEvent, ProviderSubscriptionView, SessionHandle, User


class PaymentProviderAdapter(Protocol):
    """Single seam between the engine and one payment provider.

    Adapter calls are the only network I/O in the engine. Implementations
    raise ``TransientAdapterError`` or ``TerminalAdapterError`` subclasses and
    never leak SDK exceptions.
    """

    provider: PaymentProvider

    def fetch_subscription(self, provider_subscription_id: str) -> ProviderSubscriptionView:
        ...

    def create_checkout_session(self, user: User) -> SessionHandle:
        ...

    def cancel_at_period_end(self, provider_subscription_id: str) -> None:
        ...

    def clear_cancellation(self, provider_subscription_id: str) -> None:
        ...

    def update_payment_method(self, customer_id: str) -> str:
        ...

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        ...
