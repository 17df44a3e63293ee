"""Startup-time provider dispatch."""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

from ...core.config import Settings
from ...domain.errors import ProviderNotConfiguredError
from ...domain.models import PaymentProvider
from ...domain.ports.payments import PaymentProviderAdapter
from .paypal_adapter import PayPalAdapter
from .retry import RetryConfig
from .stripe_adapter import StripeAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds one adapter per configured provider and the reason for each missing one."""

    def __init__(
        self,
        adapters: Mapping[PaymentProvider, PaymentProviderAdapter],
        unavailable: Optional[Mapping[PaymentProvider, str]] = None,
    ) -> None:
        self._adapters: Dict[PaymentProvider, PaymentProviderAdapter] = dict(adapters)
        self._unavailable: Dict[PaymentProvider, str] = dict(unavailable or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        retry_config = RetryConfig(
            max_retries=settings.provider_max_retries,
            base_delay=settings.provider_retry_base_delay,
        )
        adapters: Dict[PaymentProvider, PaymentProviderAdapter] = {}
        unavailable: Dict[PaymentProvider, str] = {}

        if settings.stripe is not None:
            adapters[PaymentProvider.STRIPE] = StripeAdapter(
                settings.stripe,
                success_url=settings.checkout_success_url,
                cancel_url=settings.checkout_cancel_url,
                return_url=settings.billing_return_url,
                retry_config=retry_config,
                timeout=settings.provider_timeout_seconds,
            )
            logger.info("Stripe adapter ready (mode=%s)", settings.stripe.mode)
        else:
            unavailable[PaymentProvider.STRIPE] = settings.provider_config_errors.get(
                "stripe", "not configured"
            )

        if settings.paypal is not None:
            adapters[PaymentProvider.PAYPAL] = PayPalAdapter(
                settings.paypal,
                success_url=settings.checkout_success_url,
                cancel_url=settings.checkout_cancel_url,
                retry_config=retry_config,
                timeout=settings.provider_timeout_seconds,
            )
            logger.info("PayPal adapter ready (mode=%s)", settings.paypal.mode)
        else:
            unavailable[PaymentProvider.PAYPAL] = settings.provider_config_errors.get(
                "paypal", "not configured"
            )

        for provider, reason in unavailable.items():
            logger.warning("%s payments disabled: %s", provider.value, reason)
        return cls(adapters, unavailable)

    def adapter_for(self, provider: PaymentProvider | str) -> PaymentProviderAdapter:
        try:
            key = PaymentProvider(provider)
        except ValueError as exc:
            raise ProviderNotConfiguredError(f"Unknown payment provider: {provider}") from exc
        adapter = self._adapters.get(key)
        if adapter is None:
            reason = self._unavailable.get(key, "not configured")
            raise ProviderNotConfiguredError(f"{key.value} is unavailable: {reason}")
        return adapter

    def availability(self) -> Dict[str, Dict[str, object]]:
        report: Dict[str, Dict[str, object]] = {}
        for provider in (PaymentProvider.STRIPE, PaymentProvider.PAYPAL):
            entry: Dict[str, object] = {"available": provider in self._adapters}
            adapter = self._adapters.get(provider)
            if adapter is not None:
                entry["mode"] = getattr(adapter, "mode", None)
            else:
                entry["reason"] = self._unavailable.get(provider, "not configured")
            report[provider.value] = entry
        return report

    def close(self) -> None:
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                close()
