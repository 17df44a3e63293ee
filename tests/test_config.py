"""Tests for symptomcheck.core.config and the provider registry built from it."""

from __future__ import annotations

import pytest

from symptomcheck.core.config import Settings
from symptomcheck.domain.errors import ProviderNotConfiguredError
from symptomcheck.domain.models import PaymentProvider
from symptomcheck.infrastructure.providers.paypal_adapter import PayPalAdapter
from symptomcheck.infrastructure.providers.registry import ProviderRegistry
from symptomcheck.infrastructure.providers.stripe_adapter import StripeAdapter

_KEYS = (
    "DATABASE_PATH",
    "AUTH_TOKEN_SECRET",
    "FRONTEND_BASE_URL",
    "CORS_ALLOW_ORIGINS",
    "STRIPE_MODE",
    "STRIPE_SECRET_KEY",
    "STRIPE_SECRET_KEY_TEST",
    "STRIPE_SECRET_KEY_LIVE",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_PRICE_ID",
    "PAYPAL_MODE",
    "PAYPAL_CLIENT_ID",
    "PAYPAL_CLIENT_ID_SANDBOX",
    "PAYPAL_CLIENT_ID_LIVE",
    "PAYPAL_CLIENT_SECRET",
    "PAYPAL_CLIENT_SECRET_SANDBOX",
    "PAYPAL_CLIENT_SECRET_LIVE",
    "PAYPAL_PLAN_ID",
    "PAYPAL_WEBHOOK_ID",
    "FREE_ANALYSIS_LIMIT",
    "PROVIDER_MAX_RETRIES",
)


@pytest.fixture
def env(monkeypatch, tmp_path):
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("AUTH_TOKEN_SECRET", "test-secret")
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "app.db"))
    return monkeypatch


def _configure_stripe(env, mode="test"):
    env.setenv("STRIPE_MODE", mode)
    env.setenv(f"STRIPE_SECRET_KEY_{mode.upper()}", f"sk_{mode}_123")
    env.setenv("STRIPE_WEBHOOK_SECRET", "whsec_123")
    env.setenv("STRIPE_PRICE_ID", "price_1")


def _configure_paypal(env, mode="sandbox"):
    env.setenv("PAYPAL_MODE", mode)
    env.setenv("PAYPAL_CLIENT_ID", "client")
    env.setenv("PAYPAL_CLIENT_SECRET", "secret")
    env.setenv("PAYPAL_PLAN_ID", "P-PLAN")
    env.setenv("PAYPAL_WEBHOOK_ID", "WH-ID")


class TestSettings:
    def test_auth_secret_is_required(self, env):
        env.delenv("AUTH_TOKEN_SECRET")
        with pytest.raises(RuntimeError):
            Settings()

    def test_defaults(self, env):
        settings = Settings()

        assert settings.free_analysis_limit == 3
        assert settings.cors_allow_origins == ["*"]
        assert settings.checkout_success_url == "http://localhost:3000/profile?subscription=success"

    def test_invalid_integer(self, env):
        env.setenv("FREE_ANALYSIS_LIMIT", "three")
        with pytest.raises(RuntimeError):
            Settings()

    def test_missing_provider_credentials_disable_provider(self, env):
        settings = Settings()

        assert settings.stripe is None
        assert "STRIPE_SECRET_KEY" in settings.provider_config_errors["stripe"]
        assert settings.paypal is None

    def test_stripe_mode_selects_key(self, env):
        _configure_stripe(env, mode="live")

        settings = Settings()

        assert settings.stripe.mode == "live"
        assert settings.stripe.secret_key == "sk_live_123"

    def test_invalid_mode(self, env):
        _configure_paypal(env, mode="production")
        settings = Settings()
        assert settings.paypal is None
        assert "PAYPAL_MODE" in settings.provider_config_errors["paypal"]

    def test_paypal_base_url_follows_mode(self, env):
        _configure_paypal(env, mode="live")
        assert Settings().paypal.base_url == "https://api-m.paypal.com"


class TestProviderRegistry:
    def test_builds_configured_adapters(self, env):
        _configure_stripe(env)
        _configure_paypal(env)

        registry = ProviderRegistry.from_settings(Settings())
        try:
            assert isinstance(registry.adapter_for(PaymentProvider.STRIPE), StripeAdapter)
            assert isinstance(registry.adapter_for("paypal"), PayPalAdapter)
            assert registry.availability()["paypal"] == {"available": True, "mode": "sandbox"}
        finally:
            registry.close()

    def test_unavailable_provider_reports_reason(self, env):
        _configure_stripe(env)

        registry = ProviderRegistry.from_settings(Settings())

        with pytest.raises(ProviderNotConfiguredError):
            registry.adapter_for(PaymentProvider.PAYPAL)
        report = registry.availability()
        assert report["stripe"]["available"] is True
        assert report["paypal"]["available"] is False
        assert "PAYPAL_CLIENT_ID" in report["paypal"]["reason"]

    def test_unknown_provider(self, env):
        registry = ProviderRegistry.from_settings(Settings())
        with pytest.raises(ProviderNotConfiguredError):
            registry.adapter_for("bitcoin")
