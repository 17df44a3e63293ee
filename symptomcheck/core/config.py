import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv


@dataclass(frozen=True, slots=True)
class StripeSettings:
    """Immutable Stripe credentials for one mode, handed to the adapter at construction."""

    mode: str
    secret_key: str
    webhook_secret: str
    price_id: str
    plan_name: str


@dataclass(frozen=True, slots=True)
class PayPalSettings:
    """Immutable PayPal credentials for one environment, handed to the adapter at construction."""

    mode: str
    client_id: str
    client_secret: str
    plan_id: str
    webhook_id: str
    plan_name: str

    @property
    def base_url(self) -> str:
        if self.mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


class Settings:
    """Centralised application configuration sourced from environment variables."""

    def __init__(self) -> None:
        load_dotenv()
        self.database_path = Path(os.getenv("DATABASE_PATH", "data/app.db")).resolve()
        self.auth_token_secret = self._get("AUTH_TOKEN_SECRET")
        self.auth_token_algorithm = os.getenv("AUTH_TOKEN_ALGORITHM", "HS256")
        self.frontend_base_url = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000").rstrip("/")
        self.provider_timeout_seconds = self._get_float("PROVIDER_TIMEOUT_SECONDS", default=10.0)
        self.provider_max_retries = self._get_int("PROVIDER_MAX_RETRIES", default=2)
        self.provider_retry_base_delay = self._get_float("PROVIDER_RETRY_BASE_DELAY", default=0.5)
        self.reconcile_staleness_seconds = self._get_int("RECONCILE_STALENESS_SECONDS", default=300)
        self.webhook_claim_lease_seconds = self._get_int("WEBHOOK_CLAIM_LEASE_SECONDS", default=300)
        self.free_analysis_limit = self._get_int("FREE_ANALYSIS_LIMIT", default=3)
        self.openai_api_key = os.getenv("OPENAI_API_KEY")
        self.openai_model = os.getenv("OPENAI_MODEL", "gpt-4o")
        origins = os.getenv("CORS_ALLOW_ORIGINS")
        if origins:
            self.cors_allow_origins = [item.strip() for item in origins.split(",") if item.strip()]
        else:
            self.cors_allow_origins = ["*"]

        # Missing provider credentials disable that provider instead of failing startup.
        self.provider_config_errors: Dict[str, str] = {}
        self.stripe = self._load_stripe()
        self.paypal = self._load_paypal()

    @property
    def checkout_success_url(self) -> str:
        return f"{self.frontend_base_url}/profile?subscription=success"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.frontend_base_url}/premium?subscription=canceled"

    @property
    def billing_return_url(self) -> str:
        return f"{self.frontend_base_url}/profile"

    def _load_stripe(self) -> Optional[StripeSettings]:
        mode = os.getenv("STRIPE_MODE", "test").lower()
        if mode not in ("test", "live"):
            self.provider_config_errors["stripe"] = "STRIPE_MODE must be 'test' or 'live'"
            return None
        suffix = "_LIVE" if mode == "live" else "_TEST"
        values = {
            "secret_key": os.getenv(f"STRIPE_SECRET_KEY{suffix}") or os.getenv("STRIPE_SECRET_KEY"),
            "webhook_secret": os.getenv("STRIPE_WEBHOOK_SECRET"),
            "price_id": os.getenv("STRIPE_PRICE_ID"),
        }
        missing = self._missing(values, prefix="STRIPE")
        if missing:
            self.provider_config_errors["stripe"] = f"missing {', '.join(missing)}"
            return None
        return StripeSettings(
            mode=mode,
            plan_name=os.getenv("STRIPE_PLAN_NAME", "Premium Monthly"),
            **values,  # type: ignore[arg-type]
        )

    def _load_paypal(self) -> Optional[PayPalSettings]:
        mode = os.getenv("PAYPAL_MODE", "sandbox").lower()
        if mode not in ("sandbox", "live"):
            self.provider_config_errors["paypal"] = "PAYPAL_MODE must be 'sandbox' or 'live'"
            return None
        suffix = "_LIVE" if mode == "live" else "_SANDBOX"
        values = {
            "client_id": os.getenv(f"PAYPAL_CLIENT_ID{suffix}") or os.getenv("PAYPAL_CLIENT_ID"),
            "client_secret": os.getenv(f"PAYPAL_CLIENT_SECRET{suffix}")
            or os.getenv("PAYPAL_CLIENT_SECRET"),
            "plan_id": os.getenv("PAYPAL_PLAN_ID"),
            "webhook_id": os.getenv("PAYPAL_WEBHOOK_ID"),
        }
        missing = self._missing(values, prefix="PAYPAL")
        if missing:
            self.provider_config_errors["paypal"] = f"missing {', '.join(missing)}"
            return None
        return PayPalSettings(
            mode=mode,
            plan_name=os.getenv("PAYPAL_PLAN_NAME", "Premium Monthly"),
            **values,  # type: ignore[arg-type]
        )

    @staticmethod
    def _missing(values: Dict[str, Optional[str]], prefix: str) -> List[str]:
        return [f"{prefix}_{key.upper()}" for key, value in values.items() if not value]

    @staticmethod
    def _get(key: str) -> str:
        value = os.getenv(key)
        if not value:
            raise RuntimeError(f"Missing required environment variable: {key}")
        return value

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise RuntimeError(f"Missing required environment variable: {key}")
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be an integer") from exc

    @staticmethod
    def _get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be a number") from exc
