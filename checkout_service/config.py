import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from checkout_service.errors import ConfigurationError

# Force-load .env (Windows-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings(BaseModel):
    """Gateway credentials and verification knobs.

    Built once per request by ``load_settings`` and handed to the components
    that need it, so tests can construct one with fields missing.
    """

    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_webhook_secret: Optional[str] = None
    razorpay_api_url: str = "https://api.razorpay.com"
    gateway_timeout_seconds: float = 5.0
    gateway_max_retries: int = 2
    gateway_retry_backoff_seconds: float = 0.2
    signature_fallback_enabled: bool = True
    payment_method_label: str = "Razorpay"
    default_currency: str = "INR"

    def require_gateway_credentials(self):
        if not self.razorpay_key_id or not self.razorpay_key_secret:
            raise ConfigurationError()

    def require_webhook_secret(self) -> str:
        if not self.razorpay_webhook_secret:
            raise ConfigurationError()
        return self.razorpay_webhook_secret


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value if value else None


def _env_flag(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    overrides = {
        "razorpay_api_url": _env("RAZORPAY_API_URL"),
        "gateway_timeout_seconds": _env("GATEWAY_TIMEOUT_SECONDS"),
        "gateway_max_retries": _env("GATEWAY_MAX_RETRIES"),
        "gateway_retry_backoff_seconds": _env("GATEWAY_RETRY_BACKOFF_SECONDS"),
        "payment_method_label": _env("PAYMENT_METHOD_LABEL"),
        "default_currency": _env("DEFAULT_CURRENCY"),
    }
    return Settings(
        razorpay_key_id=_env("RAZORPAY_KEY_ID"),
        razorpay_key_secret=_env("RAZORPAY_KEY_SECRET"),
        razorpay_webhook_secret=_env("RAZORPAY_WEBHOOK_SECRET"),
        signature_fallback_enabled=_env_flag("SIGNATURE_FALLBACK_ENABLED", True),
        **{k: v for k, v in overrides.items() if v is not None},
    )
