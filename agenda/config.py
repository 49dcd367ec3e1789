import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _clean_secret(value: Optional[str]) -> Optional[str]:
    """Strip whitespace and surrounding quotes copied from the gateway panel"""
    if value is None:
        return None
    cleaned = value.strip().strip('"').strip("'").strip()
    return cleaned or None


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./agenda.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Frontend base URL for payment links in reminders
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
# Public API URL, used to build the gateway notification_url
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")

# Mercado Pago Configuration
MERCADOPAGO_ACCESS_TOKEN = _clean_secret(
    os.getenv("MERCADOPAGO_ACCESS_TOKEN") or os.getenv("MP_ACCESS_TOKEN")
)
MERCADOPAGO_API_URL = os.getenv("MERCADOPAGO_API_URL", "https://api.mercadopago.com")
# Two live secrets are accepted while rotating the webhook key in the panel
MERCADOPAGO_WEBHOOK_SECRET = _clean_secret(
    os.getenv("MERCADOPAGO_WEBHOOK_SECRET") or os.getenv("MP_WEBHOOK_SECRET")
)
MERCADOPAGO_WEBHOOK_SECRET_2 = _clean_secret(
    os.getenv("MERCADOPAGO_WEBHOOK_SECRET_2") or os.getenv("MP_WEBHOOK_SECRET_2")
)
BILLING_CURRENCY = os.getenv("BILLING_CURRENCY", "BRL").upper()
# Reuse a pending recurring checkout link for the same plan instead of creating another
BILLING_REUSE_PENDING = _env_flag("BILLING_REUSE_PENDING", "true")

# Dunning (payment reminders and suspension)
BILLING_WARN_DAYS = int(os.getenv("BILLING_WARN_DAYS", "3"))
BILLING_GRACE_DAYS = int(os.getenv("BILLING_GRACE_DAYS", "3"))
BILLING_REMINDER_INTERVAL_MINUTES = int(os.getenv("BILLING_REMINDER_INTERVAL_MINUTES", "30"))
BILLING_REMINDERS_DISABLED = _env_flag("BILLING_REMINDERS_DISABLED")
BILLING_PAYMENT_URL = os.getenv("BILLING_PAYMENT_URL", f"{FRONTEND_URL}/configuracoes?tab=plano")
# Run the reminder loop inside the API process (disable when the arq worker runs it)
BILLING_MONITOR_IN_PROCESS = _env_flag("BILLING_MONITOR_IN_PROCESS", "true")

# WhatsApp wallet
WHATSAPP_MAX_MESSAGES_PER_APPOINTMENT = int(os.getenv("WHATSAPP_MAX_MESSAGES_PER_APPOINTMENT", "5"))

# WhatsApp Cloud API
WHATSAPP_ACCESS_TOKEN = _clean_secret(os.getenv("WHATSAPP_ACCESS_TOKEN") or os.getenv("WA_TOKEN"))
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID") or os.getenv("WA_PHONE_NUMBER_ID")
WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v19.0")

# Email (Resend)
RESEND_API_KEY = _clean_secret(os.getenv("RESEND_API_KEY"))
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Agenda <no-reply@agenda.app>")


@dataclass(frozen=True)
class BillingSettings:
    """Gateway and webhook configuration handed to the billing components"""

    access_token: Optional[str] = None
    api_url: str = "https://api.mercadopago.com"
    webhook_secrets: tuple = ()
    currency: str = "BRL"
    notification_url: Optional[str] = None
    reference_secret: str = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"
    http_timeout: float = 30.0
    back_url: Optional[str] = None
    frontend_url: str = "http://localhost:5173"
    reuse_pending: bool = True

    @classmethod
    def from_env(cls) -> "BillingSettings":
        secrets = tuple(s for s in (MERCADOPAGO_WEBHOOK_SECRET, MERCADOPAGO_WEBHOOK_SECRET_2) if s)
        return cls(
            access_token=MERCADOPAGO_ACCESS_TOKEN,
            api_url=MERCADOPAGO_API_URL.rstrip("/"),
            webhook_secrets=secrets[:2],
            currency=BILLING_CURRENCY,
            notification_url=f"{API_BASE_URL.rstrip('/')}/billing/webhook",
            reference_secret=SECRET_KEY,
            back_url=f"{API_BASE_URL.rstrip('/')}/billing/callback",
            frontend_url=FRONTEND_URL.rstrip("/"),
            reuse_pending=BILLING_REUSE_PENDING,
        )


@dataclass(frozen=True)
class ReminderSettings:
    """Dunning windows and schedule"""

    warn_days: int = 3
    grace_days: int = 3
    interval_seconds: int = 30 * 60
    disabled: bool = False
    payment_url: str = ""
    channels: tuple = field(default=("email", "whatsapp"))

    @classmethod
    def from_env(cls) -> "ReminderSettings":
        return cls(
            warn_days=max(BILLING_WARN_DAYS, 0),
            grace_days=max(BILLING_GRACE_DAYS, 0),
            interval_seconds=max(BILLING_REMINDER_INTERVAL_MINUTES, 1) * 60,
            disabled=BILLING_REMINDERS_DISABLED,
            payment_url=BILLING_PAYMENT_URL,
        )


def get_billing_settings() -> BillingSettings:
    return BillingSettings.from_env()


def get_reminder_settings() -> ReminderSettings:
    return ReminderSettings.from_env()
