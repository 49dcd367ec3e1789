"""
Plan catalog and plan context.

Plan tiers, billing cycles, prices, the WhatsApp allotment included in each
plan and the prepaid top-up packages.
"""

from dataclasses import dataclass
from datetime import datetime
from math import ceil
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from .config import WHATSAPP_MAX_MESSAGES_PER_APPOINTMENT
from .models import Tenant
from .shared.dates import utcnow

PLAN_TIERS = ["starter", "pro", "premium"]
PLAN_STATUSES = ["trialing", "active", "delinquent", "pending", "canceled", "expired"]

PLAN_CONFIG = {
    "starter": {
        "code": "starter",
        "label": "Starter",
        "price_cents": 1490,
        "annual_price_cents": 14900,
        "allow_whatsapp": True,
        "whatsapp_included_messages": 250,
    },
    "pro": {
        "code": "pro",
        "label": "Pro",
        "price_cents": 4990,
        "annual_price_cents": 49900,
        "allow_whatsapp": True,
        "whatsapp_included_messages": 1500,
    },
    "premium": {
        "code": "premium",
        "label": "Premium",
        "price_cents": 19900,
        "annual_price_cents": 199000,
        "allow_whatsapp": True,
        "whatsapp_included_messages": 5000,
    },
}

BILLING_CYCLES = {"monthly": relativedelta(months=1), "yearly": relativedelta(years=1)}
# Gateway preapproval frequency (auto_recurring.frequency in months)
CYCLE_FREQUENCY_MONTHS = {"monthly": 1, "yearly": 12}

# Portuguese aliases used by the web app and by older checkout references
_CYCLE_ALIASES = {
    "mensal": "monthly",
    "monthly": "monthly",
    "month": "monthly",
    "anual": "yearly",
    "yearly": "yearly",
    "annual": "yearly",
    "year": "yearly",
}

WHATSAPP_TOPUP_PACKAGES = [
    {"code": "wa_100", "messages": 100, "price_cents": 990},
    {"code": "wa_200", "messages": 200, "price_cents": 1690},
    {"code": "wa_300", "messages": 300, "price_cents": 2490},
    {"code": "wa_500", "messages": 500, "price_cents": 3990},
    {"code": "wa_1000", "messages": 1000, "price_cents": 7990},
    {"code": "wa_2500", "messages": 2500, "price_cents": 19990},
]


def normalize_plan(plan: Optional[str]) -> Optional[str]:
    """Lowercased plan code, or None when it is not a known tier"""
    key = (plan or "").strip().lower()
    return key if key in PLAN_CONFIG else None


def normalize_billing_cycle(cycle: Optional[str]) -> str:
    return _CYCLE_ALIASES.get((cycle or "").strip().lower(), "monthly")


def resolve_plan_config(plan: Optional[str]) -> dict:
    return PLAN_CONFIG.get((plan or "").lower(), PLAN_CONFIG["starter"])


def get_plan_label(plan: Optional[str]) -> str:
    return resolve_plan_config(plan)["label"]


def get_plan_price_cents(plan: Optional[str], cycle: Optional[str] = "monthly") -> int:
    config = resolve_plan_config(plan)
    if normalize_billing_cycle(cycle) == "yearly":
        return config["annual_price_cents"]
    return config["price_cents"]


def add_billing_cycle(start: datetime, cycle: Optional[str]) -> datetime:
    """Advance ``start`` by one billing cycle (calendar month or year)"""
    return start + BILLING_CYCLES[normalize_billing_cycle(cycle)]


def _plan_order(plan: Optional[str]) -> int:
    code = normalize_plan(plan)
    return PLAN_TIERS.index(code) if code else -1


def is_upgrade(current_plan: Optional[str], next_plan: Optional[str]) -> bool:
    return _plan_order(next_plan) > _plan_order(current_plan)


def is_downgrade(current_plan: Optional[str], next_plan: Optional[str]) -> bool:
    return _plan_order(next_plan) < _plan_order(current_plan)


def is_delinquent_status(status: Optional[str]) -> bool:
    return (status or "").lower() == "delinquent"


def compute_trial_info(trial_ends_at: Optional[datetime], now: Optional[datetime] = None) -> dict:
    if not trial_ends_at:
        return {"days_left": None, "active": False, "warn": False}
    now = now or utcnow()
    seconds = (trial_ends_at - now).total_seconds()
    days_left = ceil(seconds / 86400)
    active = seconds > 0
    return {"days_left": max(days_left, 0), "active": active, "warn": active and days_left <= 3}


def resolve_topup_package(messages: Optional[int] = None, code: Optional[str] = None) -> Optional[dict]:
    """Find a top-up package by message count or code; None for unknown packages"""
    for package in WHATSAPP_TOPUP_PACKAGES:
        if code and package["code"] == code:
            return dict(package)
        if messages is not None and code is None and package["messages"] == messages:
            return dict(package)
    return None


@dataclass
class PlanContext:
    """Read-only plan view consumed by the wallet and the billing routes"""

    tenant_id: int
    plan: str
    status: str
    cycle: str
    trial_ends_at: Optional[datetime]
    active_until: Optional[datetime]
    subscription_id: Optional[int]
    allow_whatsapp: bool
    included_messages: int
    max_messages_per_appointment: int

    def as_dict(self) -> dict:
        return {
            "plan": self.plan,
            "status": self.status,
            "billing_cycle": self.cycle,
            "label": get_plan_label(self.plan),
            "trial": compute_trial_info(self.trial_ends_at),
            "trial_ends_at": self.trial_ends_at,
            "active_until": self.active_until,
            "subscription_id": self.subscription_id,
            "features": {
                "allow_whatsapp": self.allow_whatsapp,
                "whatsapp_included_messages": self.included_messages,
                "max_messages_per_appointment": self.max_messages_per_appointment,
            },
        }


def build_plan_context(tenant: Tenant) -> PlanContext:
    plan = normalize_plan(tenant.plan) or "starter"
    config = resolve_plan_config(plan)
    return PlanContext(
        tenant_id=tenant.id,
        plan=plan,
        status=(tenant.plan_status or "trialing").lower(),
        cycle=normalize_billing_cycle(tenant.plan_cycle),
        trial_ends_at=tenant.plan_trial_ends_at,
        active_until=tenant.plan_active_until,
        subscription_id=tenant.plan_subscription_id,
        allow_whatsapp=bool(config["allow_whatsapp"]),
        included_messages=int(config["whatsapp_included_messages"]),
        max_messages_per_appointment=WHATSAPP_MAX_MESSAGES_PER_APPOINTMENT,
    )


def get_plan_context(db: Session, tenant_id: int) -> Optional[PlanContext]:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        return None
    return build_plan_context(tenant)


def resolve_included_limit(context: Optional[PlanContext]) -> int:
    """Monthly WhatsApp allotment; delinquent or WhatsApp-less plans get none"""
    if context is None:
        return 0
    if is_delinquent_status(context.status):
        return 0
    if not context.allow_whatsapp:
        return 0
    return max(0, context.included_messages)
