"""Billing domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

from ...plans import PLAN_TIERS, normalize_billing_cycle, normalize_plan


class CheckoutRequest(BaseModel):
    """Schema for creating a PIX checkout for a plan"""

    plan: str  # "starter" | "pro" | "premium"
    billing_cycle: Optional[str] = "monthly"  # "monthly" | "yearly" (mensal/anual accepted)

    @field_validator("plan")
    @classmethod
    def validate_plan(cls, v: str) -> str:
        plan = normalize_plan(v)
        if plan is None:
            raise ValueError(f"plan must be one of {', '.join(PLAN_TIERS)}")
        return plan

    @field_validator("billing_cycle")
    @classmethod
    def validate_cycle(cls, v: Optional[str]) -> str:
        return normalize_billing_cycle(v)


class TopupCheckoutRequest(BaseModel):
    """Schema for buying a WhatsApp top-up package"""

    messages: Optional[int] = None
    pack_code: Optional[str] = None

    @model_validator(mode="after")
    def require_package(self):
        if self.messages is None and not self.pack_code:
            raise ValueError("messages or pack_code is required")
        return self


class SyncRequest(BaseModel):
    """Polling fallback - reconcile a gateway resource without waiting for the webhook"""

    payment_id: Optional[str] = None
    preapproval_id: Optional[str] = None

    @model_validator(mode="after")
    def require_one_id(self):
        if not self.payment_id and not self.preapproval_id:
            raise ValueError("payment_id or preapproval_id is required")
        return self


class PixCheckout(BaseModel):
    payment_id: str
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    copia_e_cola: Optional[str] = None
    ticket_url: Optional[str] = None
    expires_at: Optional[str] = None
    amount_cents: int


class CheckoutResponse(BaseModel):
    subscription_id: int
    plan: Optional[str] = None
    billing_cycle: Optional[str] = None
    messages: Optional[int] = None
    pack_code: Optional[str] = None
    amount_cents: int
    currency: str
    external_reference: str
    pix: PixCheckout


class SyncResponse(BaseModel):
    ok: bool
    action: str
    reason: Optional[str] = None
    subscription_id: Optional[int] = None
    tenant_id: Optional[int] = None
    status: Optional[str] = None
    plan: Optional[str] = None
    cycle: Optional[str] = None
    active_until: Optional[datetime] = None
    messages: Optional[int] = None


class ChangePlanRequest(BaseModel):
    """Upgrade or downgrade via a new recurring checkout"""

    plan: str
    billing_cycle: Optional[str] = "monthly"
    force: bool = False  # Always create a new link, even if a pending one exists

    @field_validator("plan")
    @classmethod
    def validate_plan(cls, v: str) -> str:
        plan = normalize_plan(v)
        if plan is None:
            raise ValueError(f"plan must be one of {', '.join(PLAN_TIERS)}")
        return plan

    @field_validator("billing_cycle")
    @classmethod
    def validate_cycle(cls, v: Optional[str]) -> str:
        return normalize_billing_cycle(v)


class RecurringCheckoutResponse(BaseModel):
    subscription_id: int
    plan: str
    billing_cycle: str
    status: str
    amount_cents: Optional[int] = None
    currency: str
    preapproval_id: Optional[str] = None
    init_point: Optional[str] = None
    start_date: Optional[datetime] = None
    reused: bool = False
