"""Wallet domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class WalletSnapshotResponse(BaseModel):
    tenant_id: int
    month_label: str
    cycle_start: datetime
    cycle_end: datetime
    included_limit: int
    included_balance: int
    extra_balance: int
    total_balance: int
    plan: str
    plan_status: Optional[str] = None


class TopupEntry(BaseModel):
    id: int
    messages: int
    payment_id: Optional[str] = None
    pack_code: Optional[str] = None
    price_cents: Optional[int] = None
    created_at: Optional[datetime] = None


class TopupListResponse(BaseModel):
    items: list[TopupEntry]


class TopupPackage(BaseModel):
    code: str
    messages: int
    price_cents: int


class TopupPackagesResponse(BaseModel):
    packages: list[TopupPackage]
    max_messages_per_appointment: int
