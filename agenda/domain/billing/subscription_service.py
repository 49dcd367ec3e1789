"""Subscription service - read side of billing (plan context and subscription history)"""

import logging
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models_billing import Subscription
from ...plans import build_plan_context, compute_trial_info
from .references import PLAN_KIND
from .repository import BillingRepository

logger = logging.getLogger(__name__)

# Which subscription represents the tenant when several exist
STATUS_PRIORITY = {
    "active": 60,
    "authorized": 50,
    "paused": 40,
    "past_due": 35,
    "pending": 20,
    "initiated": 15,
    "canceled": 10,
    "expired": 5,
}


def pick_effective_subscription(subscriptions: list[Subscription]) -> Optional[Subscription]:
    """Highest status priority among plan rows wins; ties go to the newest row"""
    plans = [sub for sub in subscriptions if (sub.kind or PLAN_KIND) == PLAN_KIND]
    if not plans:
        return None
    return max(plans, key=lambda sub: (STATUS_PRIORITY.get(sub.status, 0), sub.id))


def serialize_subscription(subscription: Optional[Subscription]) -> Optional[dict]:
    if subscription is None:
        return None
    return {
        "id": subscription.id,
        "plan": subscription.plan,
        "kind": subscription.kind,
        "billing_cycle": subscription.billing_cycle,
        "status": subscription.status,
        "amount_cents": subscription.amount_cents,
        "currency": subscription.currency,
        "gateway": subscription.gateway,
        "gateway_subscription_id": subscription.gateway_subscription_id,
        "gateway_preference_id": subscription.gateway_preference_id,
        "current_period_end": subscription.current_period_end,
        "canceled_at": subscription.canceled_at,
        "created_at": subscription.created_at,
    }


class SubscriptionService:
    """Service for subscription lookups"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BillingRepository()

    def get_overview(self, tenant_id: int, history_limit: int = 10) -> dict:
        """Plan context, effective subscription and recent history for a tenant"""
        tenant = self.repo.get_tenant(self.db, tenant_id)
        if tenant is None:
            raise HTTPException(status_code=404, detail="Establishment not found")

        context = build_plan_context(tenant)
        # Top-up purchases live in the wallet history, never in the plan state
        history = self.repo.list_for_tenant(self.db, tenant_id, limit=history_limit, kind=PLAN_KIND)
        effective = pick_effective_subscription(history)

        return {
            "plan": context.as_dict(),
            "trial": compute_trial_info(tenant.plan_trial_ends_at),
            "subscription": serialize_subscription(effective),
            "history": [serialize_subscription(sub) for sub in history],
        }
