"""Billing repository - Database operations for subscriptions and tenant plan fields"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Tenant
from ...models_billing import Subscription, SubscriptionEvent


class BillingRepository:
    """Repository for billing database operations"""

    @staticmethod
    def get_tenant(db: Session, tenant_id: int) -> Optional[Tenant]:
        """Get tenant by ID"""
        return db.query(Tenant).filter(Tenant.id == tenant_id).first()

    @staticmethod
    def get_subscription(db: Session, subscription_id: int) -> Optional[Subscription]:
        return db.query(Subscription).filter(Subscription.id == subscription_id).first()

    @staticmethod
    def find_by_preference_id(db: Session, preference_id: str, lock: bool = False) -> Optional[Subscription]:
        """Latest subscription created for a gateway payment/preference id"""
        query = db.query(Subscription).filter(Subscription.gateway_preference_id == preference_id)
        if lock:
            query = query.with_for_update()
        return query.order_by(Subscription.id.desc()).first()

    @staticmethod
    def find_by_gateway_subscription_id(
        db: Session, gateway_subscription_id: str, lock: bool = False
    ) -> Optional[Subscription]:
        query = db.query(Subscription).filter(
            Subscription.gateway_subscription_id == gateway_subscription_id
        )
        if lock:
            query = query.with_for_update()
        return query.order_by(Subscription.id.desc()).first()

    @staticmethod
    def find_by_external_reference(
        db: Session, external_reference: str, lock: bool = False
    ) -> Optional[Subscription]:
        query = db.query(Subscription).filter(Subscription.external_reference == external_reference)
        if lock:
            query = query.with_for_update()
        return query.order_by(Subscription.id.desc()).first()

    @staticmethod
    def list_for_tenant(
        db: Session, tenant_id: int, limit: int = 20, kind: Optional[str] = None
    ) -> list[Subscription]:
        """Newest first; ``kind`` narrows to plan or top-up rows"""
        query = db.query(Subscription).filter(Subscription.tenant_id == tenant_id)
        if kind:
            query = query.filter(Subscription.kind == kind)
        return query.order_by(Subscription.id.desc()).limit(limit).all()

    @staticmethod
    def latest_recurring_for_tenant(db: Session, tenant_id: int) -> Optional[Subscription]:
        """Newest plan subscription backed by a preapproval"""
        return (
            db.query(Subscription)
            .filter(
                Subscription.tenant_id == tenant_id,
                Subscription.kind == "plan",
                Subscription.gateway_subscription_id.isnot(None),
            )
            .order_by(Subscription.id.desc())
            .first()
        )

    @staticmethod
    def create_subscription(db: Session, **fields) -> Subscription:
        subscription = Subscription(**fields)
        db.add(subscription)
        db.flush()
        return subscription

    @staticmethod
    def update_subscription(db: Session, subscription: Subscription, **fields) -> Subscription:
        """Set the given fields; None values are written as-is"""
        for key, value in fields.items():
            setattr(subscription, key, value)
        return subscription

    @staticmethod
    def cancel_if_pending(db: Session, subscription_id: int, event_id: str, now: datetime) -> bool:
        """Conditionally cancel a pending subscription; False when it is no longer pending"""
        updated = (
            db.query(Subscription)
            .filter(Subscription.id == subscription_id, Subscription.status == "pending")
            .update(
                {
                    Subscription.status: "canceled",
                    Subscription.canceled_at: now,
                    Subscription.last_event_id: event_id,
                },
                synchronize_session=False,
            )
        )
        return updated > 0

    @staticmethod
    def append_event(
        db: Session,
        subscription_id: int,
        event_type: str,
        gateway_event_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> SubscriptionEvent:
        event = SubscriptionEvent(
            subscription_id=subscription_id,
            event_type=event_type,
            gateway_event_id=gateway_event_id,
            payload=payload,
        )
        db.add(event)
        return event

    @staticmethod
    def list_events(db: Session, subscription_id: int) -> list[SubscriptionEvent]:
        return (
            db.query(SubscriptionEvent)
            .filter(SubscriptionEvent.subscription_id == subscription_id)
            .order_by(SubscriptionEvent.id.asc())
            .all()
        )

    @staticmethod
    def update_tenant_plan(db: Session, tenant: Tenant, **fields) -> Tenant:
        """Update tenant billing fields"""
        for key, value in fields.items():
            setattr(tenant, key, value)
        return tenant
