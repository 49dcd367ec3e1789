from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("establishments.id"), nullable=False, index=True)
    plan = Column(String(20), nullable=False)
    kind = Column(String(20), default="plan", nullable=False, index=True)  # plan, whatsapp_topup
    billing_cycle = Column(String(10), default="monthly", nullable=False)  # monthly, yearly
    gateway = Column(String(20), default="mercadopago", nullable=False)
    # initiated, pending, authorized, active, paused, past_due, canceled, expired
    status = Column(String(20), default="initiated", nullable=False, index=True)
    amount_cents = Column(Integer, nullable=True)
    currency = Column(String(3), default="BRL", nullable=False)
    gateway_subscription_id = Column(String(64), nullable=True, index=True)  # preapproval id
    gateway_preference_id = Column(String(64), nullable=True, index=True)  # payment id for PIX
    external_reference = Column(String(512), nullable=True, index=True)
    init_point = Column(String(512), nullable=True)  # Preapproval checkout link, reused while pending
    trial_ends_at = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    # Idempotency watermark: id of the last gateway notification applied
    last_event_id = Column(String(128), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    events = relationship(
        "SubscriptionEvent", back_populates="subscription", order_by="SubscriptionEvent.id"
    )


class SubscriptionEvent(Base):
    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)  # e.g. payment.approved, topup.approved
    gateway_event_id = Column(String(128), nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    subscription = relationship("Subscription", back_populates="events")


class Wallet(Base):
    __tablename__ = "whatsapp_wallets"

    tenant_id = Column(Integer, ForeignKey("establishments.id"), primary_key=True)
    cycle_start = Column(DateTime, nullable=False)
    cycle_end = Column(DateTime, nullable=False)
    included_limit = Column(Integer, default=0, nullable=False)
    included_balance = Column(Integer, default=0, nullable=False)
    extra_balance = Column(Integer, default=0, nullable=False)  # Top-ups, never expire
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class WalletTransaction(Base):
    __tablename__ = "whatsapp_wallet_transactions"
    __table_args__ = (
        Index("ix_wallet_tx_tenant_kind", "tenant_id", "kind"),
        Index("ix_wallet_tx_tenant_appointment", "tenant_id", "appointment_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("establishments.id"), nullable=False)
    # cycle_reset, limit_adjust, debit, topup_credit, blocked
    kind = Column(String(20), nullable=False)
    delta = Column(Integer, default=0, nullable=False)
    included_delta = Column(Integer, default=0, nullable=False)
    extra_delta = Column(Integer, default=0, nullable=False)
    appointment_id = Column(String(64), nullable=True)
    subscription_id = Column(Integer, nullable=True)
    provider_message_id = Column(String(128), unique=True, nullable=True)  # Debit idempotency key
    payment_id = Column(String(64), unique=True, nullable=True)  # Credit idempotency key
    reason = Column(String(64), nullable=True)
    cycle_start = Column(DateTime, nullable=True)
    cycle_end = Column(DateTime, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class ReminderMark(Base):
    __tablename__ = "billing_payment_reminders"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "due_date", "reminder_kind", "channel", name="uq_billing_reminder"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("establishments.id"), nullable=False)
    due_date = Column(Date, nullable=False)
    reminder_kind = Column(String(20), nullable=False)  # due_soon, overdue_grace, blocked
    channel = Column(String(20), nullable=False)  # email, whatsapp
    state = Column(String(10), default="reserved", nullable=False)  # reserved, sent, released
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
