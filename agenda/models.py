from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from .database import Base


class Tenant(Base):
    __tablename__ = "establishments"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=True)
    phone = Column(String(32), nullable=True)  # WhatsApp number, E.164 without "+"
    plan = Column(String(20), default="starter", nullable=False)  # starter, pro, premium
    # trialing, active, pending, delinquent, canceled, expired
    plan_status = Column(String(20), default="trialing", nullable=False, index=True)
    plan_trial_ends_at = Column(DateTime, nullable=True)
    plan_active_until = Column(DateTime, nullable=True, index=True)  # Next due date
    plan_subscription_id = Column(Integer, nullable=True)  # Local subscriptions.id
    plan_cycle = Column(String(10), default="monthly", nullable=False)  # monthly, yearly
    # Billing reminder preferences
    notify_email = Column(Boolean, default=True, nullable=False)
    notify_whatsapp = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
