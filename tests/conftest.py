import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BILLING_MONITOR_IN_PROCESS", "false")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

from datetime import datetime  # noqa: E402
from itertools import count  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from agenda import models, models_billing  # noqa: E402,F401
from agenda.config import BillingSettings, ReminderSettings  # noqa: E402
from agenda.database import Base  # noqa: E402
from agenda.domain.billing.exceptions import GatewayError  # noqa: E402
from agenda.models import Tenant  # noqa: E402
from agenda.notifications import NotificationError  # noqa: E402

NOW = datetime(2026, 10, 19, 12, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_tenant(db):
    serial = count(1)

    def _make(**fields):
        values = {"name": "Studio Bela", "plan": "starter", "plan_status": "trialing"}
        values.update(fields)
        values.setdefault("email", f"owner{next(serial)}@example.com")
        tenant = Tenant(**values)
        db.add(tenant)
        db.commit()
        db.refresh(tenant)
        return tenant

    return _make


@pytest.fixture
def billing_settings():
    return BillingSettings(
        access_token="TEST-ACCESS-TOKEN",
        api_url="https://api.mercadopago.test",
        webhook_secrets=("whsec-primary-1234",),
        currency="BRL",
        notification_url="https://api.agenda.test/billing/webhook",
        reference_secret="reference-secret",
    )


@pytest.fixture
def reminder_settings():
    return ReminderSettings(warn_days=3, grace_days=3, interval_seconds=1800, payment_url="https://app.test/plano")


class FakeGateway:
    """In-memory Mercado Pago: payments and preapprovals keyed by id"""

    def __init__(self):
        self.payments = {}
        self.preapprovals = {}
        self.created = []
        self._ids = count(1)

    def is_available(self):
        return True

    async def get_payment(self, payment_id):
        if payment_id not in self.payments:
            raise GatewayError(f"payment {payment_id} not found", status_code=404)
        return dict(self.payments[payment_id])

    async def get_preapproval(self, preapproval_id):
        if preapproval_id not in self.preapprovals:
            raise GatewayError(f"preapproval {preapproval_id} not found", status_code=404)
        return dict(self.preapprovals[preapproval_id])

    async def create_pix_payment(
        self, amount_cents, description, external_reference, metadata=None, payer_email=None, expires_at=None
    ):
        payment_id = f"pix-{next(self._ids)}"
        payment = {
            "id": payment_id,
            "status": "pending",
            "transaction_amount": amount_cents / 100,
            "currency_id": "BRL",
            "external_reference": external_reference,
            "metadata": metadata or {},
        }
        self.payments[payment_id] = payment
        self.created.append(payment)
        pix = {
            "payment_id": payment_id,
            "qr_code": "000201PIX",
            "qr_code_base64": None,
            "copia_e_cola": "000201PIX",
            "ticket_url": None,
            "expires_at": None,
            "amount_cents": amount_cents,
        }
        return {"payment": payment, "pix": pix}

    def approve(self, payment_id, **fields):
        self.payments[payment_id] = {**self.payments[payment_id], "status": "approved", **fields}

    async def create_preapproval(
        self, amount_cents, reason, external_reference, payer_email, frequency_months=1, start_date=None
    ):
        preapproval_id = f"pre-{next(self._ids)}"
        preapproval = {
            "id": preapproval_id,
            "status": "pending",
            "reason": reason,
            "external_reference": external_reference,
            "payer_email": payer_email,
            "init_point": f"https://mp.test/subscriptions/checkout?preapproval_id={preapproval_id}",
            "auto_recurring": {
                "frequency": frequency_months,
                "frequency_type": "months",
                "transaction_amount": amount_cents / 100,
                "start_date": start_date,
            },
        }
        self.preapprovals[preapproval_id] = preapproval
        self.created.append(preapproval)
        return dict(preapproval)

    async def update_preapproval_status(self, preapproval_id, status):
        if preapproval_id not in self.preapprovals:
            raise GatewayError(f"preapproval {preapproval_id} not found", status_code=404)
        self.preapprovals[preapproval_id] = {
            **self.preapprovals[preapproval_id],
            "status": status,
            "last_modified": f"2026-10-19T12:00:00.000-03:00#{status}",
        }
        return dict(self.preapprovals[preapproval_id])


@pytest.fixture
def gateway():
    return FakeGateway()


class FakeSender:
    def __init__(self, channel, fail=False, response=None):
        self.channel = channel
        self.fail = fail
        self.response = response
        self.sent = []

    async def send(self, to, content):
        if self.fail:
            raise NotificationError(f"{self.channel} provider down")
        self.sent.append((to, content))
        if self.response is not None:
            return self.response
        return {"messages": [{"id": f"wamid.{len(self.sent)}"}]}


@pytest.fixture
def fake_sender():
    return FakeSender
