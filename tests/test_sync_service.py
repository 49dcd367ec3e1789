import asyncio
from datetime import datetime, timedelta

import pytest

from agenda.domain.billing.exceptions import (
    GatewayError,
    PackageInvalid,
    PlanAlreadyActive,
    PlanUnchanged,
    RecurringNotConfigured,
)
from agenda.domain.billing.references import build_topup_reference
from agenda.domain.billing.repository import BillingRepository
from agenda.domain.billing.subscription_service import SubscriptionService
from agenda.domain.billing.sync_service import PaymentSynchronizer, map_gateway_status
from agenda.domain.wallet.service import WalletService
from agenda.models import Tenant
from agenda.models_billing import Subscription

NOW = datetime(2026, 10, 19, 12, 0, 0)
LEGACY_PRO_REFERENCE = "plan:pro:cycle:mensal:est:42:abc"


@pytest.fixture
def synchronizer(db, gateway, billing_settings):
    return PaymentSynchronizer(db, gateway, billing_settings, clock=lambda: NOW)


def run(coro):
    return asyncio.run(coro)


def reload_tenant(db, tenant_id):
    db.expire_all()
    return db.query(Tenant).filter(Tenant.id == tenant_id).one()


def event_types(db, subscription_id):
    return [event.event_type for event in BillingRepository.list_events(db, subscription_id)]


def test_approved_payment_activates_plan_from_legacy_reference(db, make_tenant, gateway, synchronizer):
    make_tenant(id=42, plan="starter", plan_status="trialing", plan_trial_ends_at=NOW + timedelta(days=2))
    gateway.payments["pay_123"] = {
        "id": "pay_123",
        "status": "approved",
        "transaction_amount": 49.9,
        "currency_id": "BRL",
        "external_reference": LEGACY_PRO_REFERENCE,
    }

    result = run(synchronizer.sync_payment("pay_123"))

    assert result.ok
    assert result.action == "activated"
    assert result.plan == "pro"
    assert result.cycle == "monthly"
    assert result.active_until == datetime(2026, 11, 19, 12, 0, 0)

    tenant = reload_tenant(db, 42)
    assert tenant.plan == "pro"
    assert tenant.plan_status == "active"
    assert tenant.plan_active_until == datetime(2026, 11, 19, 12, 0, 0)
    assert tenant.plan_trial_ends_at is None
    assert tenant.plan_subscription_id == result.subscription_id

    subscription = db.query(Subscription).filter(Subscription.id == result.subscription_id).one()
    assert subscription.status == "active"
    assert subscription.last_event_id == "pay_123"
    assert subscription.gateway_preference_id == "pay_123"
    assert subscription.amount_cents == 4990
    assert event_types(db, subscription.id) == ["payment.approved"]


def test_replayed_payment_is_a_no_op(db, make_tenant, gateway, synchronizer):
    make_tenant(id=42)
    gateway.payments["pay_123"] = {
        "id": "pay_123",
        "status": "approved",
        "transaction_amount": 49.9,
        "external_reference": LEGACY_PRO_REFERENCE,
    }

    first = run(synchronizer.sync_payment("pay_123"))
    second = run(synchronizer.sync_payment("pay_123"))

    assert first.action == "activated"
    assert second.ok
    assert second.action == "already_processed"
    assert second.reason == "already_processed"
    assert db.query(Subscription).count() == 1
    assert event_types(db, first.subscription_id) == ["payment.approved"]


def test_checkout_then_approval_uses_the_checkout_row(db, make_tenant, gateway, synchronizer):
    tenant = make_tenant(plan="starter", plan_status="trialing")

    checkout = run(synchronizer.create_plan_checkout(tenant, "pro", "anual"))

    assert checkout["plan"] == "pro"
    assert checkout["billing_cycle"] == "yearly"
    assert checkout["amount_cents"] == 49900
    assert checkout["pix"]["payment_id"] == "pix-1"
    assert gateway.created[0]["metadata"]["kind"] == "plan"

    gateway.approve("pix-1")
    result = run(synchronizer.sync_payment("pix-1"))

    assert result.action == "activated"
    assert result.subscription_id == checkout["subscription_id"]
    assert result.active_until == datetime(2027, 10, 19, 12, 0, 0)
    assert db.query(Subscription).count() == 1
    assert event_types(db, result.subscription_id) == ["payment.create", "payment.approved"]


def test_late_expired_payment_does_not_clobber_active_subscription(db, make_tenant, gateway, synchronizer):
    make_tenant(id=42)
    gateway.payments["pay_123"] = {
        "id": "pay_123",
        "status": "approved",
        "transaction_amount": 49.9,
        "external_reference": LEGACY_PRO_REFERENCE,
    }
    gateway.payments["pay_124"] = {
        "id": "pay_124",
        "status": "cancelled",
        "status_detail": "expired",
        "external_reference": LEGACY_PRO_REFERENCE,
    }
    activated = run(synchronizer.sync_payment("pay_123"))

    result = run(synchronizer.sync_payment("pay_124"))

    assert not result.ok
    assert result.action == "ignored"
    assert result.reason == "unsupported_status:cancelled"
    db.expire_all()
    subscription = db.query(Subscription).filter(Subscription.id == activated.subscription_id).one()
    assert subscription.status == "active"
    assert subscription.last_event_id == "pay_123"
    assert reload_tenant(db, 42).plan_status == "active"


def test_expired_pix_cancels_pending_checkout(db, make_tenant, gateway, synchronizer):
    tenant = make_tenant()
    checkout = run(synchronizer.create_plan_checkout(tenant, "pro", "monthly"))
    gateway.payments["pix-1"].update(status="cancelled", status_detail="expired")

    result = run(synchronizer.sync_payment("pix-1"))

    assert result.ok
    assert result.action == "canceled_expired"
    db.expire_all()
    subscription = db.query(Subscription).filter(Subscription.id == checkout["subscription_id"]).one()
    assert subscription.status == "canceled"
    assert subscription.canceled_at == NOW
    assert reload_tenant(db, tenant.id).plan_status == "trialing"


def test_pending_payment_only_records_event(db, make_tenant, synchronizer):
    tenant = make_tenant()
    checkout = run(synchronizer.create_plan_checkout(tenant, "starter", "monthly"))

    result = run(synchronizer.sync_payment("pix-1"))

    assert not result.ok
    assert result.reason == "unsupported_status:pending"
    assert event_types(db, checkout["subscription_id"]) == ["payment.create", "payment.pending"]
    assert reload_tenant(db, tenant.id).plan_status == "trialing"


def test_approved_topup_credits_wallet_and_keeps_plan(db, make_tenant, gateway, synchronizer):
    tenant = make_tenant(plan="starter", plan_status="trialing")
    checkout = run(synchronizer.create_topup_checkout(tenant, messages=100))
    assert checkout["pack_code"] == "wa_100"
    assert checkout["amount_cents"] == 990

    gateway.approve("pix-1")
    result = run(synchronizer.sync_payment("pix-1"))
    replay = run(synchronizer.sync_payment("pix-1"))

    assert result.ok
    assert result.action == "topup_credited"
    assert result.messages == 100
    assert replay.action == "already_processed"
    assert WalletService(db).get_snapshot(tenant.id).extra_balance == 100

    tenant = reload_tenant(db, tenant.id)
    assert tenant.plan == "starter"
    assert tenant.plan_status == "trialing"
    assert tenant.plan_subscription_id is None
    assert event_types(db, checkout["subscription_id"]) == ["topup.create", "topup.approved"]


def test_topup_with_unknown_package_is_not_credited(db, make_tenant, gateway, billing_settings, synchronizer):
    tenant = make_tenant()
    gateway.payments["pay-150"] = {
        "id": "pay-150",
        "status": "approved",
        "transaction_amount": 15.0,
        "external_reference": build_topup_reference(billing_settings.reference_secret, tenant.id, 150),
        "metadata": {"kind": "whatsapp_topup", "messages": 150},
    }

    result = run(synchronizer.sync_payment("pay-150"))

    assert not result.ok
    assert result.reason == "invalid_package"
    assert event_types(db, result.subscription_id) == ["topup.invalid_package"]
    assert db.query(Subscription).filter(Subscription.id == result.subscription_id).one().kind == "whatsapp_topup"
    assert WalletService(db).get_snapshot(tenant.id).extra_balance == 0


def test_payment_without_any_correlation_is_unresolvable(gateway, synchronizer):
    gateway.payments["pay-x"] = {"id": "pay-x", "status": "approved", "external_reference": "order-999"}

    result = run(synchronizer.sync_payment("pay-x"))

    assert not result.ok
    assert result.action == "unresolvable"
    assert result.reason == "subscription_unresolvable"


def test_reference_for_unknown_tenant_is_unresolvable(gateway, synchronizer):
    gateway.payments["pay_123"] = {"id": "pay_123", "status": "approved", "external_reference": LEGACY_PRO_REFERENCE}

    assert run(synchronizer.sync_payment("pay_123")).action == "unresolvable"


def test_gateway_errors_propagate(synchronizer):
    with pytest.raises(GatewayError) as exc:
        run(synchronizer.sync_payment("does-not-exist"))
    assert exc.value.status_code == 404


def test_preapproval_lifecycle(db, make_tenant, gateway, synchronizer):
    make_tenant(id=42)
    gateway.preapprovals["pre-1"] = {
        "id": "pre-1",
        "status": "authorized",
        "external_reference": LEGACY_PRO_REFERENCE,
        "next_payment_date": "2026-11-19T12:00:00.000-03:00",
        "last_modified": "2026-10-19T12:00:00.000-03:00",
        "auto_recurring": {"transaction_amount": 49.9, "currency_id": "BRL"},
    }

    authorized = run(synchronizer.sync_subscription("pre-1"))

    assert authorized.ok
    assert authorized.action == "status_updated"
    assert authorized.status == "authorized"
    tenant = reload_tenant(db, 42)
    assert tenant.plan == "pro"
    assert tenant.plan_status == "active"
    assert tenant.plan_active_until == datetime(2026, 11, 19, 15, 0, 0)
    assert tenant.plan_subscription_id == authorized.subscription_id

    assert run(synchronizer.sync_subscription("pre-1")).action == "already_processed"

    gateway.preapprovals["pre-1"].update(status="cancelled", last_modified="2026-10-20T09:00:00.000-03:00")
    canceled = run(synchronizer.sync_subscription("pre-1"))

    assert canceled.status == "canceled"
    tenant = reload_tenant(db, 42)
    assert tenant.plan_status == "canceled"
    subscription = db.query(Subscription).filter(Subscription.id == canceled.subscription_id).one()
    assert subscription.canceled_at == NOW
    assert event_types(db, subscription.id) == ["preapproval.authorized", "preapproval.cancelled"]


def test_preapproval_with_unmapped_status_is_ignored(gateway, synchronizer):
    gateway.preapprovals["pre-2"] = {"id": "pre-2", "status": "weird"}

    result = run(synchronizer.sync_subscription("pre-2"))

    assert not result.ok
    assert result.reason == "unsupported_status:weird"


def test_checkout_rejected_while_plan_is_active(make_tenant, synchronizer, gateway):
    tenant = make_tenant(plan="pro", plan_status="active", plan_active_until=NOW + timedelta(days=20))

    with pytest.raises(PlanAlreadyActive):
        run(synchronizer.create_plan_checkout(tenant, "pro", "monthly"))
    assert gateway.created == []


def test_checkout_allowed_inside_renewal_window(make_tenant, synchronizer):
    tenant = make_tenant(plan="pro", plan_status="active", plan_active_until=NOW + timedelta(days=2))

    checkout = run(synchronizer.create_plan_checkout(tenant, "pro", "monthly"))

    assert checkout["amount_cents"] == 4990


def test_checkout_validation(make_tenant, synchronizer):
    tenant = make_tenant()

    with pytest.raises(ValueError):
        run(synchronizer.create_plan_checkout(tenant, "gold", "monthly"))
    with pytest.raises(PackageInvalid):
        run(synchronizer.create_topup_checkout(tenant, messages=150))


def test_map_gateway_status():
    assert map_gateway_status("authorized") == "authorized"
    assert map_gateway_status("Cancelled") == "canceled"
    assert map_gateway_status("finished") == "expired"
    assert map_gateway_status("in_process") == "pending"
    assert map_gateway_status("charged_back") == "past_due"
    assert map_gateway_status("approved") is None
    assert map_gateway_status(None) is None


def test_paid_topup_never_becomes_the_plan_subscription(db, make_tenant, gateway, synchronizer):
    tenant = make_tenant(plan="starter", plan_status="trialing")
    run(synchronizer.create_topup_checkout(tenant, messages=100))
    gateway.approve("pix-1")
    run(synchronizer.sync_payment("pix-1"))

    overview = SubscriptionService(db).get_overview(tenant.id)

    assert overview["plan"]["status"] == "trialing"
    assert overview["subscription"] is None
    assert overview["history"] == []
    topup = db.query(Subscription).filter(Subscription.tenant_id == tenant.id).one()
    assert topup.kind == "whatsapp_topup"
    assert topup.status == "active"


def test_pending_plan_checkout_outranks_paid_topup(db, make_tenant, gateway, synchronizer):
    tenant = make_tenant(plan="starter", plan_status="trialing")
    plan_checkout = run(synchronizer.create_plan_checkout(tenant, "pro", "monthly"))
    run(synchronizer.create_topup_checkout(tenant, pack_code="wa_200"))
    gateway.approve("pix-2")
    run(synchronizer.sync_payment("pix-2"))

    overview = SubscriptionService(db).get_overview(tenant.id)

    assert overview["subscription"]["id"] == plan_checkout["subscription_id"]
    assert overview["subscription"]["status"] == "pending"
    assert [row["kind"] for row in overview["history"]] == ["plan"]


def test_plan_change_creates_preapproval_and_reuses_pending_link(db, make_tenant, gateway, synchronizer):
    tenant = make_tenant(plan="starter", plan_status="trialing")

    first = run(synchronizer.change_plan(tenant, "pro", "monthly"))
    again = run(synchronizer.change_plan(tenant, "pro", "monthly"))
    forced = run(synchronizer.change_plan(tenant, "pro", "monthly", force_new=True))

    assert first["preapproval_id"] == "pre-1"
    assert first["status"] == "pending"
    assert first["init_point"].endswith("preapproval_id=pre-1")
    assert first["start_date"] is None
    assert first["reused"] is False
    assert again["reused"] is True
    assert again["subscription_id"] == first["subscription_id"]
    assert forced["preapproval_id"] == "pre-2"
    assert len(gateway.created) == 2
    assert gateway.created[0]["auto_recurring"]["frequency"] == 1
    assert gateway.created[0]["auto_recurring"]["transaction_amount"] == 49.9
    assert event_types(db, first["subscription_id"]) == ["preapproval.create"]


def test_plan_change_reuse_can_be_disabled(make_tenant, gateway, db, billing_settings):
    from dataclasses import replace

    synchronizer = PaymentSynchronizer(db, gateway, replace(billing_settings, reuse_pending=False), clock=lambda: NOW)
    tenant = make_tenant(plan="starter")

    run(synchronizer.change_plan(tenant, "premium", "monthly"))
    second = run(synchronizer.change_plan(tenant, "premium", "monthly"))

    assert second["reused"] is False
    assert len(gateway.created) == 2


def test_upgrade_of_active_plan_starts_charging_at_cycle_end(make_tenant, gateway, synchronizer):
    active_until = NOW + timedelta(days=10)
    tenant = make_tenant(plan="starter", plan_status="active", plan_active_until=active_until)

    result = run(synchronizer.change_plan(tenant, "premium", "monthly"))

    assert result["start_date"] == active_until
    assert gateway.created[0]["auto_recurring"]["start_date"] == active_until


def test_downgrade_starts_immediately(make_tenant, gateway, synchronizer):
    tenant = make_tenant(plan="premium", plan_status="active", plan_active_until=NOW + timedelta(days=10))

    result = run(synchronizer.change_plan(tenant, "starter", "monthly"))

    assert result["start_date"] is None
    assert result["amount_cents"] == 1490


def test_plan_change_validation(make_tenant, synchronizer, gateway):
    tenant = make_tenant(plan="pro")

    with pytest.raises(PlanUnchanged):
        run(synchronizer.change_plan(tenant, "pro", "monthly"))
    with pytest.raises(ValueError):
        run(synchronizer.change_plan(tenant, "gold", "monthly"))
    assert gateway.created == []


def test_recurring_setup_keeps_plan_and_cycle(make_tenant, gateway, synchronizer):
    active_until = NOW + timedelta(days=30)
    tenant = make_tenant(plan="pro", plan_status="active", plan_cycle="yearly", plan_active_until=active_until)

    result = run(synchronizer.setup_recurring(tenant))

    assert result["plan"] == "pro"
    assert result["billing_cycle"] == "yearly"
    assert result["amount_cents"] == 49900
    assert result["start_date"] == active_until
    assert gateway.created[0]["auto_recurring"]["frequency"] == 12


def test_pause_resume_and_cancel_recurring(db, make_tenant, gateway, synchronizer):
    tenant = make_tenant(plan="starter", plan_status="trialing")
    checkout = run(synchronizer.setup_recurring(tenant))
    gateway.preapprovals["pre-1"].update(
        status="authorized",
        last_modified="2026-10-19T12:00:00.000-03:00",
        next_payment_date="2026-11-19T12:00:00.000-03:00",
    )
    run(synchronizer.sync_subscription("pre-1"))
    tenant = reload_tenant(db, tenant.id)
    assert tenant.plan_subscription_id == checkout["subscription_id"]

    paused = run(synchronizer.update_recurring_status(tenant, "pause"))
    assert paused.status == "paused"
    assert reload_tenant(db, tenant.id).plan_status == "active"

    resumed = run(synchronizer.update_recurring_status(tenant, "resume"))
    assert resumed.status == "authorized"

    canceled = run(synchronizer.update_recurring_status(tenant, "cancel"))
    assert canceled.status == "canceled"
    assert reload_tenant(db, tenant.id).plan_status == "canceled"
    assert event_types(db, checkout["subscription_id"]) == [
        "preapproval.create",
        "preapproval.authorized",
        "preapproval.paused",
        "preapproval.authorized",
        "preapproval.cancelled",
    ]


def test_recurring_actions_need_a_preapproval(make_tenant, synchronizer):
    tenant = make_tenant()

    with pytest.raises(RecurringNotConfigured):
        run(synchronizer.update_recurring_status(tenant, "pause"))
    with pytest.raises(ValueError):
        run(synchronizer.update_recurring_status(tenant, "stop"))
