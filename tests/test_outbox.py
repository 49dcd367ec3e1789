import asyncio

from agenda.domain.wallet.outbox import send_appointment_whatsapp
from agenda.domain.wallet.service import WalletService
from agenda.models_billing import WalletTransaction

CONTENT = {"text": "Seu horário está confirmado para amanhã às 10h."}


def send(db, sender, tenant_id, appointment_ref="ap-1", **kwargs):
    return asyncio.run(
        send_appointment_whatsapp(
            db, sender, tenant_id, "5511988887777", CONTENT, appointment_ref=appointment_ref, **kwargs
        )
    )


def blocked_reasons(db, tenant_id):
    rows = (
        db.query(WalletTransaction)
        .filter(WalletTransaction.tenant_id == tenant_id, WalletTransaction.kind == "blocked")
        .all()
    )
    return [row.reason for row in rows]


def test_message_is_sent_and_debited(db, make_tenant, fake_sender):
    tenant = make_tenant(plan="starter")
    sender = fake_sender("whatsapp")

    result = send(db, sender, tenant.id, kind="confirmation")

    assert result.ok and result.sent
    assert not result.blocked
    assert result.provider_message_id == "wamid.1"
    assert result.bucket == "included"
    assert sender.sent == [("5511988887777", CONTENT)]
    assert WalletService(db).get_snapshot(tenant.id).included_balance == 249
    debit = db.query(WalletTransaction).filter(WalletTransaction.provider_message_id == "wamid.1").one()
    assert debit.appointment_id == "ap-1"
    assert debit.metadata_json["kind"] == "confirmation"


def test_per_appointment_cap_blocks_before_sending(db, make_tenant, fake_sender):
    tenant = make_tenant(plan="starter")
    sender = fake_sender("whatsapp")
    wallet = WalletService(db, max_messages_per_appointment=1)

    first = send(db, sender, tenant.id, wallet_service=wallet)
    second = send(db, sender, tenant.id, wallet_service=wallet)

    assert first.sent
    assert second.ok and second.blocked
    assert not second.sent
    assert second.reason == "per_appointment_limit"
    assert len(sender.sent) == 1
    assert blocked_reasons(db, tenant.id) == ["per_appointment_limit"]


def test_empty_wallet_blocks_before_sending(db, make_tenant, fake_sender):
    tenant = make_tenant(plan="starter", plan_status="delinquent")
    sender = fake_sender("whatsapp")

    result = send(db, sender, tenant.id)

    assert result.ok and result.blocked
    assert result.reason == "insufficient_balance"
    assert sender.sent == []
    assert blocked_reasons(db, tenant.id) == ["insufficient_balance"]


def test_provider_failure_does_not_debit(db, make_tenant, fake_sender):
    tenant = make_tenant(plan="starter")

    result = send(db, fake_sender("whatsapp", fail=True), tenant.id)

    assert not result.ok
    assert result.reason == "send_failed"
    assert WalletService(db).get_snapshot(tenant.id).included_balance == 250


def test_send_without_provider_id_is_not_debited(db, make_tenant, fake_sender):
    tenant = make_tenant(plan="starter")

    result = send(db, fake_sender("whatsapp", response={"messages": []}), tenant.id)

    assert result.ok and result.sent
    assert result.provider_message_id is None
    assert WalletService(db).get_snapshot(tenant.id).included_balance == 250


def test_unknown_tenant(db, fake_sender):
    result = send(db, fake_sender("whatsapp"), 404)

    assert not result.ok
    assert result.reason == "wallet_unavailable"


def test_missing_recipient(db, make_tenant, fake_sender):
    tenant = make_tenant()

    result = asyncio.run(send_appointment_whatsapp(db, fake_sender("whatsapp"), tenant.id, "", CONTENT))

    assert result.reason == "invalid_payload"
