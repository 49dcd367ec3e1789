"""
WhatsApp outbox - appointment messages gated by the wallet.

Check the per-appointment cap and the balance, send, then debit using the
provider message id. Blocked sends never reach the provider and are logged
as zero-delta ledger rows; the appointment flow continues either way.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ...notifications import MessageSender, NotificationError, extract_provider_message_id
from ..billing.exceptions import InsufficientBalance, PerAppointmentLimitExceeded, TenantNotFound
from .service import DebitResult, WalletService

logger = logging.getLogger(__name__)


@dataclass
class OutboxResult:
    ok: bool
    sent: bool = False
    blocked: bool = False
    reason: Optional[str] = None
    provider_message_id: Optional[str] = None
    bucket: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


async def send_appointment_whatsapp(
    db: Session,
    sender: MessageSender,
    tenant_id: int,
    to: str,
    content: dict,
    appointment_ref=None,
    kind: str = "appointment",
    metadata: Optional[dict] = None,
    wallet_service: Optional[WalletService] = None,
) -> OutboxResult:
    """
    Send one appointment WhatsApp message if the wallet allows it.

    Args:
        db: Database session
        sender: WhatsApp sender
        tenant_id: Establishment paying for the message
        to: Recipient phone number
        content: ``text`` or ``template`` for the sender
        appointment_ref: Appointment the message belongs to (per-appointment cap)
        kind: Message kind stored on the ledger row (confirmation, reminder, ...)
    """
    if not tenant_id or not to:
        return OutboxResult(ok=False, reason="invalid_payload")

    wallet = wallet_service or WalletService(db)
    try:
        snapshot = wallet.get_snapshot(tenant_id)
    except TenantNotFound:
        return OutboxResult(ok=False, reason="wallet_unavailable")

    if appointment_ref is not None:
        sent_count = wallet.count_appointment_debits(tenant_id, appointment_ref)
        if sent_count >= wallet.max_messages_per_appointment:
            wallet.record_blocked(
                tenant_id,
                PerAppointmentLimitExceeded.reason,
                appointment_ref,
                {"kind": kind, "sent_count": sent_count, "max": wallet.max_messages_per_appointment},
            )
            return OutboxResult(ok=True, blocked=True, reason=PerAppointmentLimitExceeded.reason)

    if snapshot.total_balance < 1:
        wallet.record_blocked(
            tenant_id,
            InsufficientBalance.reason,
            appointment_ref,
            {"kind": kind, "included_balance": snapshot.included_balance, "extra_balance": snapshot.extra_balance},
        )
        return OutboxResult(ok=True, blocked=True, reason=InsufficientBalance.reason)

    try:
        response = await sender.send(to, content)
    except NotificationError as e:
        logger.warning(f"⚠️ WhatsApp {kind} for tenant {tenant_id} not sent: {e}")
        return OutboxResult(ok=False, reason="send_failed")

    provider_message_id = extract_provider_message_id(response)
    if not provider_message_id:
        # Nothing to key the debit on
        logger.warning(f"⚠️ WhatsApp {kind} for tenant {tenant_id} sent without provider message id")
        return OutboxResult(ok=True, sent=True)

    debit: DebitResult = wallet.debit(
        tenant_id,
        provider_message_id,
        appointment_ref=appointment_ref,
        metadata={"kind": kind, **(metadata or {})},
    )
    return OutboxResult(
        ok=True,
        sent=True,
        provider_message_id=provider_message_id,
        bucket=debit.bucket,
        blocked=not debit.ok,
        reason=debit.blocked_reason,
    )
