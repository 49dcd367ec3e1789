"""
Dunning monitor - payment reminders and suspension of overdue establishments.

The billing state is derived from plan status and due date on every tick and
never stored. Reminders are de-duplicated per (tenant, due date, kind,
channel) through ``billing_payment_reminders``: a row is reserved before
sending, marked sent afterwards, or released on failure so a later tick can
retry it.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import ReminderSettings
from ...models import Tenant
from ...models_billing import ReminderMark
from ...notifications import MessageSender
from ...plans import get_plan_label
from ...shared.dates import MONTH_NAMES_PT, utcnow

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400

REMINDER_KINDS = {
    "due_soon": "due_soon",
    "overdue": "overdue_grace",
    "blocked": "blocked",
}


@dataclass
class BillingState:
    state: str  # trial, ok, due_soon, overdue, blocked
    plan_status: str
    due_at: Optional[datetime]
    trial_ends_at: Optional[datetime]
    warn_days: int
    grace_days: int
    days_to_due: Optional[int] = None
    days_overdue: Optional[int] = None
    grace_days_remaining: int = 0


def classify(
    status: Optional[str],
    active_until: Optional[datetime],
    trial_ends_at: Optional[datetime],
    warn_days: int = 3,
    grace_days: int = 3,
    now: Optional[datetime] = None,
) -> BillingState:
    """Billing state of an account at ``now``"""
    now = now or utcnow()
    status = (status or "").strip().lower() or "trialing"
    base = {
        "plan_status": status,
        "due_at": active_until,
        "trial_ends_at": trial_ends_at,
        "warn_days": warn_days,
        "grace_days": grace_days,
    }

    if status == "trialing" and (active_until is None or active_until > now):
        return BillingState(state="trial", grace_days_remaining=grace_days, **base)

    if active_until is None:
        return BillingState(state="blocked" if status == "delinquent" else "ok", **base)

    seconds = (active_until - now).total_seconds()
    if seconds >= 0:
        days_to_due = math.ceil(seconds / DAY_SECONDS)
        state = "due_soon" if days_to_due <= warn_days else "ok"
        return BillingState(state=state, days_to_due=days_to_due, grace_days_remaining=grace_days, **base)

    days_overdue = math.floor(-seconds / DAY_SECONDS)
    if days_overdue < grace_days and status != "delinquent":
        return BillingState(
            state="overdue",
            days_to_due=0,
            days_overdue=days_overdue,
            grace_days_remaining=max(grace_days - days_overdue, 0),
            **base,
        )

    base["plan_status"] = "delinquent"
    return BillingState(state="blocked", days_to_due=0, days_overdue=days_overdue, **base)


# ----------------------------------------------------------------------
# Reminder copy
# ----------------------------------------------------------------------


def _first_name(full: Optional[str]) -> str:
    parts = str(full or "").split()
    return parts[0] if parts else "por aqui"


def _format_pt_date(value: Optional[datetime]) -> str:
    if value is None:
        return "hoje"
    return f"{value.day:02d} de {MONTH_NAMES_PT[value.month - 1][:3]}."


def _plural_days(value: Optional[int]) -> str:
    days = max(0, int(value or 0))
    return "1 dia" if days == 1 else f"{days} dias"


def build_reminder_copy(kind: str, tenant: Tenant, state: BillingState, payment_url: str) -> dict:
    """Subject and text of a reminder (pt-BR)"""
    name = _first_name(tenant.name)
    plan_label = get_plan_label(tenant.plan)
    due_label = _format_pt_date(state.due_at)

    if kind == "due_soon":
        days_label = _plural_days(state.days_to_due)
        return {
            "subject": f"Seu plano vence em {days_label}",
            "text": (
                f"Oi {name}! Seu plano {plan_label} vence em {due_label} ({days_label}). "
                f"Gere o PIX em {payment_url} para manter os agendamentos ativos. "
                "Se já pagou, pode ignorar este lembrete."
            ),
        }

    if kind == "overdue_grace":
        deadline = _format_pt_date(state.due_at + timedelta(days=state.grace_days)) if state.due_at else due_label
        grace_label = _plural_days(state.grace_days_remaining)
        return {
            "subject": "Seu plano está em atraso",
            "text": (
                f"Oi {name}! Seu plano {plan_label} venceu em {due_label}. "
                f"Você tem {grace_label} de carência (até {deadline}) antes do bloqueio. "
                f"Regularize via PIX em {payment_url}."
            ),
        }

    return {
        "subject": "Plano temporariamente suspenso",
        "text": (
            f"Oi {name}! O acesso do plano {plan_label} foi suspenso por falta de pagamento. "
            f"Assim que o PIX for confirmado liberamos tudo automaticamente: {payment_url}"
        ),
    }


# ----------------------------------------------------------------------
# Monitor
# ----------------------------------------------------------------------


class DunningMonitor:
    """Periodic reminder and suspension job"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        senders: dict[str, MessageSender],
        settings: ReminderSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.senders = senders
        self.settings = settings
        self._now = clock
        self._ticking = False

    # Reservation records -------------------------------------------------

    @staticmethod
    def _mark_filter(query, tenant_id: int, due_date, kind: str, channel: str):
        return query.filter(
            ReminderMark.tenant_id == tenant_id,
            ReminderMark.due_date == due_date,
            ReminderMark.reminder_kind == kind,
            ReminderMark.channel == channel,
        )

    def _reserve(self, db: Session, tenant_id: int, due_date, kind: str, channel: str) -> bool:
        """Claim the reminder; False when it was already sent or is being sent"""
        db.add(
            ReminderMark(
                tenant_id=tenant_id, due_date=due_date, reminder_kind=kind, channel=channel, state="reserved"
            )
        )
        try:
            db.commit()
            return True
        except IntegrityError:
            db.rollback()

        # A released row (earlier send failed) can be claimed again
        reclaimed = (
            self._mark_filter(db.query(ReminderMark), tenant_id, due_date, kind, channel)
            .filter(ReminderMark.state == "released")
            .update({ReminderMark.state: "reserved"}, synchronize_session=False)
        )
        db.commit()
        return reclaimed > 0

    def _set_state(self, db: Session, tenant_id: int, due_date, kind: str, channel: str, state: str) -> None:
        self._mark_filter(db.query(ReminderMark), tenant_id, due_date, kind, channel).update(
            {ReminderMark.state: state}, synchronize_session=False
        )
        db.commit()

    # Per-account handling ------------------------------------------------

    def _apply_delinquent(self, db: Session, tenant: Tenant) -> bool:
        updated = (
            db.query(Tenant)
            .filter(Tenant.id == tenant.id, Tenant.plan_status != "delinquent")
            .update({Tenant.plan_status: "delinquent"}, synchronize_session=False)
        )
        db.commit()
        if updated:
            logger.warning(f"🚫 Establishment {tenant.id} suspended (plan_status=delinquent)")
        return updated > 0

    def _recipient(self, tenant: Tenant, channel: str) -> Optional[str]:
        if channel == "email" and tenant.notify_email and tenant.email:
            return tenant.email
        if channel == "whatsapp" and tenant.notify_whatsapp and tenant.phone:
            return tenant.phone
        return None

    async def _send_reminder(
        self, db: Session, tenant: Tenant, kind: str, channel: str, state: BillingState
    ) -> bool:
        sender = self.senders.get(channel)
        recipient = self._recipient(tenant, channel)
        if sender is None or not recipient:
            return False

        tenant_id = tenant.id
        due_date = state.due_at.date()
        if not self._reserve(db, tenant_id, due_date, kind, channel):
            return False

        content = build_reminder_copy(kind, tenant, state, self.settings.payment_url)
        try:
            await sender.send(recipient, content)
        except Exception as e:
            logger.error(f"❌ Billing reminder {kind} via {channel} failed for establishment {tenant_id}: {e}")
            self._set_state(db, tenant_id, due_date, kind, channel, "released")
            return False

        self._set_state(db, tenant_id, due_date, kind, channel, "sent")
        logger.info(f"🔔 Billing reminder {kind} sent via {channel} to establishment {tenant_id}")
        return True

    async def handle_account(self, db: Session, tenant: Tenant) -> tuple[BillingState, bool]:
        state = classify(
            tenant.plan_status,
            tenant.plan_active_until,
            tenant.plan_trial_ends_at,
            self.settings.warn_days,
            self.settings.grace_days,
            now=self._now(),
        )
        if state.state == "blocked":
            self._apply_delinquent(db, tenant)
        if state.due_at is None or state.state in ("ok", "trial"):
            return state, False

        kind = REMINDER_KINDS[state.state]
        notified = False
        for channel in self.settings.channels:
            if await self._send_reminder(db, tenant, kind, channel, state):
                notified = True
        return state, notified

    async def tick(self) -> Optional[dict]:
        """One pass over accounts with a due date; None when a tick is already running"""
        if self._ticking:
            logger.info("⏭️ Billing reminder tick already running, skipping")
            return None

        self._ticking = True
        counts = {"warned": 0, "overdue": 0, "blocked": 0}
        db = self.session_factory()
        try:
            tenants = (
                db.query(Tenant)
                .filter(or_(Tenant.plan_active_until.isnot(None), Tenant.plan_status == "delinquent"))
                .order_by(Tenant.id)
                .all()
            )
            for tenant in tenants:
                try:
                    state, notified = await self.handle_account(db, tenant)
                except Exception as e:
                    db.rollback()
                    logger.error(f"❌ Billing reminder failed for establishment {tenant.id}: {e}", exc_info=True)
                    continue
                if not notified:
                    continue
                if state.state == "due_soon":
                    counts["warned"] += 1
                elif state.state == "overdue":
                    counts["overdue"] += 1
                elif state.state == "blocked":
                    counts["blocked"] += 1

            if any(counts.values()):
                logger.info(f"📊 Billing reminders sent: {counts}")
            return counts
        finally:
            db.close()
            self._ticking = False

    async def run_forever(self, initial_delay: float = 15.0) -> None:
        """In-process scheduler used when no arq worker runs"""
        if self.settings.disabled:
            logger.info("⏸️ Billing reminders disabled via BILLING_REMINDERS_DISABLED")
            return

        logger.info(f"🔔 Billing monitor started (every {self.settings.interval_seconds}s)")
        await asyncio.sleep(initial_delay)
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"❌ Billing reminder tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.settings.interval_seconds)
