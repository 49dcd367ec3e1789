"""
Payment synchronizer - reconciles Mercado Pago state into local subscriptions.

Notifications arrive at least once and possibly out of order, so every sync
fetches the resource from the gateway and applies the gateway's view. The
subscription's ``last_event_id`` is the idempotency watermark; a replayed
notification for an already-applied event is a no-op. The subscription row
is locked for the read-check-write sequence.

Local subscription lookup order:

1. ``gateway_preference_id`` (payments) / ``gateway_subscription_id`` (preapprovals)
2. ``external_reference``
3. a minimal pending record rebuilt from the reference tokens
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import BillingSettings
from ...models import Tenant
from ...models_billing import Subscription
from ...plans import (
    CYCLE_FREQUENCY_MONTHS,
    add_billing_cycle,
    get_plan_label,
    get_plan_price_cents,
    is_upgrade,
    normalize_billing_cycle,
    normalize_plan,
    resolve_topup_package,
)
from ...shared.dates import parse_gateway_datetime, utcnow
from ..wallet.service import WalletService
from .exceptions import (
    AlreadyProcessed,
    PackageInvalid,
    PlanAlreadyActive,
    PlanUnchanged,
    RecurringNotConfigured,
    SubscriptionUnresolvable,
)
from .mercadopago_service import MercadoPagoService
from .references import (
    PLAN_KIND,
    TOPUP_KIND,
    ExternalReference,
    build_plan_reference,
    build_topup_reference,
    parse_external_reference,
)
from .repository import BillingRepository

logger = logging.getLogger(__name__)

GATEWAY_STATUS_MAP = {
    "authorized": "authorized",
    "active": "active",
    "paused": "paused",
    "halted": "paused",
    "stopped": "canceled",
    "cancelled": "canceled",
    "canceled": "canceled",
    "cancelled_by_collector": "canceled",
    "cancelled_by_merchant": "canceled",
    "expired": "expired",
    "finished": "expired",
    "pending": "pending",
    "inprocess": "pending",
    "in_process": "pending",
    "charged_back": "past_due",
    "rejected": "past_due",
}

# Days before the due date when a same-plan checkout is accepted as a renewal
RENEWAL_WINDOW_DAYS = 3

# Local action -> gateway preapproval status
RECURRING_ACTIONS = {"pause": "paused", "resume": "authorized", "cancel": "cancelled"}


def map_gateway_status(status: Optional[str]) -> Optional[str]:
    """Local subscription status for a gateway status; None when unmapped"""
    return GATEWAY_STATUS_MAP.get((status or "").strip().lower())


def _amount_cents(value, fallback: Optional[int] = None) -> Optional[int]:
    try:
        return int(round(float(value) * 100))
    except (TypeError, ValueError):
        return fallback


@dataclass
class SyncResult:
    ok: bool
    action: str
    reason: Optional[str] = None
    subscription_id: Optional[int] = None
    tenant_id: Optional[int] = None
    status: Optional[str] = None
    plan: Optional[str] = None
    cycle: Optional[str] = None
    active_until: Optional[datetime] = None
    messages: Optional[int] = None

    def as_dict(self) -> dict:
        return asdict(self)


class PaymentSynchronizer:
    """Drives the subscription state machine from gateway payments and preapprovals"""

    def __init__(
        self,
        db: Session,
        gateway: MercadoPagoService,
        settings: BillingSettings,
        wallet_service: Optional[WalletService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.repo = BillingRepository()
        self.wallet = wallet_service or WalletService(db)
        self._now = clock

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _reconstruct(
        self, reference: Optional[ExternalReference], external_reference: str, payment: dict, **gateway_ids
    ) -> Subscription:
        """Rebuild a pending subscription when the checkout write was lost"""
        if not reference or not reference.tenant_id:
            raise SubscriptionUnresolvable(
                f"No subscription for reference {external_reference[:60]!r}"
            )
        tenant = self.repo.get_tenant(self.db, reference.tenant_id)
        if tenant is None:
            raise SubscriptionUnresolvable(f"Tenant {reference.tenant_id} from reference not found")

        plan = reference.plan or (normalize_plan(tenant.plan) if reference.is_topup else None) or "starter"
        subscription = self.repo.create_subscription(
            self.db,
            tenant_id=tenant.id,
            plan=plan,
            kind=TOPUP_KIND if reference.is_topup else PLAN_KIND,
            billing_cycle=reference.cycle,
            status="pending",
            amount_cents=_amount_cents(payment.get("transaction_amount")),
            currency=(payment.get("currency_id") or self.settings.currency).upper(),
            external_reference=external_reference or None,
            **gateway_ids,
        )
        logger.warning(
            f"⚠️ Rebuilt subscription {subscription.id} for tenant {tenant.id} from reference "
            f"(kind={reference.kind}, plan={plan}, cycle={reference.cycle})"
        )
        return subscription

    def _resolve_for_payment(
        self, payment_id: str, external_reference: str, reference: Optional[ExternalReference], payment: dict
    ) -> Subscription:
        subscription = self.repo.find_by_preference_id(self.db, payment_id, lock=True)
        if subscription is None and external_reference:
            subscription = self.repo.find_by_external_reference(self.db, external_reference, lock=True)
        if subscription is None:
            subscription = self._reconstruct(
                reference, external_reference, payment, gateway_preference_id=payment_id
            )
        return subscription

    def _resolve_for_preapproval(
        self, preapproval_id: str, external_reference: str, reference: Optional[ExternalReference], data: dict
    ) -> Subscription:
        subscription = self.repo.find_by_gateway_subscription_id(self.db, preapproval_id, lock=True)
        if subscription is None and external_reference:
            subscription = self.repo.find_by_external_reference(self.db, external_reference, lock=True)
        if subscription is None:
            if reference is not None and reference.is_topup:
                raise SubscriptionUnresolvable("Top-up references never belong to a preapproval")
            subscription = self._reconstruct(
                reference, external_reference, data, gateway_subscription_id=preapproval_id
            )
        return subscription

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def sync_payment(self, payment_id: str, event_payload: Optional[dict] = None) -> SyncResult:
        """
        Reconcile one payment.

        Raises:
            GatewayError: the payment could not be fetched
        """
        payment = await self.gateway.get_payment(str(payment_id))
        payment_id = str(payment["id"])
        status = str(payment.get("status") or "").lower()
        status_detail = str(payment.get("status_detail") or "").lower()
        external_reference = str(payment.get("external_reference") or "")
        metadata = payment.get("metadata") or {}
        reference = parse_external_reference(external_reference, self.settings.reference_secret)
        is_topup = (reference is not None and reference.is_topup) or (
            str(metadata.get("kind") or "").lower() == TOPUP_KIND
        )

        logger.info(
            f"🔍 Syncing payment {payment_id}: status={status} detail={status_detail} "
            f"topup={is_topup} reference={external_reference[:60]}"
        )

        try:
            subscription = self._resolve_for_payment(payment_id, external_reference, reference, payment)
        except SubscriptionUnresolvable as e:
            self.db.rollback()
            logger.warning(f"⚠️ Payment {payment_id} ignored: {e}")
            return SyncResult(ok=False, action="unresolvable", reason=e.reason, status=status)

        is_topup = is_topup or subscription.kind == TOPUP_KIND
        result_base = {"subscription_id": subscription.id, "tenant_id": subscription.tenant_id}
        event_body = {"event": event_payload, "payment": payment}

        if subscription.last_event_id and subscription.last_event_id == payment_id:
            self.db.commit()
            logger.info(f"🔁 Payment {payment_id} already processed for subscription {subscription.id}")
            return SyncResult(
                ok=True,
                action="already_processed",
                reason=AlreadyProcessed.reason,
                status=subscription.status,
                **result_base,
            )

        if status == "cancelled" and status_detail == "expired" and subscription.status == "pending":
            if self.repo.cancel_if_pending(self.db, subscription.id, payment_id, self._now()):
                self.repo.append_event(
                    self.db, subscription.id, "payment.cancelled", payment_id, event_body
                )
                self.db.commit()
                logger.info(f"⌛ PIX expired, subscription {subscription.id} canceled")
                return SyncResult(ok=True, action="canceled_expired", status="canceled", **result_base)

        if status != "approved":
            self.repo.append_event(self.db, subscription.id, f"payment.{status or 'unknown'}", payment_id, event_body)
            self.db.commit()
            reason = f"unsupported_status:{status or 'unknown'}"
            logger.info(f"ℹ️ Payment {payment_id} not applied ({reason})")
            return SyncResult(ok=False, action="ignored", reason=reason, status=status, **result_base)

        if is_topup:
            return self._apply_topup(subscription, payment, reference, metadata, event_body, result_base)
        return self._apply_plan_payment(subscription, payment, reference, event_body, result_base)

    def _apply_topup(
        self,
        subscription: Subscription,
        payment: dict,
        reference: Optional[ExternalReference],
        metadata: dict,
        event_body: dict,
        result_base: dict,
    ) -> SyncResult:
        payment_id = str(payment["id"])
        pack_code = metadata.get("pack_code") or (reference.pack_code if reference else None)
        try:
            messages = int(metadata.get("messages") or (reference.messages if reference else 0) or 0)
        except (TypeError, ValueError):
            messages = 0
        package = resolve_topup_package(code=pack_code) if pack_code else None
        package = package or resolve_topup_package(messages=messages)

        if package is None:
            self.repo.append_event(self.db, subscription.id, "topup.invalid_package", payment_id, event_body)
            self.db.commit()
            logger.error(
                f"❌ Approved top-up {payment_id} has unknown package (messages={messages}, code={pack_code})"
            )
            return SyncResult(ok=False, action="ignored", reason=PackageInvalid.reason, **result_base)

        tenant_id = subscription.tenant_id
        subscription_id = subscription.id
        # Release the subscription lock; the wallet takes its own row lock
        self.db.commit()

        credit = self.wallet.credit(
            tenant_id,
            package,
            payment_id,
            subscription_id=subscription_id,
            metadata={"kind": TOPUP_KIND, "messages": package["messages"], "pack_code": package["code"]},
        )

        subscription = self.repo.find_by_preference_id(self.db, payment_id, lock=True) or self.repo.get_subscription(
            self.db, subscription_id
        )
        self.repo.update_subscription(
            self.db,
            subscription,
            status="active",
            amount_cents=_amount_cents(payment.get("transaction_amount"), subscription.amount_cents),
            currency=(payment.get("currency_id") or subscription.currency or self.settings.currency).upper(),
            last_event_id=payment_id,
        )
        self.repo.append_event(
            self.db,
            subscription.id,
            "topup.approved",
            payment_id,
            {**event_body, "messages": package["messages"], "pack_code": package["code"]},
        )
        self.db.commit()

        logger.info(
            f"✅ Top-up {payment_id} approved for tenant {tenant_id}: {package['messages']} messages "
            f"(idempotent={credit.idempotent})"
        )
        return SyncResult(
            ok=True, action="topup_credited", status="active", messages=package["messages"], **result_base
        )

    def _apply_plan_payment(
        self,
        subscription: Subscription,
        payment: dict,
        reference: Optional[ExternalReference],
        event_body: dict,
        result_base: dict,
    ) -> SyncResult:
        payment_id = str(payment["id"])
        now = self._now()
        plan = normalize_plan(subscription.plan) or (reference.plan if reference else None) or "starter"
        cycle = normalize_billing_cycle(subscription.billing_cycle)
        active_until = add_billing_cycle(now, cycle)

        self.repo.update_subscription(
            self.db,
            subscription,
            status="active",
            plan=plan,
            billing_cycle=cycle,
            amount_cents=_amount_cents(payment.get("transaction_amount"), subscription.amount_cents),
            currency=(payment.get("currency_id") or subscription.currency or self.settings.currency).upper(),
            current_period_end=active_until,
            last_event_id=payment_id,
        )
        self.repo.append_event(self.db, subscription.id, "payment.approved", payment_id, event_body)

        tenant = self.repo.get_tenant(self.db, subscription.tenant_id)
        if tenant is not None:
            self.repo.update_tenant_plan(
                self.db,
                tenant,
                plan=plan,
                plan_status="active",
                plan_cycle=cycle,
                plan_trial_ends_at=None,
                plan_active_until=active_until,
                plan_subscription_id=subscription.id,
            )
        self.db.commit()
        logger.info(
            f"✅ Payment {payment_id} approved: tenant {subscription.tenant_id} on {plan}/{cycle} "
            f"until {active_until.isoformat()}"
        )

        if tenant is not None:
            self._refresh_wallet(tenant.id)

        return SyncResult(
            ok=True,
            action="activated",
            status="active",
            plan=plan,
            cycle=cycle,
            active_until=active_until,
            **result_base,
        )

    def _refresh_wallet(self, tenant_id: int) -> None:
        """Apply the new plan allotment right away instead of on the next wallet access"""
        try:
            self.wallet.get_snapshot(tenant_id)
        except Exception as e:
            logger.warning(f"⚠️ Wallet refresh after activation failed for tenant {tenant_id}: {e}")

    # ------------------------------------------------------------------
    # Preapprovals (recurring subscriptions)
    # ------------------------------------------------------------------

    async def sync_subscription(self, gateway_id: str, event_payload: Optional[dict] = None) -> SyncResult:
        """
        Reconcile one preapproval.

        Raises:
            GatewayError: the preapproval could not be fetched
        """
        data = await self.gateway.get_preapproval(str(gateway_id))
        return self._apply_preapproval(data, event_payload)

    def _apply_preapproval(self, data: dict, event_payload: Optional[dict]) -> SyncResult:
        preapproval_id = str(data["id"])
        raw_status = str(data.get("status") or "").lower()
        mapped = map_gateway_status(raw_status)
        if mapped is None:
            logger.info(f"ℹ️ Preapproval {preapproval_id} has unmapped status {raw_status!r}, ignoring")
            return SyncResult(ok=False, action="ignored", reason=f"unsupported_status:{raw_status or 'unknown'}")

        event_id = f"{preapproval_id}:{raw_status}:{data.get('last_modified') or ''}"[:128]
        external_reference = str(data.get("external_reference") or "")
        reference = parse_external_reference(external_reference, self.settings.reference_secret)

        try:
            subscription = self._resolve_for_preapproval(preapproval_id, external_reference, reference, data)
        except SubscriptionUnresolvable as e:
            self.db.rollback()
            logger.warning(f"⚠️ Preapproval {preapproval_id} ignored: {e}")
            return SyncResult(ok=False, action="unresolvable", reason=e.reason, status=mapped)

        result_base = {"subscription_id": subscription.id, "tenant_id": subscription.tenant_id}
        if subscription.last_event_id == event_id:
            self.db.commit()
            return SyncResult(
                ok=True,
                action="already_processed",
                reason=AlreadyProcessed.reason,
                status=subscription.status,
                **result_base,
            )

        now = self._now()
        cycle = normalize_billing_cycle(subscription.billing_cycle)
        next_payment = parse_gateway_datetime(data.get("next_payment_date"))
        recurring = data.get("auto_recurring") or {}

        fields = {
            "status": mapped,
            "gateway_subscription_id": preapproval_id,
            "last_event_id": event_id,
            "amount_cents": _amount_cents(recurring.get("transaction_amount"), subscription.amount_cents),
        }
        if next_payment:
            fields["current_period_end"] = next_payment
        if mapped == "canceled" and not subscription.canceled_at:
            fields["canceled_at"] = now
        self.repo.update_subscription(self.db, subscription, **fields)
        self.repo.append_event(
            self.db,
            subscription.id,
            f"preapproval.{raw_status}",
            event_id,
            {"event": event_payload, "preapproval": data},
        )

        tenant = self.repo.get_tenant(self.db, subscription.tenant_id)
        active_until = None
        if tenant is not None:
            if mapped in ("authorized", "active"):
                active_until = next_payment or add_billing_cycle(now, cycle)
                self.repo.update_tenant_plan(
                    self.db,
                    tenant,
                    plan=normalize_plan(subscription.plan) or tenant.plan,
                    plan_status="active",
                    plan_cycle=cycle,
                    plan_trial_ends_at=None,
                    plan_active_until=active_until,
                    plan_subscription_id=subscription.id,
                )
            elif mapped in ("canceled", "expired") and tenant.plan_subscription_id == subscription.id:
                self.repo.update_tenant_plan(self.db, tenant, plan_status=mapped)

        self.db.commit()
        logger.info(f"✅ Preapproval {preapproval_id} synced: subscription {subscription.id} -> {mapped}")
        return SyncResult(
            ok=True,
            action="status_updated",
            status=mapped,
            plan=subscription.plan,
            cycle=cycle,
            active_until=active_until,
            **result_base,
        )

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def _open_checkout(self, tenant: Tenant, **fields) -> Subscription:
        """Persist the correlation row before talking to the gateway"""
        subscription = self.repo.create_subscription(
            self.db, tenant_id=tenant.id, status="initiated", currency=self.settings.currency, **fields
        )
        self.db.commit()
        return subscription

    def _attach_payment(self, subscription: Subscription, created: dict, event_type: str) -> None:
        payment = created["payment"]
        self.repo.update_subscription(
            self.db, subscription, status="pending", gateway_preference_id=str(payment["id"])
        )
        self.repo.append_event(
            self.db,
            subscription.id,
            event_type,
            str(payment["id"]),
            {"payment_id": str(payment["id"]), "status": payment.get("status"), "pix": created["pix"]},
        )
        self.db.commit()

    async def create_plan_checkout(self, tenant: Tenant, plan: str, billing_cycle: str) -> dict:
        """
        Create a PIX payment for one cycle of ``plan``.

        Raises:
            PlanAlreadyActive: the tenant already pays for this plan and is not due yet
            GatewayError: the payment could not be created
        """
        plan_code = normalize_plan(plan)
        if plan_code is None:
            raise ValueError(f"Invalid plan: {plan}")
        cycle = normalize_billing_cycle(billing_cycle)

        now = self._now()
        if (
            tenant.plan == plan_code
            and tenant.plan_status == "active"
            and tenant.plan_active_until is not None
            and (tenant.plan_active_until - now).days >= RENEWAL_WINDOW_DAYS
        ):
            raise PlanAlreadyActive(f"Tenant {tenant.id} already active on {plan_code}")

        amount_cents = get_plan_price_cents(plan_code, cycle)
        external_reference = build_plan_reference(self.settings.reference_secret, tenant.id, plan_code, cycle)
        subscription = self._open_checkout(
            tenant,
            kind=PLAN_KIND,
            plan=plan_code,
            billing_cycle=cycle,
            amount_cents=amount_cents,
            external_reference=external_reference,
        )

        created = await self.gateway.create_pix_payment(
            amount_cents=amount_cents,
            description=f"Agenda - Plano {get_plan_label(plan_code)} ({'anual' if cycle == 'yearly' else 'mensal'})",
            external_reference=external_reference,
            metadata={"kind": "plan", "plan": plan_code, "billing_cycle": cycle, "tenant_id": tenant.id},
            payer_email=tenant.email,
        )
        self._attach_payment(subscription, created, "payment.create")
        logger.info(f"✅ Plan checkout for tenant {tenant.id}: {plan_code}/{cycle} ({amount_cents} cents)")

        return {
            "subscription_id": subscription.id,
            "plan": plan_code,
            "billing_cycle": cycle,
            "amount_cents": amount_cents,
            "currency": subscription.currency,
            "external_reference": external_reference,
            "pix": created["pix"],
        }

    async def create_topup_checkout(
        self, tenant: Tenant, messages: Optional[int] = None, pack_code: Optional[str] = None
    ) -> dict:
        """
        Create a PIX payment for a WhatsApp top-up package.

        Raises:
            PackageInvalid: unknown package
            GatewayError: the payment could not be created
        """
        package = resolve_topup_package(messages=messages, code=pack_code)
        if package is None:
            raise PackageInvalid(f"Unknown top-up package (messages={messages}, code={pack_code})")

        external_reference = build_topup_reference(
            self.settings.reference_secret, tenant.id, package["messages"], package["code"]
        )
        subscription = self._open_checkout(
            tenant,
            kind=TOPUP_KIND,
            plan=normalize_plan(tenant.plan) or "starter",
            billing_cycle=normalize_billing_cycle(tenant.plan_cycle),
            amount_cents=package["price_cents"],
            external_reference=external_reference,
        )

        created = await self.gateway.create_pix_payment(
            amount_cents=package["price_cents"],
            description=f"Agenda - Pacote WhatsApp {package['messages']} mensagens",
            external_reference=external_reference,
            metadata={
                "kind": TOPUP_KIND,
                "messages": package["messages"],
                "pack_code": package["code"],
                "tenant_id": tenant.id,
            },
            payer_email=tenant.email,
        )
        self._attach_payment(subscription, created, "topup.create")
        logger.info(f"✅ Top-up checkout for tenant {tenant.id}: {package['messages']} messages")

        return {
            "subscription_id": subscription.id,
            "messages": package["messages"],
            "pack_code": package["code"],
            "amount_cents": package["price_cents"],
            "currency": subscription.currency,
            "external_reference": external_reference,
            "pix": created["pix"],
        }

    # ------------------------------------------------------------------
    # Recurring card billing (preapprovals)
    # ------------------------------------------------------------------

    async def create_recurring_checkout(
        self, tenant: Tenant, plan: str, billing_cycle: str, start_date: Optional[datetime] = None
    ) -> dict:
        """
        Create a preapproval for ``plan`` and return its authorization link.

        Raises:
            ValueError: unknown plan
            GatewayError: the preapproval could not be created
        """
        plan_code = normalize_plan(plan)
        if plan_code is None:
            raise ValueError(f"Invalid plan: {plan}")
        cycle = normalize_billing_cycle(billing_cycle)
        amount_cents = get_plan_price_cents(plan_code, cycle)
        external_reference = build_plan_reference(self.settings.reference_secret, tenant.id, plan_code, cycle)

        subscription = self._open_checkout(
            tenant,
            kind=PLAN_KIND,
            plan=plan_code,
            billing_cycle=cycle,
            amount_cents=amount_cents,
            external_reference=external_reference,
        )
        preapproval = await self.gateway.create_preapproval(
            amount_cents=amount_cents,
            reason=f"Agenda - Plano {get_plan_label(plan_code)} ({'anual' if cycle == 'yearly' else 'mensal'})",
            external_reference=external_reference,
            payer_email=tenant.email,
            frequency_months=CYCLE_FREQUENCY_MONTHS[cycle],
            start_date=start_date,
        )
        preapproval_id = str(preapproval["id"])
        init_point = preapproval.get("init_point") or preapproval.get("sandbox_init_point")
        self.repo.update_subscription(
            self.db,
            subscription,
            status="pending",
            gateway_subscription_id=preapproval_id,
            init_point=init_point,
        )
        self.repo.append_event(
            self.db,
            subscription.id,
            "preapproval.create",
            preapproval_id,
            {
                "preapproval_id": preapproval_id,
                "status": preapproval.get("status"),
                "start_date": start_date.isoformat() if start_date else None,
            },
        )
        self.db.commit()
        logger.info(
            f"✅ Recurring checkout for tenant {tenant.id}: {plan_code}/{cycle} "
            f"(preapproval {preapproval_id}, starts {start_date.isoformat() if start_date else 'now'})"
        )
        return self._recurring_payload(subscription, reused=False, start_date=start_date)

    def _recurring_payload(self, subscription: Subscription, reused: bool, start_date=None) -> dict:
        return {
            "subscription_id": subscription.id,
            "plan": subscription.plan,
            "billing_cycle": subscription.billing_cycle,
            "status": subscription.status,
            "amount_cents": subscription.amount_cents,
            "currency": subscription.currency,
            "preapproval_id": subscription.gateway_subscription_id,
            "init_point": subscription.init_point,
            "start_date": start_date,
            "reused": reused,
        }

    def _deferred_start(self, tenant: Tenant) -> Optional[datetime]:
        """End of the cycle the tenant already paid for, if still ahead"""
        active_until = tenant.plan_active_until
        if tenant.plan_status == "active" and active_until is not None and active_until > self._now():
            return active_until
        return None

    async def setup_recurring(self, tenant: Tenant) -> dict:
        """
        Put the current plan on card recurrence.

        Allowed while the plan is active; the first charge lands when the
        paid cycle ends.
        """
        return await self.create_recurring_checkout(
            tenant,
            normalize_plan(tenant.plan) or "starter",
            tenant.plan_cycle,
            start_date=self._deferred_start(tenant),
        )

    async def change_plan(
        self, tenant: Tenant, target_plan: str, billing_cycle: str, force_new: bool = False
    ) -> dict:
        """
        Upgrade or downgrade through a new preapproval.

        A pending link for the same target is handed back unless
        ``force_new`` is set or reuse is disabled. Upgrades of an active
        plan start charging at the end of the current cycle.

        Raises:
            ValueError: unknown plan
            PlanUnchanged: target is the current plan
            GatewayError: the preapproval could not be created
        """
        target = normalize_plan(target_plan)
        if target is None:
            raise ValueError(f"Invalid plan: {target_plan}")
        current = normalize_plan(tenant.plan) or "starter"
        if target == current:
            raise PlanUnchanged(f"Tenant {tenant.id} is already on {target}")

        if self.settings.reuse_pending and not force_new:
            latest = next(iter(self.repo.list_for_tenant(self.db, tenant.id, limit=1, kind=PLAN_KIND)), None)
            if latest is not None and latest.status == "pending" and latest.plan == target and latest.init_point:
                logger.info(f"♻️ Reusing pending checkout {latest.id} for tenant {tenant.id} ({target})")
                return self._recurring_payload(latest, reused=True)

        start_date = self._deferred_start(tenant) if is_upgrade(current, target) else None
        return await self.create_recurring_checkout(tenant, target, billing_cycle, start_date=start_date)

    async def update_recurring_status(self, tenant: Tenant, action: str) -> SyncResult:
        """
        Pause, resume or cancel the tenant's preapproval and apply the result.

        Raises:
            ValueError: unknown action
            RecurringNotConfigured: the tenant has no preapproval
            GatewayError: the gateway rejected the change
        """
        target_status = RECURRING_ACTIONS.get(action)
        if target_status is None:
            raise ValueError(f"Invalid recurring action: {action}")

        subscription = None
        if tenant.plan_subscription_id:
            subscription = self.repo.get_subscription(self.db, tenant.plan_subscription_id)
        if subscription is None or not subscription.gateway_subscription_id:
            subscription = self.repo.latest_recurring_for_tenant(self.db, tenant.id)
        if subscription is None:
            raise RecurringNotConfigured(f"Tenant {tenant.id} has no recurring subscription")

        preapproval_id = subscription.gateway_subscription_id
        self.db.commit()
        data = await self.gateway.update_preapproval_status(preapproval_id, target_status)
        logger.info(f"🔁 Recurring {action} for tenant {tenant.id} (preapproval {preapproval_id})")
        return self._apply_preapproval(data, {"action": f"recurring_{action}"})

