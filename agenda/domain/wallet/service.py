"""
Wallet service - prepaid WhatsApp message credits.

Each tenant has one wallet with two buckets:

- included: the plan's monthly allotment, reset at every calendar month
- extra: purchased top-ups, never expire

Every balance change is written together with exactly one ledger row in the
same transaction, so the balances always equal the sum of the ledger deltas.
Mutations row-lock the tenant's wallet, which orders concurrent operations
for the same tenant. Debits are keyed by the provider message id and credits
by the gateway payment id; replaying either is a no-op.
"""

import logging
import random
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ...config import WHATSAPP_MAX_MESSAGES_PER_APPOINTMENT
from ...models_billing import Wallet
from ...plans import get_plan_context, resolve_included_limit, resolve_topup_package
from ...shared.dates import MonthCycle, compute_month_cycle
from ..billing.exceptions import TenantNotFound
from .repository import WalletRepository

logger = logging.getLogger(__name__)

MAX_LOCK_ATTEMPTS = 3
RETRY_BASE_MS = 75
RETRY_CAP_MS = 1200

# MySQL / PostgreSQL lock error codes
_LOCK_ERROR_CODES = {1213, 1205, "40P01", "55P03"}
_LOCK_ERROR_MARKERS = ("deadlock", "lock wait timeout", "could not obtain lock", "database is locked")


def is_lock_error(exc: Exception) -> bool:
    """True for deadlocks and lock-wait timeouts, which are safe to retry"""
    orig = getattr(exc, "orig", None)
    codes = {getattr(orig, "pgcode", None)}
    if orig is not None and getattr(orig, "args", None):
        codes.add(orig.args[0])
    if codes & _LOCK_ERROR_CODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _LOCK_ERROR_MARKERS)


def wallet_retry_delay(attempt: int) -> float:
    """Seconds to wait before retry ``attempt`` (exponential backoff plus jitter)"""
    exponential = min(RETRY_CAP_MS, RETRY_BASE_MS * 2 ** (attempt - 1))
    return (exponential + random.uniform(0, RETRY_BASE_MS)) / 1000


class _DuplicateLedgerKey(Exception):
    """A concurrent writer inserted the same idempotency key first"""


@dataclass
class WalletSnapshot:
    tenant_id: int
    month_label: str
    cycle_start: datetime
    cycle_end: datetime
    included_limit: int
    included_balance: int
    extra_balance: int
    total_balance: int
    plan: str
    plan_status: Optional[str]

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class DebitResult:
    ok: bool
    bucket: Optional[str] = None
    blocked_reason: Optional[str] = None
    idempotent: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class CreditResult:
    ok: bool
    wallet: Optional[WalletSnapshot] = None
    blocked_reason: Optional[str] = None
    idempotent: bool = False
    messages: int = 0

    def as_dict(self) -> dict:
        data = asdict(self)
        data["wallet"] = self.wallet.as_dict() if self.wallet else None
        return data


class WalletService:
    """Service for wallet snapshots, debits and top-up credits"""

    def __init__(
        self,
        db: Session,
        max_messages_per_appointment: int = WHATSAPP_MAX_MESSAGES_PER_APPOINTMENT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.repo = WalletRepository()
        self.max_messages_per_appointment = max_messages_per_appointment
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Transaction helpers
    # ------------------------------------------------------------------

    def _run_locked(self, tenant_id: int, op_name: str, operation: Callable[[], Any], on_duplicate: Any):
        """Run ``operation`` in its own transaction, retrying lock conflicts"""
        for attempt in range(1, MAX_LOCK_ATTEMPTS + 1):
            try:
                result = operation()
                self.db.commit()
                return result
            except _DuplicateLedgerKey:
                self.db.rollback()
                logger.info(f"🔁 Wallet {op_name} for tenant {tenant_id} already recorded (concurrent insert)")
                return on_duplicate
            except OperationalError as e:
                self.db.rollback()
                if attempt >= MAX_LOCK_ATTEMPTS or not is_lock_error(e):
                    raise
                delay = wallet_retry_delay(attempt)
                logger.warning(
                    f"⚠️ Wallet {op_name} lock conflict for tenant {tenant_id} "
                    f"(attempt {attempt}/{MAX_LOCK_ATTEMPTS}), retrying in {delay * 1000:.0f}ms"
                )
                self._sleep(delay)
            except Exception:
                self.db.rollback()
                raise
        return None

    def _flush_ledger(self):
        try:
            self.db.flush()
        except IntegrityError as e:
            raise _DuplicateLedgerKey() from e

    def _ensure_wallet_row(self, tenant_id: int, cycle: MonthCycle, included_limit: int) -> None:
        if self.repo.get_wallet(self.db, tenant_id) is not None:
            return
        try:
            self.repo.create_wallet(self.db, tenant_id, cycle, included_limit)
            self.db.commit()
            logger.info(f"✅ WhatsApp wallet opened for tenant {tenant_id} (limit={included_limit})")
        except IntegrityError:
            # Created by a concurrent request
            self.db.rollback()

    def _load_locked_wallet(self, tenant_id: int, cycle: MonthCycle, included_limit: int) -> Wallet:
        wallet = self.repo.get_wallet(self.db, tenant_id, lock=True)
        if wallet is None:
            raise TenantNotFound(f"Wallet missing for tenant {tenant_id}")
        self._apply_cycle_and_limit(wallet, cycle, included_limit)
        return wallet

    def _apply_cycle_and_limit(self, wallet: Wallet, cycle: MonthCycle, included_limit: int) -> None:
        """Roll the wallet into ``cycle`` or rebase it on a new plan limit"""
        if wallet.cycle_start != cycle.start or wallet.cycle_end != cycle.end:
            delta = included_limit - wallet.included_balance
            self.repo.add_transaction(
                self.db,
                wallet.tenant_id,
                "cycle_reset",
                included_delta=delta,
                reason="cycle_reset",
                cycle_start=cycle.start,
                cycle_end=cycle.end,
                metadata={
                    "included_limit": included_limit,
                    "previous_cycle_start": wallet.cycle_start.isoformat() if wallet.cycle_start else None,
                    "previous_balance": wallet.included_balance,
                },
            )
            wallet.cycle_start = cycle.start
            wallet.cycle_end = cycle.end
            wallet.included_limit = included_limit
            wallet.included_balance = included_limit
            logger.info(
                f"🔄 Wallet cycle reset for tenant {wallet.tenant_id}: {cycle.label} (limit={included_limit})"
            )
            return

        if wallet.included_limit != included_limit:
            old_limit = wallet.included_limit
            old_balance = wallet.included_balance
            used = max(old_limit - old_balance, 0)
            new_balance = max(included_limit - used, 0)
            self.repo.add_transaction(
                self.db,
                wallet.tenant_id,
                "limit_adjust",
                included_delta=new_balance - old_balance,
                reason="plan_limit_changed",
                cycle_start=cycle.start,
                cycle_end=cycle.end,
                metadata={"old_limit": old_limit, "new_limit": included_limit, "used": used},
            )
            wallet.included_limit = included_limit
            wallet.included_balance = new_balance
            logger.info(
                f"🔧 Wallet limit changed for tenant {wallet.tenant_id}: "
                f"{old_limit} -> {included_limit} (balance {old_balance} -> {new_balance})"
            )

    def _prepare(self, tenant_id: int, now: Optional[datetime] = None):
        context = get_plan_context(self.db, tenant_id)
        if context is None:
            raise TenantNotFound(f"Tenant {tenant_id} not found")
        included_limit = resolve_included_limit(context)
        cycle = compute_month_cycle(now)
        self._ensure_wallet_row(tenant_id, cycle, included_limit)
        return context, cycle, included_limit

    @staticmethod
    def _to_snapshot(wallet: Wallet, context, cycle: MonthCycle) -> WalletSnapshot:
        return WalletSnapshot(
            tenant_id=wallet.tenant_id,
            month_label=cycle.label,
            cycle_start=wallet.cycle_start,
            cycle_end=wallet.cycle_end,
            included_limit=wallet.included_limit,
            included_balance=wallet.included_balance,
            extra_balance=wallet.extra_balance,
            total_balance=wallet.included_balance + wallet.extra_balance,
            plan=context.plan,
            plan_status=context.status,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def get_snapshot(self, tenant_id: int, now: Optional[datetime] = None) -> WalletSnapshot:
        """Current balances, opening the wallet and rolling the cycle when needed"""
        context, cycle, included_limit = self._prepare(tenant_id, now)

        def operation():
            wallet = self._load_locked_wallet(tenant_id, cycle, included_limit)
            self.db.flush()
            return self._to_snapshot(wallet, context, cycle)

        return self._run_locked(tenant_id, "snapshot", operation, on_duplicate=None)

    def count_appointment_debits(self, tenant_id: int, appointment_ref) -> int:
        if appointment_ref is None:
            return 0
        return self.repo.count_appointment_debits(self.db, tenant_id, str(appointment_ref))

    def debit(
        self,
        tenant_id: int,
        idempotency_key: str,
        appointment_ref=None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> DebitResult:
        """
        Consume one message credit.

        Args:
            tenant_id: Tenant id
            idempotency_key: Provider message id of the sent message
            appointment_ref: Appointment the message belongs to (per-appointment cap)
            metadata: Extra data stored on the ledger row

        Returns:
            DebitResult; blocked sends return ok=False with a blocked_reason
        """
        if not idempotency_key:
            raise ValueError("idempotency_key (provider message id) is required")

        key = str(idempotency_key)
        appointment_id = str(appointment_ref) if appointment_ref is not None else None
        _, cycle, included_limit = self._prepare(tenant_id, now)

        def operation() -> DebitResult:
            wallet = self._load_locked_wallet(tenant_id, cycle, included_limit)

            existing = self.repo.get_debit_by_message_id(self.db, key)
            if existing is not None:
                bucket = "included" if existing.included_delta else "extra"
                return DebitResult(ok=True, bucket=bucket, idempotent=True)

            if (
                appointment_id is not None
                and self.repo.count_appointment_debits(self.db, tenant_id, appointment_id)
                >= self.max_messages_per_appointment
            ):
                return self._block(tenant_id, "per_appointment_limit", appointment_id, key, metadata)

            if wallet.included_balance > 0:
                bucket = "included"
            elif wallet.extra_balance > 0:
                bucket = "extra"
            else:
                return self._block(tenant_id, "insufficient_balance", appointment_id, key, metadata)

            self.repo.add_transaction(
                self.db,
                tenant_id,
                "debit",
                included_delta=-1 if bucket == "included" else 0,
                extra_delta=-1 if bucket == "extra" else 0,
                appointment_id=appointment_id,
                provider_message_id=key,
                metadata=metadata,
            )
            if bucket == "included":
                wallet.included_balance = max(wallet.included_balance - 1, 0)
            else:
                wallet.extra_balance = max(wallet.extra_balance - 1, 0)
            self._flush_ledger()
            return DebitResult(ok=True, bucket=bucket)

        result = self._run_locked(
            tenant_id, "debit", operation, on_duplicate=DebitResult(ok=True, idempotent=True)
        )
        if result.blocked_reason:
            logger.warning(f"⚠️ WhatsApp debit blocked for tenant {tenant_id}: {result.blocked_reason}")
        elif not result.idempotent:
            logger.info(f"💬 WhatsApp debit for tenant {tenant_id} from {result.bucket} ({key})")
        return result

    def _block(self, tenant_id, reason, appointment_id, key, metadata) -> DebitResult:
        self.repo.add_transaction(
            self.db,
            tenant_id,
            "blocked",
            appointment_id=appointment_id,
            reason=reason,
            metadata={**(metadata or {}), "idempotency_key": key},
        )
        self.db.flush()
        return DebitResult(ok=False, blocked_reason=reason)

    def credit(
        self,
        tenant_id: int,
        package: Union[dict, int, str],
        idempotency_key: str,
        subscription_id: Optional[int] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> CreditResult:
        """
        Add a purchased top-up package to the extra bucket.

        ``package`` is a package dict, a message count or a package code.
        ``idempotency_key`` is the gateway payment id.
        """
        if not idempotency_key:
            raise ValueError("idempotency_key (payment id) is required")

        if isinstance(package, dict):
            resolved = resolve_topup_package(messages=package.get("messages"), code=package.get("code"))
        elif isinstance(package, str):
            resolved = resolve_topup_package(code=package)
        else:
            resolved = resolve_topup_package(messages=package)
        if resolved is None:
            logger.warning(f"⚠️ Top-up credit rejected for tenant {tenant_id}: unknown package {package!r}")
            return CreditResult(ok=False, blocked_reason="invalid_package")

        key = str(idempotency_key)
        messages = resolved["messages"]
        context, cycle, included_limit = self._prepare(tenant_id, now)

        def operation() -> CreditResult:
            wallet = self._load_locked_wallet(tenant_id, cycle, included_limit)

            if self.repo.get_credit_by_payment_id(self.db, key) is not None:
                return CreditResult(ok=True, idempotent=True, messages=messages)

            self.repo.add_transaction(
                self.db,
                tenant_id,
                "topup_credit",
                extra_delta=messages,
                subscription_id=subscription_id,
                payment_id=key,
                reason=(metadata or {}).get("reason", "pix_pack"),
                metadata={
                    **(metadata or {}),
                    "pack_code": resolved["code"],
                    "messages": messages,
                    "price_cents": resolved["price_cents"],
                },
            )
            wallet.extra_balance = wallet.extra_balance + messages
            self._flush_ledger()
            return CreditResult(ok=True, wallet=self._to_snapshot(wallet, context, cycle), messages=messages)

        result = self._run_locked(
            tenant_id,
            "topup_credit",
            operation,
            on_duplicate=CreditResult(ok=True, idempotent=True, messages=messages),
        )
        if result.idempotent:
            logger.info(f"🔁 Top-up {key} already credited for tenant {tenant_id}")
        else:
            logger.info(f"💰 Credited {messages} WhatsApp messages to tenant {tenant_id} (payment {key})")
        return result

    def record_blocked(
        self, tenant_id: int, reason: str, appointment_ref=None, metadata: Optional[dict] = None
    ) -> None:
        """Log a blocked send that never reached the wallet (zero-delta ledger row)"""
        self.repo.add_transaction(
            self.db,
            tenant_id,
            "blocked",
            appointment_id=str(appointment_ref) if appointment_ref is not None else None,
            reason=reason,
            metadata=metadata,
        )
        self.db.commit()
        logger.warning(f"⚠️ WhatsApp send blocked for tenant {tenant_id}: {reason}")

    def list_topups(self, tenant_id: int, limit: int = 5) -> list[dict]:
        rows = self.repo.list_topups(self.db, tenant_id, max(1, int(limit or 5)))
        items = []
        for row in rows:
            meta = row.metadata_json or {}
            items.append(
                {
                    "id": row.id,
                    "messages": row.extra_delta,
                    "payment_id": row.payment_id,
                    "pack_code": meta.get("pack_code"),
                    "price_cents": meta.get("price_cents"),
                    "created_at": row.created_at,
                }
            )
        return items
