"""Wallet repository - Database operations for the WhatsApp wallet and its ledger"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models_billing import Wallet, WalletTransaction
from ...shared.dates import MonthCycle


class WalletRepository:
    """Repository for wallet and ledger database operations"""

    @staticmethod
    def get_wallet(db: Session, tenant_id: int, lock: bool = False) -> Optional[Wallet]:
        """Get a tenant's wallet, optionally row-locked until the transaction ends"""
        query = db.query(Wallet).filter(Wallet.tenant_id == tenant_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def create_wallet(db: Session, tenant_id: int, cycle: MonthCycle, included_limit: int) -> Wallet:
        """Create a wallet opened for ``cycle`` with its opening cycle_reset ledger row"""
        wallet = Wallet(
            tenant_id=tenant_id,
            cycle_start=cycle.start,
            cycle_end=cycle.end,
            included_limit=included_limit,
            included_balance=included_limit,
            extra_balance=0,
        )
        db.add(wallet)
        db.add(
            WalletTransaction(
                tenant_id=tenant_id,
                kind="cycle_reset",
                delta=included_limit,
                included_delta=included_limit,
                extra_delta=0,
                reason="wallet_opened",
                cycle_start=cycle.start,
                cycle_end=cycle.end,
                metadata_json={"included_limit": included_limit},
            )
        )
        return wallet

    @staticmethod
    def add_transaction(db: Session, tenant_id: int, kind: str, **fields) -> WalletTransaction:
        included_delta = fields.pop("included_delta", 0)
        extra_delta = fields.pop("extra_delta", 0)
        metadata = fields.pop("metadata", None)
        tx = WalletTransaction(
            tenant_id=tenant_id,
            kind=kind,
            delta=fields.pop("delta", included_delta + extra_delta),
            included_delta=included_delta,
            extra_delta=extra_delta,
            metadata_json=metadata,
            **fields,
        )
        db.add(tx)
        return tx

    @staticmethod
    def get_debit_by_message_id(db: Session, provider_message_id: str) -> Optional[WalletTransaction]:
        return (
            db.query(WalletTransaction)
            .filter(WalletTransaction.provider_message_id == provider_message_id)
            .first()
        )

    @staticmethod
    def get_credit_by_payment_id(db: Session, payment_id: str) -> Optional[WalletTransaction]:
        return db.query(WalletTransaction).filter(WalletTransaction.payment_id == payment_id).first()

    @staticmethod
    def count_appointment_debits(db: Session, tenant_id: int, appointment_id: str) -> int:
        return (
            db.query(WalletTransaction)
            .filter(
                WalletTransaction.tenant_id == tenant_id,
                WalletTransaction.appointment_id == appointment_id,
                WalletTransaction.kind == "debit",
            )
            .count()
        )

    @staticmethod
    def list_topups(db: Session, tenant_id: int, limit: int = 5) -> list[WalletTransaction]:
        return (
            db.query(WalletTransaction)
            .filter(WalletTransaction.tenant_id == tenant_id, WalletTransaction.kind == "topup_credit")
            .order_by(WalletTransaction.id.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def ledger_totals(db: Session, tenant_id: int) -> dict:
        """Sum of ledger deltas per bucket; always equals the wallet balances"""
        included, extra = (
            db.query(
                func.coalesce(func.sum(WalletTransaction.included_delta), 0),
                func.coalesce(func.sum(WalletTransaction.extra_delta), 0),
            )
            .filter(WalletTransaction.tenant_id == tenant_id)
            .one()
        )
        return {"included": int(included), "extra": int(extra)}
