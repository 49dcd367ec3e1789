"""Wallet router - WhatsApp credits balance, top-up history and top-up checkout"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...auth import get_current_tenant
from ...database import get_db
from ...models import Tenant
from ...plans import WHATSAPP_TOPUP_PACKAGES
from ..billing.exceptions import GatewayError, PackageInvalid, TenantNotFound
from ..billing.router import get_payment_synchronizer, require_gateway
from ..billing.schemas import CheckoutResponse, TopupCheckoutRequest
from ..billing.sync_service import PaymentSynchronizer
from .schemas import TopupListResponse, TopupPackagesResponse, WalletSnapshotResponse
from .service import WalletService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/whatsapp", tags=["WhatsApp Wallet"])


def get_wallet_service(db: Session = Depends(get_db)) -> WalletService:
    """Dependency injection for WalletService"""
    return WalletService(db)


@router.get("/wallet", response_model=WalletSnapshotResponse)
async def get_wallet(
    tenant: Tenant = Depends(get_current_tenant),
    service: WalletService = Depends(get_wallet_service),
):
    """Current month's balances (opens the wallet on first access)"""
    try:
        return service.get_snapshot(tenant.id).as_dict()
    except TenantNotFound as e:
        raise HTTPException(status_code=404, detail="Establishment not found") from e


@router.get("/topups", response_model=TopupListResponse)
async def list_topups(
    limit: int = Query(5, ge=1, le=50),
    tenant: Tenant = Depends(get_current_tenant),
    service: WalletService = Depends(get_wallet_service),
):
    """Recent top-up credits"""
    return {"items": service.list_topups(tenant.id, limit=limit)}


@router.get("/packages", response_model=TopupPackagesResponse)
async def list_packages(service: WalletService = Depends(get_wallet_service)):
    """Top-up catalog"""
    return {
        "packages": WHATSAPP_TOPUP_PACKAGES,
        "max_messages_per_appointment": service.max_messages_per_appointment,
    }


@router.post("/topup", response_model=CheckoutResponse)
async def create_topup_checkout(
    body: TopupCheckoutRequest,
    tenant: Tenant = Depends(get_current_tenant),
    synchronizer: PaymentSynchronizer = Depends(get_payment_synchronizer),
):
    """Create a PIX payment for a top-up package"""
    require_gateway(synchronizer)
    try:
        return await synchronizer.create_topup_checkout(
            tenant, messages=body.messages, pack_code=body.pack_code
        )
    except PackageInvalid as e:
        raise HTTPException(status_code=400, detail=e.reason) from e
    except GatewayError as e:
        logger.error(f"❌ Top-up checkout failed for tenant {tenant.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to create PIX payment") from e
