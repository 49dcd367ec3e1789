"""Billing router - FastAPI endpoints for checkout, subscription state and Mercado Pago webhooks"""

import logging
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ...auth import get_current_tenant
from ...config import BillingSettings, get_billing_settings
from ...database import get_db
from ...models import Tenant
from ...webhook_security import (
    SIGNATURE_PREFIX_LENGTH,
    build_manifest_candidates,
    sign_manifest,
    timestamp_candidates,
    verify_mercadopago_webhook,
)
from .exceptions import GatewayError, PlanAlreadyActive, PlanUnchanged, RecurringNotConfigured
from .mercadopago_service import MercadoPagoService, get_mercadopago_service
from .schemas import (
    ChangePlanRequest,
    CheckoutRequest,
    CheckoutResponse,
    RecurringCheckoutResponse,
    SyncRequest,
    SyncResponse,
)
from .subscription_service import SubscriptionService
from .sync_service import PaymentSynchronizer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])
webhooks_router = APIRouter(tags=["Webhooks"])

PAYMENT_TOPICS = ("payment", "payments")
PREAPPROVAL_TOPICS = ("preapproval", "subscription_preapproval")


def get_subscription_service(db: Session = Depends(get_db)) -> SubscriptionService:
    """Dependency injection for SubscriptionService"""
    return SubscriptionService(db)


def get_payment_synchronizer(
    db: Session = Depends(get_db),
    gateway: MercadoPagoService = Depends(get_mercadopago_service),
    settings: BillingSettings = Depends(get_billing_settings),
) -> PaymentSynchronizer:
    """Dependency injection for PaymentSynchronizer"""
    return PaymentSynchronizer(db, gateway, settings)


def require_gateway(synchronizer: PaymentSynchronizer) -> None:
    if not synchronizer.gateway.is_available():
        raise HTTPException(status_code=503, detail="Billing service temporarily unavailable")


# ============================================================================
# CHECKOUT & SUBSCRIPTION
# ============================================================================


@router.post("/checkout", response_model=CheckoutResponse)
async def create_plan_checkout(
    body: CheckoutRequest,
    tenant: Tenant = Depends(get_current_tenant),
    synchronizer: PaymentSynchronizer = Depends(get_payment_synchronizer),
):
    """Create a PIX payment for a plan"""
    require_gateway(synchronizer)
    try:
        return await synchronizer.create_plan_checkout(tenant, body.plan, body.billing_cycle)
    except PlanAlreadyActive as e:
        raise HTTPException(status_code=409, detail=e.reason) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except GatewayError as e:
        logger.error(f"❌ Plan checkout failed for tenant {tenant.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to create PIX payment") from e


@router.get("/subscription")
async def get_subscription(
    tenant: Tenant = Depends(get_current_tenant),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Plan context, effective subscription and history"""
    return service.get_overview(tenant.id)


@router.post("/sync", response_model=SyncResponse)
async def sync_gateway_resource(
    body: SyncRequest,
    tenant: Tenant = Depends(get_current_tenant),
    synchronizer: PaymentSynchronizer = Depends(get_payment_synchronizer),
):
    """Polling fallback for when a webhook was lost or delayed"""
    require_gateway(synchronizer)
    try:
        if body.payment_id:
            result = await synchronizer.sync_payment(body.payment_id)
        else:
            result = await synchronizer.sync_subscription(body.preapproval_id)
    except GatewayError as e:
        logger.error(f"❌ Manual sync failed for tenant {tenant.id}: {e}")
        raise HTTPException(status_code=502, detail="Payment gateway unavailable") from e

    logger.info(f"🔄 Manual sync by tenant {tenant.id}: {result.action}")
    return result.as_dict()


# ============================================================================
# RECURRING CARD BILLING
# ============================================================================


@router.post("/change", response_model=RecurringCheckoutResponse)
async def change_plan(
    body: ChangePlanRequest,
    tenant: Tenant = Depends(get_current_tenant),
    synchronizer: PaymentSynchronizer = Depends(get_payment_synchronizer),
):
    """Upgrade or downgrade; reuses a pending link for the same plan"""
    require_gateway(synchronizer)
    try:
        return await synchronizer.change_plan(tenant, body.plan, body.billing_cycle, force_new=body.force)
    except PlanUnchanged as e:
        raise HTTPException(status_code=409, detail=e.reason) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except GatewayError as e:
        logger.error(f"❌ Plan change failed for tenant {tenant.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to create recurring checkout") from e


@router.post("/recurring/setup", response_model=RecurringCheckoutResponse)
async def setup_recurring(
    tenant: Tenant = Depends(get_current_tenant),
    synchronizer: PaymentSynchronizer = Depends(get_payment_synchronizer),
):
    """Card recurrence for the current plan, first charge at the end of the paid cycle"""
    require_gateway(synchronizer)
    try:
        return await synchronizer.setup_recurring(tenant)
    except GatewayError as e:
        logger.error(f"❌ Recurring setup failed for tenant {tenant.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to create recurring checkout") from e


async def _update_recurring(tenant: Tenant, synchronizer: PaymentSynchronizer, action: str) -> dict:
    require_gateway(synchronizer)
    try:
        result = await synchronizer.update_recurring_status(tenant, action)
    except RecurringNotConfigured as e:
        raise HTTPException(status_code=409, detail=e.reason) from e
    except GatewayError as e:
        logger.error(f"❌ Recurring {action} failed for tenant {tenant.id}: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to {action} recurring billing") from e
    return result.as_dict()


@router.post("/recurring/pause", response_model=SyncResponse)
async def pause_recurring(
    tenant: Tenant = Depends(get_current_tenant),
    synchronizer: PaymentSynchronizer = Depends(get_payment_synchronizer),
):
    return await _update_recurring(tenant, synchronizer, "pause")


@router.post("/recurring/resume", response_model=SyncResponse)
async def resume_recurring(
    tenant: Tenant = Depends(get_current_tenant),
    synchronizer: PaymentSynchronizer = Depends(get_payment_synchronizer),
):
    return await _update_recurring(tenant, synchronizer, "resume")


@router.post("/recurring/cancel", response_model=SyncResponse)
async def cancel_recurring(
    tenant: Tenant = Depends(get_current_tenant),
    synchronizer: PaymentSynchronizer = Depends(get_payment_synchronizer),
):
    return await _update_recurring(tenant, synchronizer, "cancel")


def _callback_redirect_url(frontend_url: str, next_url: Optional[str], preapproval_id: Optional[str]) -> str:
    """``next`` when it is an https URL, else the settings page; always flags success"""
    if next_url and next_url.lower().startswith("https://"):
        base = next_url
    else:
        base = f"{frontend_url.rstrip('/')}/configuracoes"

    parts = urlsplit(base)
    query = dict(parse_qsl(parts.query))
    query.setdefault("checkout", "sucesso")
    if preapproval_id:
        query["preapproval_id"] = preapproval_id
    return urlunsplit(parts._replace(query=urlencode(query)))


@router.get("/callback")
async def recurring_checkout_callback(
    request: Request,
    synchronizer: PaymentSynchronizer = Depends(get_payment_synchronizer),
):
    """
    back_url of the recurring checkout.

    Syncs the preapproval right away (the webhook may lag) and redirects to
    the web app. A failed sync never blocks the redirect.
    """
    params = request.query_params
    preapproval_id = (
        params.get("preapproval_id") or params.get("id") or params.get("data.id") or ""
    ).strip() or None

    if preapproval_id and synchronizer.gateway.is_available():
        try:
            result = await synchronizer.sync_subscription(preapproval_id, event_payload={"action": "callback"})
            logger.info(f"↩️ Checkout callback synced preapproval {preapproval_id}: {result.action}")
        except GatewayError as e:
            synchronizer.db.rollback()
            logger.warning(f"⚠️ Checkout callback sync failed for {preapproval_id}: {e}")

    target = _callback_redirect_url(synchronizer.settings.frontend_url, params.get("next"), preapproval_id)
    return RedirectResponse(url=target, status_code=302)


# ============================================================================
# MERCADO PAGO WEBHOOKS
# ============================================================================


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _route_topic(topics: list[str]) -> Optional[str]:
    for topic in topics:
        topic = topic.lower()
        if topic in PAYMENT_TOPICS or topic.startswith("payment."):
            return "payment"
        if topic in PREAPPROVAL_TOPICS or topic.startswith("subscription_preapproval."):
            return "preapproval"
    return None


@webhooks_router.post("/billing/webhook")
@webhooks_router.post("/webhook/mercadopago")  # Alias for the URL configured in the gateway panel
@webhooks_router.post("/api/webhook/mercadopago")
async def handle_mercadopago_webhook(
    request: Request,
    synchronizer: PaymentSynchronizer = Depends(get_payment_synchronizer),
):
    """
    Receive Mercado Pago notifications.

    Always answers 200 so the gateway stops retrying; rejected or failed
    notifications are logged and reconciled later by replays or /billing/sync.

    Headers:
      - 'x-signature': 'ts=<timestamp>,v1=<hex hmac-sha256 of the manifest>'
      - 'x-request-id': Request id included in the manifest
    """
    body = await _read_json(request)
    verification = await verify_mercadopago_webhook(
        request, synchronizer.settings.webhook_secrets, body=body
    )
    if not verification.ok:
        logger.warning(f"🚫 Webhook ignored: signature {verification.reason} (id={verification.id})")
        return {"ok": True, "ignored": True}

    topics = [t for t in [verification.topic, *_topics_from_body(body)] if t]
    target = _route_topic(topics)
    logger.info(f"🔔 Webhook received id={verification.id} topic={verification.topic} target={target}")

    if target is None:
        return {"ok": True, "ignored": True, "reason": "unsupported_topic"}

    try:
        if target == "payment":
            result = await synchronizer.sync_payment(verification.id, event_payload=body)
        else:
            result = await synchronizer.sync_subscription(verification.id, event_payload=body)
    except Exception as e:
        synchronizer.db.rollback()
        logger.error(f"❌ Webhook processing failed for {target} {verification.id}: {e}", exc_info=True)
        return {"ok": True, "ignored": True, "reason": "processing_error"}

    if result.ok:
        return {"ok": True, "processed": True, "action": result.action}
    return {"ok": True, "ignored": True, "reason": result.reason or result.action}


def _topics_from_body(body: dict) -> list[str]:
    return [str(body[key]) for key in ("type", "topic", "action") if body.get(key)]


@webhooks_router.get("/billing/webhook")
@webhooks_router.head("/billing/webhook")
async def mercadopago_webhook_liveness():
    """The gateway panel pings the URL before saving it"""
    return {"ok": True}


@webhooks_router.get("/billing/webhook/health")
async def mercadopago_webhook_health(
    request: Request,
    settings: BillingSettings = Depends(get_billing_settings),
):
    """
    Signature diagnostics.

    Given ``id``, ``ts``, ``request_id`` and ``topic`` query parameters, shows
    which manifests would be tried and the digest prefix each secret yields,
    so a mismatch can be compared with the x-signature the gateway sent.
    """
    params = request.query_params
    resource_id = params.get("id")
    ts = params.get("ts")
    request_id = params.get("request_id") or params.get("request-id")
    topic = params.get("topic")

    secrets = [s for s in settings.webhook_secrets if s][:2]
    logger.info(f"🩺 Webhook health check: secrets ending in {[s[-4:] for s in secrets]}")
    report = {
        "ok": True,
        "secrets_configured": len(secrets),
        "notification_url": settings.notification_url,
    }
    if not resource_id or not ts:
        return report

    manifests = build_manifest_candidates(
        resource_id, request_id, [topic] if topic else [], ts
    )
    report["timestamps"] = timestamp_candidates(ts)
    report["expected"] = [
        {
            "secret": f"SECRET_{index}",
            "manifest": manifest,
            "v1_prefix": sign_manifest(secret, manifest)[:SIGNATURE_PREFIX_LENGTH],
        }
        for index, secret in enumerate(secrets, start=1)
        for manifest in manifests
    ]
    return report


__all__ = [
    "router",
    "webhooks_router",
    "get_payment_synchronizer",
    "get_subscription_service",
]
