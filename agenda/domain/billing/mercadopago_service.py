"""Mercado Pago service - Integration with the Mercado Pago REST API"""

import logging
import uuid
from datetime import datetime
from typing import Optional

import httpx

from ...config import BillingSettings, get_billing_settings
from .exceptions import GatewayError

logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(data, dict):
        cause = data.get("cause")
        if isinstance(cause, list) and cause:
            first = cause[0] if isinstance(cause[0], dict) else {}
            return f"{data.get('message')} ({first.get('code')}: {first.get('description')})"
        return str(data.get("message") or data.get("error") or data)[:300]
    return str(data)[:300]


class MercadoPagoService:
    """Service for Mercado Pago API operations"""

    def __init__(self, settings: BillingSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.access_token = settings.access_token
        self._transport = transport

        if not self.access_token:
            logger.warning(
                "MERCADOPAGO_ACCESS_TOKEN not set; billing endpoints will fail until configured"
            )
        else:
            logger.info(f"Mercado Pago client configured (api={settings.api_url})")

    def is_available(self) -> bool:
        """Check if Mercado Pago credentials are configured"""
        return bool(self.access_token)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.api_url,
            timeout=self.settings.http_timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
            },
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.access_token:
            raise GatewayError("Mercado Pago client not configured", reason="gateway_unavailable")

        try:
            async with self._client() as http_client:
                response = await http_client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"❌ Mercado Pago {method} {path} failed: {e}")
            raise GatewayError(f"Mercado Pago request failed: {e}") from e

        if response.status_code not in (200, 201):
            detail = _error_detail(response)
            logger.error(f"❌ Mercado Pago {method} {path} returned HTTP {response.status_code}: {detail}")
            raise GatewayError(
                f"Mercado Pago HTTP {response.status_code}: {detail}", status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError(f"Mercado Pago returned invalid JSON for {path}") from e
        if not isinstance(data, dict) or not data.get("id"):
            raise GatewayError(f"Mercado Pago response for {path} has no id", reason="invalid_response")
        return data

    async def get_payment(self, payment_id: str) -> dict:
        """Fetch a payment by id"""
        return await self._request("GET", f"/v1/payments/{payment_id}")

    async def get_preapproval(self, preapproval_id: str) -> dict:
        """Fetch a recurring subscription (preapproval) by id"""
        return await self._request("GET", f"/preapproval/{preapproval_id}")

    async def create_pix_payment(
        self,
        amount_cents: int,
        description: str,
        external_reference: str,
        metadata: Optional[dict] = None,
        payer_email: Optional[str] = None,
        expires_at: Optional[str] = None,
    ) -> dict:
        """
        Create a PIX payment.

        Returns:
            dict with the raw ``payment`` and a ``pix`` block (QR code, copy-paste code, expiry)
        """
        body = {
            "transaction_amount": round(amount_cents / 100, 2),
            "description": description,
            "payment_method_id": "pix",
            "external_reference": external_reference,
            "metadata": metadata or {},
        }
        if self.settings.notification_url:
            body["notification_url"] = self.settings.notification_url
        if payer_email:
            body["payer"] = {"email": payer_email}
        if expires_at:
            body["date_of_expiration"] = expires_at

        payment = await self._request(
            "POST",
            "/v1/payments",
            json=body,
            headers={"X-Idempotency-Key": uuid.uuid4().hex},
        )
        tx_data = (payment.get("point_of_interaction") or {}).get("transaction_data") or {}
        pix = {
            "payment_id": str(payment["id"]),
            "qr_code": tx_data.get("qr_code"),
            "qr_code_base64": tx_data.get("qr_code_base64"),
            "copia_e_cola": tx_data.get("qr_code"),
            "ticket_url": tx_data.get("ticket_url"),
            "expires_at": payment.get("date_of_expiration"),
            "amount_cents": amount_cents,
        }
        logger.info(f"✅ Created PIX payment {payment['id']} ({amount_cents} cents)")
        return {"payment": payment, "pix": pix}

    async def create_preapproval(
        self,
        amount_cents: int,
        reason: str,
        external_reference: str,
        payer_email: Optional[str],
        frequency_months: int = 1,
        start_date: Optional[datetime] = None,
    ) -> dict:
        """
        Create a recurring card subscription (preapproval).

        ``start_date`` defers the first charge, e.g. to the end of a cycle
        already paid by PIX. The payer authorizes it at ``init_point``.
        """
        auto_recurring = {
            "frequency": frequency_months,
            "frequency_type": "months",
            "transaction_amount": round(amount_cents / 100, 2),
            "currency_id": self.settings.currency,
        }
        if start_date is not None:
            auto_recurring["start_date"] = start_date.strftime("%Y-%m-%dT%H:%M:%S.000Z")

        body = {
            "reason": reason,
            "external_reference": external_reference,
            "auto_recurring": auto_recurring,
            "status": "pending",
        }
        if payer_email:
            body["payer_email"] = payer_email
        if self.settings.back_url:
            body["back_url"] = self.settings.back_url

        preapproval = await self._request(
            "POST",
            "/preapproval",
            json=body,
            headers={"X-Idempotency-Key": uuid.uuid4().hex},
        )
        logger.info(f"✅ Created preapproval {preapproval['id']} ({amount_cents} cents every {frequency_months} months)")
        return preapproval

    async def update_preapproval_status(self, preapproval_id: str, status: str) -> dict:
        """Pause (``paused``), resume (``authorized``) or cancel (``cancelled``) a preapproval"""
        preapproval = await self._request("PUT", f"/preapproval/{preapproval_id}", json={"status": status})
        logger.info(f"✅ Preapproval {preapproval_id} set to {status}")
        return preapproval


mercadopago_service = MercadoPagoService(get_billing_settings())


def get_mercadopago_service() -> MercadoPagoService:
    return mercadopago_service
