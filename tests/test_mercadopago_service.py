import asyncio
import json
from dataclasses import replace
from datetime import datetime

import httpx
import pytest

from agenda.domain.billing.exceptions import GatewayError
from agenda.domain.billing.mercadopago_service import MercadoPagoService


def make_service(billing_settings, handler):
    return MercadoPagoService(billing_settings, transport=httpx.MockTransport(handler))


def test_get_payment(billing_settings):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={"id": 123, "status": "approved"})

    payment = asyncio.run(make_service(billing_settings, handler).get_payment("123"))

    assert payment["status"] == "approved"
    assert seen["path"] == "/v1/payments/123"
    assert seen["auth"] == "Bearer TEST-ACCESS-TOKEN"


def test_get_preapproval_path(billing_settings):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        return httpx.Response(200, json={"id": "pre-1", "status": "authorized"})

    asyncio.run(make_service(billing_settings, handler).get_preapproval("pre-1"))

    assert seen["path"] == "/preapproval/pre-1"


def test_http_error_becomes_gateway_error(billing_settings):
    def handler(request):
        return httpx.Response(404, json={"message": "Payment not found", "error": "not_found"})

    with pytest.raises(GatewayError) as exc:
        asyncio.run(make_service(billing_settings, handler).get_payment("404"))

    assert exc.value.status_code == 404
    assert "Payment not found" in str(exc.value)


def test_response_without_id_is_rejected(billing_settings):
    def handler(request):
        return httpx.Response(200, json={"status": "approved"})

    with pytest.raises(GatewayError) as exc:
        asyncio.run(make_service(billing_settings, handler).get_payment("1"))

    assert exc.value.reason == "invalid_response"


def test_transport_failure_becomes_gateway_error(billing_settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError):
        asyncio.run(make_service(billing_settings, handler).get_payment("1"))


def test_unconfigured_client_refuses_requests(billing_settings):
    service = MercadoPagoService(replace(billing_settings, access_token=None))

    assert not service.is_available()
    with pytest.raises(GatewayError) as exc:
        asyncio.run(service.get_payment("1"))
    assert exc.value.reason == "gateway_unavailable"


def test_create_pix_payment(billing_settings):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        seen["idempotency_key"] = request.headers.get("x-idempotency-key")
        return httpx.Response(
            201,
            json={
                "id": 987,
                "status": "pending",
                "date_of_expiration": "2026-10-20T12:00:00.000-03:00",
                "point_of_interaction": {
                    "transaction_data": {
                        "qr_code": "00020126PIX",
                        "qr_code_base64": "iVBORw0KGgo=",
                        "ticket_url": "https://mercadopago.test/ticket",
                    }
                },
            },
        )

    created = asyncio.run(
        make_service(billing_settings, handler).create_pix_payment(
            amount_cents=4990,
            description="Agenda - Plano Pro (mensal)",
            external_reference="v2.abc",
            metadata={"kind": "plan"},
            payer_email="owner@example.com",
        )
    )

    body = seen["body"]
    assert body["transaction_amount"] == 49.9
    assert body["payment_method_id"] == "pix"
    assert body["external_reference"] == "v2.abc"
    assert body["notification_url"] == "https://api.agenda.test/billing/webhook"
    assert body["payer"] == {"email": "owner@example.com"}
    assert seen["idempotency_key"]
    assert created["pix"]["payment_id"] == "987"
    assert created["pix"]["copia_e_cola"] == "00020126PIX"
    assert created["pix"]["amount_cents"] == 4990


def test_create_preapproval_defers_first_charge(billing_settings):
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        seen["idempotency_key"] = request.headers.get("x-idempotency-key")
        return httpx.Response(
            201,
            json={
                "id": "2c938084",
                "status": "pending",
                "init_point": "https://www.mercadopago.com.br/subscriptions/checkout?preapproval_id=2c938084",
            },
        )

    settings = replace(billing_settings, back_url="https://api.agenda.test/billing/callback")
    preapproval = asyncio.run(
        make_service(settings, handler).create_preapproval(
            amount_cents=49900,
            reason="Agenda - Plano Pro (anual)",
            external_reference="v2.abc",
            payer_email="owner@example.com",
            frequency_months=12,
            start_date=datetime(2026, 11, 19, 12, 0, 0),
        )
    )

    body = seen["body"]
    assert seen["method"] == "POST"
    assert seen["path"] == "/preapproval"
    assert seen["idempotency_key"]
    assert body["status"] == "pending"
    assert body["payer_email"] == "owner@example.com"
    assert body["back_url"] == "https://api.agenda.test/billing/callback"
    assert body["auto_recurring"] == {
        "frequency": 12,
        "frequency_type": "months",
        "transaction_amount": 499.0,
        "currency_id": "BRL",
        "start_date": "2026-11-19T12:00:00.000Z",
    }
    assert preapproval["init_point"].endswith("preapproval_id=2c938084")


def test_create_preapproval_starts_now_without_start_date(billing_settings):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "pre-9", "status": "pending"})

    asyncio.run(
        make_service(billing_settings, handler).create_preapproval(
            amount_cents=1490, reason="Agenda - Plano Starter (mensal)", external_reference="v2.x", payer_email=None
        )
    )

    assert "start_date" not in seen["body"]["auto_recurring"]
    assert "payer_email" not in seen["body"]
    assert "back_url" not in seen["body"]


def test_update_preapproval_status(billing_settings):
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "pre-1", "status": "paused"})

    preapproval = asyncio.run(make_service(billing_settings, handler).update_preapproval_status("pre-1", "paused"))

    assert seen == {"method": "PUT", "path": "/preapproval/pre-1", "body": {"status": "paused"}}
    assert preapproval["status"] == "paused"


def test_update_preapproval_status_rejected(billing_settings):
    def handler(request):
        return httpx.Response(400, json={"message": "Invalid status transition", "cause": [{"code": 3, "description": "x"}]})

    with pytest.raises(GatewayError) as exc:
        asyncio.run(make_service(billing_settings, handler).update_preapproval_status("pre-1", "authorized"))

    assert exc.value.status_code == 400
