import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from backend.orderbot.errors import PaymentGatewayError
from backend.orderbot.payment_gateway import GatewayStatus, OxaPayClient, verify_webhook_signature


def client_for(handler):
    return OxaPayClient(merchant="m-1", api_base="https://gateway.test/", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_create_payment(oxapay):
    link = await oxapay.client.create_payment(Decimal("25"), "250 tokens - Small Pack", "1_1700000000000_250", None)
    assert link.external_id == "1001"
    assert link.pay_link == "https://pay.test/1001"
    _, body = oxapay.requests[0]
    assert body["amount"] == 25.0
    assert body["orderId"] == "1_1700000000000_250"
    assert body["callbackUrl"] is None


@pytest.mark.asyncio
async def test_inquire_normalizes_status(oxapay):
    oxapay.statuses["55"] = "paid"
    status = await oxapay.client.inquire("55")
    assert status.status == GatewayStatus.PAID
    assert status.amount == Decimal("10")
    assert status.currency == "USD"


@pytest.mark.asyncio
async def test_rejected_request_raises():
    def handler(request):
        return httpx.Response(200, json={"result": 101, "message": "Invalid merchant"})

    with pytest.raises(PaymentGatewayError):
        await client_for(handler).create_payment(Decimal("10"), "100 tokens - Starter Pack", "ref", None)


@pytest.mark.asyncio
async def test_http_errors_raise():
    def server_error(request):
        return httpx.Response(502, text="bad gateway")

    def not_json(request):
        return httpx.Response(200, text="<html>")

    with pytest.raises(PaymentGatewayError):
        await client_for(server_error).inquire("1")
    with pytest.raises(PaymentGatewayError):
        await client_for(not_json).inquire("1")


@pytest.mark.asyncio
async def test_missing_track_id_raises():
    def handler(request):
        return httpx.Response(200, json={"result": 100})

    with pytest.raises(PaymentGatewayError):
        await client_for(handler).create_payment(Decimal("10"), "100 tokens - Starter Pack", "ref", None)


def test_webhook_signature():
    body = json.dumps({"trackId": "1", "status": "Paid"}).encode()
    good = hmac.new(b"s3cret", body, hashlib.sha512).hexdigest()

    assert verify_webhook_signature(body, good, secret="s3cret")
    assert verify_webhook_signature(body, good.upper(), secret="s3cret")
    assert not verify_webhook_signature(body, "deadbeef", secret="s3cret")
    assert not verify_webhook_signature(body, None, secret="s3cret")
    assert verify_webhook_signature(body, None, secret="")


def test_status_normalize():
    assert GatewayStatus.normalize(" expired ") == "Expired"
    assert GatewayStatus.normalize("Refunding") == "Refunding"
    assert GatewayStatus.normalize(None) == ""
