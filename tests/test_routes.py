"""
HTTP API: payment webhook, manual approval, admin order status, user endpoints.

Seed data is committed before each request: requests run in their own sessions.
"""

import hashlib
import hmac
import json
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from backend.orderbot import payment_gateway
from backend.orderbot.main import create_app
from backend.orderbot.services import ledger, orders
from backend.orderbot.utils import utcnow

API = "/api"
ADMIN = {"X-Telegram-Id": "999"}
STARTER = "100 tokens - Starter Pack"


@pytest_asyncio.fixture
async def client():
    app = create_app()
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


def user(telegram_id):
    return {"X-Telegram-Id": str(telegram_id)}


def webhook_body(track_id, status="Paid", description=STARTER):
    return {"trackId": track_id, "status": status, "amount": 10, "currency": "USD", "description": description}


async def stale_payment(db, make_account, external_id, telegram_id, minutes=20):
    account_id = (await make_account(telegram_id=telegram_id)).id
    tx = await ledger.record_pending_payment(db, account_id, external_id, 100, STARTER)
    tx.created_at = utcnow() - timedelta(minutes=minutes)
    await db.commit()
    return account_id


@pytest.mark.asyncio
async def test_healthz(client):
    r = await client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


# =============================================================================
# Webhook
# =============================================================================
@pytest.mark.asyncio
async def test_webhook_duplicate_delivery_credits_once(client, db, make_account, notifier):
    account_id = (await make_account(telegram_id=8001)).id
    await ledger.record_pending_payment(db, account_id, "T1", 100, STARTER)
    await db.commit()

    first = await client.post(f"{API}/webhook/oxapay", json=webhook_body("T1"))
    second = await client.post(f"{API}/webhook/oxapay", json=webhook_body("T1"))

    assert first.status_code == 200
    assert first.json() == {"success": True, "result": "applied"}
    assert second.json() == {"success": True, "result": "already_applied"}
    assert [chat for chat, _ in notifier.outbox] == [8001]

    r = await client.get(f"{API}/user/balance", headers=user(8001))
    assert r.json()["token_balance"] == 100


@pytest.mark.asyncio
async def test_webhook_errors_are_generic(client):
    unknown = await client.post(f"{API}/webhook/oxapay", json=webhook_body("nope"))
    assert unknown.status_code == 404
    assert unknown.json() == {"detail": "Payment not found."}

    malformed = await client.post(f"{API}/webhook/oxapay", json=webhook_body("nope", description="Starter Pack"))
    assert malformed.status_code == 400
    assert malformed.json() == {"detail": "Invalid payment event."}

    not_json = await client.post(f"{API}/webhook/oxapay", content=b"{oops")
    assert not_json.status_code == 400


@pytest.mark.asyncio
async def test_webhook_signature_checked_when_key_configured(client, db, make_account, monkeypatch):
    monkeypatch.setattr(payment_gateway.settings, "OXAPAY_MERCHANT_API_KEY", "s3cret")
    account_id = (await make_account()).id
    await ledger.record_pending_payment(db, account_id, "T9", 100, STARTER)
    await db.commit()
    raw = json.dumps(webhook_body("T9")).encode()

    bad = await client.post(f"{API}/webhook/oxapay", content=raw, headers={"HMAC": "forged"})
    assert bad.status_code == 403

    signature = hmac.new(b"s3cret", raw, hashlib.sha512).hexdigest()
    good = await client.post(f"{API}/webhook/oxapay", content=raw, headers={"HMAC": signature})
    assert good.json()["result"] == "applied"


# =============================================================================
# Ручное одобрение
# =============================================================================
@pytest.mark.asyncio
async def test_manual_approval_then_late_webhook(client, db, make_account, notifier):
    await stale_payment(db, make_account, "T2", telegram_id=8002)

    listed = await client.get(f"{API}/admin/payments/stuck", headers=ADMIN)
    assert [p["external_id"] for p in listed.json()["items"]] == ["T2"]
    assert listed.json()["items"][0]["age_minutes"] >= 20

    approved = await client.post(f"{API}/admin/payments/approve", json={"externalId": "T2", "note": "ok"}, headers=ADMIN)
    assert approved.status_code == 200
    assert approved.json() == {"result": "applied", "balance": 100}

    again = await client.post(f"{API}/admin/payments/approve", json={"externalId": "T2"}, headers=ADMIN)
    assert again.json()["result"] == "alreadyApplied"

    late = await client.post(f"{API}/webhook/oxapay", json=webhook_body("T2"))
    assert late.json()["result"] == "already_applied"

    missing = await client.post(f"{API}/admin/payments/approve", json={"externalId": "T404"}, headers=ADMIN)
    assert missing.json() == {"result": "notFound", "balance": None}

    assert len(notifier.outbox) == 1
    r = await client.get(f"{API}/user/balance", headers=user(8002))
    assert r.json()["token_balance"] == 100


@pytest.mark.asyncio
async def test_approval_before_timeout_is_rejected(client, db, make_account):
    await stale_payment(db, make_account, "T3", telegram_id=8003, minutes=1)
    r = await client.post(f"{API}/admin/payments/approve", json={"externalId": "T3"}, headers=ADMIN)
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_admin_endpoints_require_admin(client, db, make_account):
    await make_account(telegram_id=8004)
    await make_account(telegram_id=8005, is_admin=True)

    no_header = await client.get(f"{API}/admin/payments/summary")
    assert no_header.status_code == 400
    denied = await client.get(f"{API}/admin/payments/summary", headers=user(8004))
    assert denied.status_code == 403
    allowed = await client.get(f"{API}/admin/payments/summary", headers=user(8005))
    assert allowed.status_code == 200
    assert allowed.json()["counts"]["stuck"] == 0


@pytest.mark.asyncio
async def test_manual_reject(client, db, make_account):
    await stale_payment(db, make_account, "T4", telegram_id=8006)
    r = await client.post(f"{API}/admin/payments/fail", json={"externalId": "T4", "note": "no funds"}, headers=ADMIN)
    assert r.json() == {"result": "failed"}
    r = await client.post(f"{API}/admin/payments/approve", json={"externalId": "T4"}, headers=ADMIN)
    assert r.json()["result"] == "notFound"


# =============================================================================
# Заказы (админ)
# =============================================================================
@pytest.mark.asyncio
async def test_order_status_change_notifies_and_refunds(client, db, make_account, make_profile, notifier):
    account_id = (await make_account(balance=100, telegram_id=8007)).id
    profile_id = (await make_profile(account_id)).id
    order_id = (await orders.create_order(db, account_id, profile_id, 100)).id

    r = await client.post(
        f"{API}/admin/orders/{order_id}/status", json={"newStatus": "cancelled", "notes": "customer request"},
        headers=ADMIN,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["order"]["status"] == "cancelled"
    assert body["notificationEmitted"] is True
    assert notifier.outbox[0][0] == 8007
    assert "customer request" in notifier.outbox[0][1]

    illegal = await client.post(f"{API}/admin/orders/{order_id}/status", json={"newStatus": "completed"}, headers=ADMIN)
    assert illegal.status_code == 409
    assert illegal.json() == {"detail": "This status change is not allowed for the order."}

    balance = await client.get(f"{API}/user/balance", headers=user(8007))
    assert balance.json()["token_balance"] == 100


@pytest.mark.asyncio
async def test_assign_and_queue(client, db, make_account, make_profile):
    account_id = (await make_account(balance=300, telegram_id=8008)).id
    profile_id = (await make_profile(account_id)).id
    first = (await orders.create_order(db, account_id, profile_id, 100)).id
    second = (await orders.create_order(db, account_id, profile_id, 100)).id

    queue = await client.get(f"{API}/admin/orders/queue", headers=ADMIN)
    assert [o["id"] for o in queue.json()] == [first, second]

    r = await client.post(f"{API}/admin/orders/{first}/assign", json={"operator_id": 4242}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["order"]["assigned_to"] == 4242
    assert r.json()["order"]["status"] == "assigned"

    queue = await client.get(f"{API}/admin/orders/queue", headers=ADMIN)
    assert [o["id"] for o in queue.json()] == [second]


# =============================================================================
# Пользователь
# =============================================================================
PROFILE = {
    "first_name": "John",
    "last_name": "Smith",
    "phone": "+1-555-123-4567",
    "email": "john.smith@email.com",
    "gender": "Male",
    "dob": "03-15-1990",
    "address": "123 Main Street",
    "city": "New York",
    "state": "NY",
    "postal": "10001",
}


@pytest.mark.asyncio
async def test_user_profile_order_flow(client):
    headers = user(8010)

    bad = await client.post(f"{API}/user/profiles", json=dict(PROFILE, phone="abc"), headers=headers)
    assert bad.status_code == 422
    assert bad.json() == {"detail": "Please enter a valid phone number:"}

    created = await client.post(f"{API}/user/profiles", json=PROFILE, headers=headers)
    assert created.status_code == 200
    profile = created.json()
    assert profile["gender"] == "male"
    assert profile["dob"] == "1990-03-15"
    assert profile["has_credential"] is False

    poor = await client.post(f"{API}/user/orders", json={"profile_id": profile["id"], "sites": 100}, headers=headers)
    assert poor.status_code == 402

    balance = await client.get(f"{API}/user/balance", headers=headers)
    account_id = balance.json()["account_id"]
    credit = await client.post(f"{API}/admin/accounts/{account_id}/credit", json={"amount": 300}, headers=ADMIN)
    assert credit.json() == {"account_id": account_id, "new_balance": 300}

    placed = await client.post(f"{API}/user/orders", json={"profile_id": profile["id"], "sites": 250}, headers=headers)
    assert placed.status_code == 200
    assert placed.json()["status"] == "pending"
    assert placed.json()["token_cost"] == 200

    listed = await client.get(f"{API}/user/orders", headers=headers)
    assert [o["id"] for o in listed.json()] == [placed.json()["id"]]

    check = await client.get(f"{API}/admin/accounts/{account_id}/ledger-check", headers=ADMIN)
    assert check.json() == {"account_id": account_id, "cached_balance": 100, "journal_sum": 100, "consistent": True}


@pytest.mark.asyncio
async def test_user_requires_telegram_header(client):
    assert (await client.get(f"{API}/user/balance")).status_code == 400
    assert (await client.get(f"{API}/user/balance", headers={"X-Telegram-Id": "abc"})).status_code == 400


@pytest.mark.asyncio
async def test_packages_and_pricing_update(client):
    r = await client.put(
        f"{API}/admin/settings/package-pricing",
        json=[{"sites": 100, "baseTokens": 90, "subscriberTokens": 50}],
        headers=ADMIN,
    )
    assert r.json() == {"packages": [{"sites": 100, "baseTokens": 90, "subscriberTokens": 50}]}

    packages = await client.get(f"{API}/user/packages", headers=user(8011))
    assert packages.json() == [{"sites": 100, "base_tokens": 90, "subscriber_tokens": 50, "price": 90}]


@pytest.mark.asyncio
async def test_buy_tokens(client, oxapay):
    headers = user(8012)
    r = await client.post(f"{API}/payments/tokens", json={"tokens": 100}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["externalId"] == "1001"
    assert body["paymentLink"] == "https://pay.test/1001"
    assert body["tokens"] == 100

    custom = await client.post(f"{API}/payments/tokens", json={"amount_usd": "30"}, headers=headers)
    assert custom.json()["tokens"] == 300

    too_small = await client.post(f"{API}/payments/tokens", json={"amount_usd": "10"}, headers=headers)
    assert too_small.status_code == 422
    assert too_small.json() == {"detail": "❌ Invalid amount. Minimum: $25.00"}

    txs = await client.get(f"{API}/user/transactions", headers=headers)
    assert sorted(t["external_payment_id"] for t in txs.json()) == ["1001", "1002"]
    assert {t["payment_status"] for t in txs.json()} == {"pending"}

    balance = await client.get(f"{API}/user/balance", headers=headers)
    assert balance.json()["token_balance"] == 0
