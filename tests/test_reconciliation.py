"""
Payment reconciliation: webhook idempotency, stuck payments, manual approval and rejection.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from backend.orderbot import reconciliation as rec
from backend.orderbot.bot_notify import PAYMENT_CONFIRMED
from backend.orderbot.errors import MalformedEvent, PaymentGatewayError, PaymentNotEligible, UnmatchedPayment
from backend.orderbot.models import PaymentStatus
from backend.orderbot.services import ledger
from backend.orderbot.services.pricing import get_token_package
from backend.orderbot.utils import utcnow

STARTER = "100 tokens - Starter Pack"


async def paid(db, external_id, description=STARTER):
    return await rec.handle_webhook_event(db, external_id, "Paid", Decimal("10"), "USD", description)


async def pending_account(db, make_account, external_id="P1", tokens=100, telegram_id=None):
    account_id = (await make_account(telegram_id=telegram_id)).id
    await ledger.record_pending_payment(db, account_id, external_id, tokens, f"{tokens} tokens - Starter Pack")
    return account_id


# =============================================================================
# Разбор колбэка
# =============================================================================
def test_parse_token_count():
    assert rec.parse_token_count("100 tokens - Starter Pack") == 100
    assert rec.parse_token_count("Purchase of 1 token") == 1
    with pytest.raises(MalformedEvent):
        rec.parse_token_count("Starter Pack")
    with pytest.raises(MalformedEvent):
        rec.parse_token_count(None)


def test_parse_webhook_payload():
    event = rec.parse_webhook_payload(
        {"trackId": 123, "status": "Paid", "amount": "10.00", "currency": "USD", "description": STARTER}
    )
    assert event.external_id == "123"
    assert event.amount == Decimal("10.00")
    assert event.description == STARTER

    with pytest.raises(MalformedEvent):
        rec.parse_webhook_payload(["not", "an", "object"])
    with pytest.raises(MalformedEvent):
        rec.parse_webhook_payload({"status": "Paid"})
    with pytest.raises(MalformedEvent):
        rec.parse_webhook_payload({"trackId": "1", "status": "Paid", "amount": "ten"})


# =============================================================================
# Webhook
# =============================================================================
@pytest.mark.asyncio
async def test_paid_twice_credits_once(db, make_account):
    account_id = await pending_account(db, make_account, telegram_id=7001)

    first = await paid(db, "P1")
    second = await paid(db, "P1")

    assert first.result == rec.APPLIED
    assert first.success
    assert first.tokens == 100
    assert first.balance == 100
    assert first.event.kind == PAYMENT_CONFIRMED
    assert first.event.chat_id == 7001
    assert first.event.payload == {"tokens": 100, "balance": 100, "external_id": "P1"}

    assert second.result == rec.ALREADY_APPLIED
    assert second.success
    assert second.event is None
    assert await ledger.balance(db, account_id) == 100
    cached, computed = await ledger.verify_balance(db, account_id)
    assert cached == computed == 100


@pytest.mark.asyncio
async def test_status_is_case_insensitive(db, make_account):
    account_id = await pending_account(db, make_account)
    outcome = await rec.handle_webhook_event(db, "P1", "PAID", None, None, STARTER)
    assert outcome.result == rec.APPLIED
    assert await ledger.balance(db, account_id) == 100


@pytest.mark.asyncio
async def test_paid_for_unknown_payment_is_unmatched(db, make_account):
    account_id = (await make_account()).id
    with pytest.raises(UnmatchedPayment):
        await paid(db, "ghost")
    assert await ledger.balance(db, account_id) == 0


@pytest.mark.asyncio
async def test_missing_token_count_is_malformed(db, make_account):
    account_id = await pending_account(db, make_account)
    with pytest.raises(MalformedEvent):
        await paid(db, "P1", description="Starter Pack")
    assert await ledger.balance(db, account_id) == 0
    assert (await ledger.get_payment(db, "P1")).payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_expired_marks_failed_without_balance_change(db, make_account):
    account_id = await pending_account(db, make_account)

    first = await rec.handle_webhook_event(db, "P1", "Expired", None, None, STARTER)
    again = await rec.handle_webhook_event(db, "P1", "Failed", None, None, STARTER)
    unknown = await rec.handle_webhook_event(db, "nope", "Expired", None, None, STARTER)

    assert first.result == rec.FAILED
    assert again.result == rec.IGNORED
    assert unknown.result == rec.IGNORED
    assert await ledger.balance(db, account_id) == 0
    assert (await ledger.get_payment(db, "P1")).payment_status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_waiting_and_unknown_statuses_are_ignored(db, make_account):
    account_id = await pending_account(db, make_account)
    for status in ("Waiting", "Confirming", "Refunding"):
        outcome = await rec.handle_webhook_event(db, "P1", status, None, None, STARTER)
        assert outcome.result == rec.IGNORED
    assert await ledger.balance(db, account_id) == 0
    assert (await ledger.get_payment(db, "P1")).payment_status == PaymentStatus.PENDING


# =============================================================================
# Зависшие платежи и ручное одобрение
# =============================================================================
@pytest.mark.asyncio
async def test_stuck_payment_approved_then_late_webhook(db, make_account):
    account_id = await pending_account(db, make_account, telegram_id=7002)
    later = utcnow() + timedelta(minutes=11)

    stuck = await rec.find_stuck_payments(db, timeout_minutes=10, now=later)
    assert [p.external_id for p in stuck] == ["P1"]
    assert stuck[0].account_id == account_id
    assert stuck[0].amount == 100
    assert stuck[0].age_minutes == 11

    approval = await rec.manually_approve_payment(db, "P1", "checked on explorer", now=later)
    assert approval.result == rec.APPLIED
    assert approval.balance == 100
    assert approval.event.kind == PAYMENT_CONFIRMED
    assert approval.event.chat_id == 7002

    payment = await ledger.get_payment(db, "P1")
    assert payment.description.endswith("(Verified & processed) - checked on explorer")

    late = await paid(db, "P1")
    assert late.result == rec.ALREADY_APPLIED
    assert await ledger.balance(db, account_id) == 100
    assert await rec.find_stuck_payments(db, timeout_minutes=10, now=later) == []

    repeat = await rec.manually_approve_payment(db, "P1", now=later)
    assert repeat.result == rec.ALREADY_APPLIED
    assert repeat.event is None


@pytest.mark.asyncio
async def test_fresh_payment_is_not_stuck_and_cannot_be_approved(db, make_account):
    account_id = await pending_account(db, make_account)
    assert await rec.find_stuck_payments(db, timeout_minutes=10) == []

    with pytest.raises(PaymentNotEligible):
        await rec.manually_approve_payment(db, "P1")

    assert await ledger.balance(db, account_id) == 0
    assert (await ledger.get_payment(db, "P1")).payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_approval_of_missing_or_failed_payment(db, make_account):
    await pending_account(db, make_account)
    await ledger.mark_payment_failed(db, "P1")
    later = utcnow() + timedelta(minutes=30)

    assert (await rec.manually_approve_payment(db, "P1", now=later)).result == rec.NOT_FOUND
    assert (await rec.manually_approve_payment(db, "missing", now=later)).result == rec.NOT_FOUND


@pytest.mark.asyncio
async def test_manual_reject(db, make_account):
    account_id = await pending_account(db, make_account)

    assert await rec.manually_fail_payment(db, "P1", "no funds received") == rec.FAILED
    assert await rec.manually_fail_payment(db, "P1") == rec.NOT_PENDING
    assert await rec.manually_fail_payment(db, "missing") == rec.NOT_FOUND

    payment = await ledger.get_payment(db, "P1")
    assert payment.payment_status == PaymentStatus.FAILED
    assert "rejected by operator: no funds received" in payment.description
    assert await ledger.balance(db, account_id) == 0


@pytest.mark.asyncio
async def test_payment_status_summary(db, make_account):
    account_id = (await make_account()).id
    for ext in ("A", "B", "C"):
        await ledger.record_pending_payment(db, account_id, ext, 100, STARTER)
    await paid(db, "A")
    await ledger.mark_payment_failed(db, "B")

    summary = await rec.payment_status_summary(db, timeout_minutes=10, now=utcnow() + timedelta(minutes=15))
    assert summary == {"pending": 1, "completed": 1, "failed": 1, "stuck": 1}


# =============================================================================
# Шлюз: инициирование и fallback-поллер
# =============================================================================
@pytest.mark.asyncio
async def test_initiate_payment_records_pending_before_link(db, make_account, oxapay):
    account_id = (await make_account()).id

    link = await rec.initiate_payment(db, account_id, get_token_package(100))
    await db.commit()

    assert link.external_id == "1001"
    assert link.pay_link == "https://pay.test/1001"
    payment = await ledger.get_payment(db, "1001")
    assert payment.payment_status == PaymentStatus.PENDING
    assert payment.amount == 100
    assert payment.description == STARTER
    assert await ledger.balance(db, account_id) == 0

    path, body = oxapay.requests[0]
    assert path == "/merchants/request"
    assert body["merchant"] == "test-merchant"
    assert body["amount"] == 10.0
    assert body["currency"] == "USD"
    assert body["description"] == STARTER
    assert body["orderId"].startswith(f"{account_id}_")


@pytest.mark.asyncio
async def test_initiate_payment_gateway_rejection(db, make_account, oxapay):
    account_id = (await make_account()).id
    oxapay.fail_requests = True

    with pytest.raises(PaymentGatewayError):
        await rec.initiate_payment(db, account_id, get_token_package(250))
    await db.rollback()

    assert await ledger.list_transactions(db, account_id) == []


@pytest.mark.asyncio
async def test_poller_marks_failed_and_flags_paid(db, make_account, oxapay):
    account_id = (await make_account()).id
    for tokens in (100, 250, 550):
        await rec.initiate_payment(db, account_id, get_token_package(tokens))
    await db.commit()
    oxapay.statuses.update({"1001": "Expired", "1002": "Paid"})

    report = await rec.poll_stuck_payments(
        db, timeout_minutes=10, now=utcnow() + timedelta(minutes=11), inquire=True,
    )
    await db.commit()

    assert report.marked_failed == ["1001"]
    assert report.gateway_paid == ["1002"]
    assert [p.external_id for p in report.stuck] == ["1002", "1003"]
    assert [p.gateway_status for p in report.stuck] == ["Paid", "Waiting"]
    assert await ledger.balance(db, account_id) == 0
    assert (await ledger.get_payment(db, "1001")).payment_status == PaymentStatus.FAILED
    assert (await ledger.get_payment(db, "1002")).payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_poller_without_inquiry_and_with_gateway_errors(db, make_account, oxapay):
    account_id = (await make_account()).id
    await rec.initiate_payment(db, account_id, get_token_package(100))
    await db.commit()
    later = utcnow() + timedelta(minutes=11)
    sent = len(oxapay.requests)

    quiet = await rec.poll_stuck_payments(db, timeout_minutes=10, now=later, inquire=False)
    assert [p.external_id for p in quiet.stuck] == ["1001"]
    assert len(oxapay.requests) == sent

    oxapay.fail_requests = True
    noisy = await rec.poll_stuck_payments(db, timeout_minutes=10, now=later, inquire=True)
    assert [p.external_id for p in noisy.stuck] == ["1001"]
    assert noisy.stuck[0].gateway_status is None
    assert noisy.marked_failed == []
