# 📂 backend/orderbot/reconciliation.py — сверка платежей (Payment Reconciliation Engine)
# -----------------------------------------------------------------------------
# Гарантия: не более одного зачисления на внешний платёж при доставке
# «хотя бы один раз». Все пути зачисления (webhook, ручное одобрение) идут через
# ledger.credit_idempotent(), ключ идемпотентности — external_payment_id (trackId).
#
# Что делает:
#   • initiate_payment() — счёт у шлюза + pending-транзакция ДО возврата ссылки.
#   • handle_webhook_event() — колбэк шлюза:
#       Paid                → credit_idempotent (повтор → already_applied)
#       Expired | Failed    → pending → failed, баланс не меняется
#       Waiting | Confirming и неизвестные статусы → no-op
#   • find_stuck_payments() / poll_stuck_payments() — fallback-поллер: pending
#     старше таймаута. Ничего не зачисляет. Если шлюз сообщает Expired/Failed —
#     помечает failed (тот же эффект, что и webhook).
#   • manually_approve_payment() / manually_fail_payment() — действия оператора.
#   • payment_status_summary() — счётчики для админки.
#
# Политика зависших платежей: авто-зачисления и авто-возврата нет. Платёж
# остаётся pending, пока не придёт webhook, шлюз не вернёт Expired/Failed при
# опросе или оператор не одобрит/отклонит его вручную (после таймаута).
# -----------------------------------------------------------------------------

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .bot_notify import PAYMENT_CONFIRMED, NotificationEvent
from .config import get_settings
from .database import atomic
from .errors import MalformedEvent, PaymentGatewayError, PaymentNotEligible
from .models import PaymentStatus, TokenTransaction
from .payment_gateway import GatewayStatus, OxaPayClient, PaymentLink, get_gateway
from .services import ledger
from .services.pricing import TokenPackage
from .utils import as_utc, get_logger, minutes_between, utcnow

logger = get_logger("orderbot.payments")
settings = get_settings()

TOKEN_COUNT_RE = re.compile(r"(\d+)\s+tokens?", re.IGNORECASE)

APPLIED = ledger.APPLIED
ALREADY_APPLIED = ledger.ALREADY_APPLIED
IGNORED = "ignored"
FAILED = "failed"
NOT_FOUND = "not_found"
NOT_PENDING = "not_pending"

APPROVAL_SUFFIX = " (Verified & processed)"


# =============================================================================
# Разбор события
# =============================================================================
def parse_token_count(description: Optional[str]) -> int:
    """'100 tokens - Starter Pack' → 100. Нет числа токенов → MalformedEvent."""
    m = TOKEN_COUNT_RE.search(description or "")
    if not m:
        raise MalformedEvent(f"no token count in description {description!r}")
    tokens = int(m.group(1))
    if tokens <= 0:
        raise MalformedEvent(f"non-positive token count in description {description!r}")
    return tokens


@dataclass
class PaymentEvent:
    external_id: str
    status: str
    amount: Optional[Decimal]
    currency: Optional[str]
    description: Optional[str]


def parse_webhook_payload(payload: Any) -> PaymentEvent:
    """JSON колбэка {trackId, status, amount, currency, description} → PaymentEvent."""
    if not isinstance(payload, dict):
        raise MalformedEvent("webhook body is not an object")
    external_id = payload.get("trackId")
    status = payload.get("status")
    if external_id in (None, "") or not status:
        raise MalformedEvent(f"webhook without trackId/status: {payload!r}")
    amount = payload.get("amount")
    try:
        amount_dec = Decimal(str(amount)) if amount not in (None, "") else None
    except InvalidOperation:
        raise MalformedEvent(f"bad amount {amount!r}")
    return PaymentEvent(
        external_id=str(external_id),
        status=str(status),
        amount=amount_dec,
        currency=payload.get("currency"),
        description=payload.get("description"),
    )


# =============================================================================
# Инициирование платежа
# =============================================================================
async def initiate_payment(
    db: AsyncSession,
    account_id: int,
    package: TokenPackage,
    gateway: Optional[OxaPayClient] = None,
) -> PaymentLink:
    """
    Создаёт счёт у шлюза и записывает pending-транзакцию по его trackId.
    Ссылка возвращается только после записи, так что webhook всегда найдёт строку.
    """
    gateway = gateway or get_gateway()
    await ledger.get_account(db, account_id)
    reference_id = f"{account_id}_{int(time.time() * 1000)}_{package.tokens}"
    link = await gateway.create_payment(
        package.price_usd, package.description, reference_id, settings.payment_callback_url(),
    )
    await ledger.record_pending_payment(db, account_id, link.external_id, package.tokens, package.description, "OxaPay")
    logger.info("Payment initiated account=%s external_id=%s tokens=%s usd=%s",
                account_id, link.external_id, package.tokens, package.price_usd)
    return link


# =============================================================================
# Webhook
# =============================================================================
@dataclass
class WebhookOutcome:
    result: str
    external_id: str
    tokens: int = 0
    balance: Optional[int] = None
    event: Optional[NotificationEvent] = None

    @property
    def success(self) -> bool:
        return self.result in (APPLIED, ALREADY_APPLIED, IGNORED, FAILED)


async def _payment_event(db: AsyncSession, tx: TokenTransaction, tokens: int, balance: int) -> NotificationEvent:
    account = await ledger.get_account(db, tx.account_id)
    return NotificationEvent(
        kind=PAYMENT_CONFIRMED,
        account_id=account.id,
        chat_id=account.telegram_id,
        payload={"tokens": tokens, "balance": balance, "external_id": tx.external_payment_id},
    )


async def handle_webhook_event(
    db: AsyncSession,
    external_id: str,
    status: str,
    amount: Optional[Decimal],
    currency: Optional[str],
    raw_description: Optional[str],
) -> WebhookOutcome:
    """
    Обработка колбэка шлюза. Безопасна при повторной доставке.
    MalformedEvent — нет количества токенов; UnmatchedPayment — Paid для неизвестного id.
    """
    tokens = parse_token_count(raw_description)
    normalized = GatewayStatus.normalize(status)
    logger.info("Webhook external_id=%s status=%s amount=%s %s tokens=%s",
                external_id, normalized, amount, currency or "", tokens)

    if normalized == GatewayStatus.PAID:
        async with atomic(db):
            outcome = await ledger.credit_idempotent(db, external_id, tokens)
            credited = int(outcome.transaction.amount)
            event = None
            if outcome.applied:
                event = await _payment_event(db, outcome.transaction, credited, outcome.balance)
        return WebhookOutcome(outcome.result, external_id, credited, outcome.balance, event)

    if normalized in GatewayStatus.TERMINAL_FAILURE:
        changed = await ledger.mark_payment_failed(db, external_id, note=f"gateway: {normalized}")
        return WebhookOutcome(FAILED if changed else IGNORED, external_id, tokens)

    if normalized not in GatewayStatus.ALL:
        logger.warning("Webhook external_id=%s: unknown status %r ignored", external_id, status)
    return WebhookOutcome(IGNORED, external_id, tokens)


# =============================================================================
# Fallback-поллер
# =============================================================================
@dataclass
class StuckPayment:
    external_id: str
    account_id: int
    amount: int
    description: Optional[str]
    created_at: datetime
    age_minutes: int
    gateway_status: Optional[str] = None


@dataclass
class PollReport:
    stuck: List[StuckPayment] = field(default_factory=list)
    marked_failed: List[str] = field(default_factory=list)
    gateway_paid: List[str] = field(default_factory=list)


async def find_stuck_payments(
    db: AsyncSession,
    timeout_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[StuckPayment]:
    """pending-транзакции с внешним id, созданные раньше now - timeout (старые первыми)."""
    timeout = settings.PAYMENT_STUCK_TIMEOUT_MINUTES if timeout_minutes is None else timeout_minutes
    now = now or utcnow()
    cutoff = now - timedelta(minutes=timeout)
    res = await db.execute(
        select(TokenTransaction)
        .where(
            TokenTransaction.payment_status == PaymentStatus.PENDING,
            TokenTransaction.external_payment_id.isnot(None),
            TokenTransaction.created_at < cutoff,
        )
        .order_by(TokenTransaction.created_at.asc(), TokenTransaction.id.asc())
    )
    return [
        StuckPayment(
            external_id=tx.external_payment_id,
            account_id=tx.account_id,
            amount=tx.amount,
            description=tx.description,
            created_at=as_utc(tx.created_at),
            age_minutes=minutes_between(tx.created_at, now),
        )
        for tx in res.scalars().all()
    ]


async def poll_stuck_payments(
    db: AsyncSession,
    gateway: Optional[OxaPayClient] = None,
    *,
    timeout_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
    inquire: Optional[bool] = None,
) -> PollReport:
    """
    Один проход поллера. Зачислений нет: зависшие платежи ждут оператора.
    При inquire — спрашиваем шлюз; Expired/Failed → failed.
    """
    inquire = settings.PAYMENT_POLL_INQUIRE_GATEWAY if inquire is None else inquire
    report = PollReport()
    stuck = await find_stuck_payments(db, timeout_minutes, now)

    for p in stuck:
        if inquire:
            gw = gateway or get_gateway()
            try:
                status = await gw.inquire(p.external_id)
            except PaymentGatewayError as e:
                logger.warning("Inquiry failed for external_id=%s: %s", p.external_id, e)
            else:
                p.gateway_status = status.status
                if status.status in GatewayStatus.TERMINAL_FAILURE:
                    if await ledger.mark_payment_failed(db, p.external_id, note=f"gateway: {status.status}"):
                        report.marked_failed.append(p.external_id)
                    continue
                if status.status == GatewayStatus.PAID:
                    logger.warning("external_id=%s is Paid at gateway but not credited; awaiting manual approval",
                                   p.external_id)
                    report.gateway_paid.append(p.external_id)
        report.stuck.append(p)

    logger.info("Stuck payments: %d listed, %d marked failed", len(report.stuck), len(report.marked_failed))
    return report


# =============================================================================
# Ручные действия оператора
# =============================================================================
@dataclass
class ApprovalOutcome:
    result: str
    external_id: str
    balance: Optional[int] = None
    event: Optional[NotificationEvent] = None


async def manually_approve_payment(
    db: AsyncSession,
    external_id: str,
    note: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> ApprovalOutcome:
    """
    Одобрение зависшего платежа. Статус перепроверяется под блокировкой строки
    непосредственно перед зачислением; гонка с поздним webhook решается
    credit_idempotent (второй писатель получает already_applied).
    """
    now = now or utcnow()
    async with atomic(db):
        tx = await ledger.get_payment(db, external_id, lock=True)
        if tx is None:
            logger.warning("Manual approval: external_id=%s not found", external_id)
            return ApprovalOutcome(NOT_FOUND, external_id)
        if tx.payment_status == PaymentStatus.COMPLETED:
            logger.info("Manual approval: external_id=%s already applied", external_id)
            return ApprovalOutcome(ALREADY_APPLIED, external_id, tx.balance_after)
        if tx.payment_status != PaymentStatus.PENDING:
            logger.warning("Manual approval: external_id=%s is %s", external_id, tx.payment_status)
            return ApprovalOutcome(NOT_FOUND, external_id)

        age = minutes_between(tx.created_at, now)
        if settings.MANUAL_APPROVAL_REQUIRES_TIMEOUT and age < settings.PAYMENT_STUCK_TIMEOUT_MINUTES:
            raise PaymentNotEligible(f"external_id={external_id} age={age}min")

        description = f"{tx.description or ''}{APPROVAL_SUFFIX}"
        if note:
            description += f" - {note}"
        outcome = await ledger.credit_idempotent(db, external_id, int(tx.amount), description)
        event = None
        if outcome.applied:
            event = await _payment_event(db, outcome.transaction, int(tx.amount), outcome.balance)

    logger.info("Manual approval external_id=%s result=%s note=%r", external_id, outcome.result, note)
    return ApprovalOutcome(outcome.result, external_id, outcome.balance, event)


async def manually_fail_payment(db: AsyncSession, external_id: str, note: Optional[str] = None) -> str:
    """Отклонение оператором: failed | not_found | not_pending."""
    async with atomic(db):
        tx = await ledger.get_payment(db, external_id, lock=True)
        if tx is None:
            return NOT_FOUND
        if tx.payment_status != PaymentStatus.PENDING:
            return NOT_PENDING
        await ledger.mark_payment_failed(db, external_id, note=f"rejected by operator{': ' + note if note else ''}")
    return FAILED


async def payment_status_summary(
    db: AsyncSession,
    timeout_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    res = await db.execute(
        select(TokenTransaction.payment_status, func.count())
        .where(TokenTransaction.external_payment_id.isnot(None))
        .group_by(TokenTransaction.payment_status)
    )
    summary = {status: 0 for status in PaymentStatus.ALL}
    for status, count in res.all():
        summary[status] = int(count)
    summary["stuck"] = len(await find_stuck_payments(db, timeout_minutes, now))
    return summary
