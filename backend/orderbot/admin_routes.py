# 📂 backend/orderbot/admin_routes.py — админ-API KPR Order Bot
# -----------------------------------------------------------------------------
# Что здесь:
#   • Проверка прав: Account.is_admin или Telegram ID из ADMIN_TELEGRAM_IDS.
#   • Платежи: ручное одобрение / отклонение зависших, список зависших, сводка.
#   • Заказы: смена статуса (с уведомлением клиента), очередь, назначение оператора.
#   • Баланс: ручное начисление/списание токенов, сверка кэша с журналом.
#   • Настройки: таблица цен пакетов (package_pricing).
#
# Все эндпоинты требуют заголовок X-Telegram-Id.
# -----------------------------------------------------------------------------

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .bot_notify import BALANCE_CHANGE, get_notifier
from .config import get_settings
from .database import get_session, run_in_session
from .models import TxType
from .reconciliation import (
    ALREADY_APPLIED,
    APPLIED,
    NOT_FOUND,
    find_stuck_payments,
    manually_approve_payment,
    manually_fail_payment,
    payment_status_summary,
)
from .schemas import (
    AdjustBalanceRequest,
    AdjustBalanceResponse,
    LedgerCheckResponse,
    ManualApprovalRequest,
    ManualApprovalResponse,
    OrderAssignRequest,
    OrderOut,
    OrderStatusResponse,
    OrderStatusUpdate,
    PackagePricingItem,
    PaymentSummaryResponse,
    StuckPaymentOut,
    StuckPaymentsResponse,
)
from .services import ledger, orders, pricing
from .utils import get_logger

settings = get_settings()
router = APIRouter()
logger = get_logger("orderbot.admin")

# Ответ ручного одобрения в терминах внешнего API
APPROVAL_RESULTS = {
    APPLIED: "applied",
    ALREADY_APPLIED: "alreadyApplied",
    NOT_FOUND: "notFound",
}


# -----------------------------------------------------------------------------
# Проверка прав администратора
# -----------------------------------------------------------------------------
async def require_admin(db: AsyncSession, x_telegram_id: Optional[str]) -> int:
    """
    Общая проверка админ-доступа для эндпоинтов:
      • Супер-админ из settings.ADMIN_TELEGRAM_IDS.
      • Аккаунт с флагом is_admin.
    Возвращает Telegram ID администратора. Нет прав → HTTP 403.
    """
    if not x_telegram_id or not x_telegram_id.isdigit():
        raise HTTPException(status_code=400, detail="X-Telegram-Id header required")

    tg = int(x_telegram_id)
    if tg in settings.admin_telegram_ids():
        return tg

    account = await ledger.get_account_by_telegram(db, tg)
    if account is not None and account.is_admin:
        return tg

    logger.warning("Admin access denied for telegram_id=%s", tg)
    raise HTTPException(status_code=403, detail="Admin access required")


# -----------------------------------------------------------------------------
# Платежи
# -----------------------------------------------------------------------------
@router.post("/admin/payments/approve", response_model=ManualApprovalResponse)
async def approve_payment(
    payload: ManualApprovalRequest,
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    """
    Ручное одобрение зависшего платежа. Повтор или гонка с поздним webhook
    дают alreadyApplied без второго зачисления.
    """
    admin_id = await require_admin(db, x_telegram_id)
    await db.commit()

    outcome = await run_in_session(
        lambda s: manually_approve_payment(s, payload.external_id, payload.note),
        label="manual approval",
    )
    logger.info("Admin %s approval external_id=%s result=%s", admin_id, payload.external_id, outcome.result)
    await get_notifier().deliver(outcome.event)
    return ManualApprovalResponse(result=APPROVAL_RESULTS[outcome.result], balance=outcome.balance)


@router.post("/admin/payments/fail")
async def fail_payment(
    payload: ManualApprovalRequest,
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    admin_id = await require_admin(db, x_telegram_id)
    result = await manually_fail_payment(db, payload.external_id, payload.note)
    await db.commit()
    logger.info("Admin %s rejected external_id=%s result=%s", admin_id, payload.external_id, result)
    return {"result": result}


@router.get("/admin/payments/stuck", response_model=StuckPaymentsResponse)
async def list_stuck_payments(
    timeout_minutes: Optional[int] = Query(None, ge=0),
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    await require_admin(db, x_telegram_id)
    timeout = settings.PAYMENT_STUCK_TIMEOUT_MINUTES if timeout_minutes is None else timeout_minutes
    items = await find_stuck_payments(db, timeout)
    return StuckPaymentsResponse(
        timeout_minutes=timeout,
        items=[StuckPaymentOut.model_validate(p) for p in items],
    )


@router.get("/admin/payments/summary", response_model=PaymentSummaryResponse)
async def payments_summary(
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    await require_admin(db, x_telegram_id)
    return PaymentSummaryResponse(counts=await payment_status_summary(db))


# -----------------------------------------------------------------------------
# Заказы
# -----------------------------------------------------------------------------
@router.post("/admin/orders/{order_id}/status")
async def update_order_status(
    payload: OrderStatusUpdate,
    order_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    """
    Смена статуса заказа по графу переходов. Отмена/возврат возвращают
    токены клиенту. Уведомление клиенту отправляется после commit.
    """
    admin_id = await require_admin(db, x_telegram_id)
    result = await orders.transition(db, order_id, payload.new_status, payload.notes, actor_id=admin_id)
    await db.commit()

    emitted = await get_notifier().deliver(result.event)
    return OrderStatusResponse(
        order=OrderOut.model_validate(result.order),
        notification_emitted=emitted,
    ).model_dump(by_alias=True)


@router.post("/admin/orders/{order_id}/assign")
async def assign_order(
    payload: OrderAssignRequest,
    order_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    admin_id = await require_admin(db, x_telegram_id)
    operator_id = payload.operator_id or admin_id
    result = await orders.assign(db, order_id, operator_id, payload.notes)
    await db.commit()

    emitted = await get_notifier().deliver(result.event)
    return OrderStatusResponse(
        order=OrderOut.model_validate(result.order),
        notification_emitted=emitted,
    ).model_dump(by_alias=True)


@router.get("/admin/orders/queue", response_model=List[OrderOut])
async def order_queue(
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    await require_admin(db, x_telegram_id)
    return await orders.list_queue(db, limit)


# -----------------------------------------------------------------------------
# Баланс аккаунтов
# -----------------------------------------------------------------------------
@router.post("/admin/accounts/{account_id}/credit", response_model=AdjustBalanceResponse)
async def admin_credit(
    payload: AdjustBalanceRequest,
    account_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    admin_id = await require_admin(db, x_telegram_id)
    description = payload.description or f"Admin credit by {admin_id}"
    new_balance = await ledger.credit(db, account_id, payload.amount, TxType.ADMIN_CREDIT, description)
    account = await ledger.get_account(db, account_id)
    await db.commit()

    await get_notifier().notify(
        account.telegram_id, BALANCE_CHANGE, {"change": payload.amount, "balance": new_balance},
    )
    return AdjustBalanceResponse(account_id=account_id, new_balance=new_balance)


@router.post("/admin/accounts/{account_id}/debit", response_model=AdjustBalanceResponse)
async def admin_debit(
    payload: AdjustBalanceRequest,
    account_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    admin_id = await require_admin(db, x_telegram_id)
    description = payload.description or f"Admin debit by {admin_id}"
    new_balance = await ledger.debit(db, account_id, payload.amount, description, TxType.ADMIN_DEBIT)
    account = await ledger.get_account(db, account_id)
    await db.commit()

    await get_notifier().notify(
        account.telegram_id, BALANCE_CHANGE, {"change": -payload.amount, "balance": new_balance},
    )
    return AdjustBalanceResponse(account_id=account_id, new_balance=new_balance)


@router.get("/admin/accounts/{account_id}/ledger-check", response_model=LedgerCheckResponse)
async def ledger_check(
    account_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    await require_admin(db, x_telegram_id)
    cached, computed = await ledger.verify_balance(db, account_id)
    return LedgerCheckResponse(
        account_id=account_id, cached_balance=cached, journal_sum=computed, consistent=cached == computed,
    )


# -----------------------------------------------------------------------------
# Настройки: цены пакетов
# -----------------------------------------------------------------------------
@router.put("/admin/settings/package-pricing")
async def update_package_pricing(
    payload: List[PackagePricingItem],
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
):
    admin_id = await require_admin(db, x_telegram_id)
    saved = await pricing.save_service_packages(db, [item.model_dump() for item in payload])
    await db.commit()
    logger.info("Admin %s updated package pricing (%d packages)", admin_id, len(saved))
    return {"packages": [p.as_setting() for p in saved]}
