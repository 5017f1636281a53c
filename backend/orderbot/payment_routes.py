# 📂 backend/orderbot/payment_routes.py — пользовательские эндпоинты и webhook шлюза
# -----------------------------------------------------------------------------
# Что здесь:
#   • POST {PAYMENT_WEBHOOK_PATH}  — колбэк OxaPay (проверка HMAC, сверка, уведомление)
#   • POST /payments/tokens        — инициирование покупки токенов (пакет или сумма)
#   • /user/*                      — баланс, журнал, профили, пакеты, заказы, подписки
#
# Идентификация пользователя: заголовок X-Telegram-Id (как в Telegram WebApp).
# Аккаунт создаётся при первом обращении (ledger.ensure_account).
#
# Ошибки ядра (OrderBotError) превращаются в ответ с http_status и
# public_message обработчиком из main.py. Внутренние детали — только в лог.
# -----------------------------------------------------------------------------

from __future__ import annotations

import json
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .bot_notify import get_notifier
from .config import get_settings
from .database import get_session, run_in_session
from .errors import MalformedEvent, ValidationError
from .intake_fsm import validate_field
from .models import Account
from .payment_gateway import verify_webhook_signature
from .reconciliation import handle_webhook_event, initiate_payment, parse_webhook_payload
from .schemas import (
    BalanceResponse,
    OrderCreate,
    OrderOut,
    PackageOut,
    ProfileCreate,
    ProfileOut,
    SubscriptionCreate,
    SubscriptionOut,
    TokenPurchaseRequest,
    TokenPurchaseResponse,
    TransactionOut,
    WebhookResponse,
)
from .services import ledger, orders, pricing, profiles, subscriptions
from .utils import get_logger

router = APIRouter()
settings = get_settings()
logger = get_logger("orderbot.routes")


# -----------------------------------------------------------------------------
# Вспомогательное: аккаунт по заголовку X-Telegram-Id
# -----------------------------------------------------------------------------
async def current_account(
    db: AsyncSession = Depends(get_session),
    x_telegram_id: Optional[str] = Header(None, alias="X-Telegram-Id"),
    x_telegram_username: Optional[str] = Header(None, alias="X-Telegram-Username"),
) -> Account:
    if not x_telegram_id:
        raise HTTPException(status_code=400, detail="X-Telegram-Id header required")
    try:
        telegram_id = int(x_telegram_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-Telegram-Id header")
    return await ledger.ensure_account(db, telegram_id, username=x_telegram_username)


# -----------------------------------------------------------------------------
# Webhook шлюза
# -----------------------------------------------------------------------------
@router.post(settings.PAYMENT_WEBHOOK_PATH, response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    hmac_header: Optional[str] = Header(None, alias="HMAC"),
):
    """
    Колбэк OxaPay. Сверка идёт в отдельной транзакции с повторами при сбоях БД;
    повторная доставка того же Paid возвращает success без второго зачисления.
    """
    raw = await request.body()
    if not verify_webhook_signature(raw, hmac_header):
        logger.warning("Webhook rejected: bad HMAC signature")
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        payload = json.loads(raw or b"{}")
    except ValueError:
        raise MalformedEvent("webhook body is not JSON")
    event = parse_webhook_payload(payload)

    outcome = await run_in_session(
        lambda db: handle_webhook_event(
            db, event.external_id, event.status, event.amount, event.currency, event.description,
        ),
        label="payment webhook",
    )

    await get_notifier().deliver(outcome.event)
    return WebhookResponse(success=outcome.success, result=outcome.result)


# -----------------------------------------------------------------------------
# Покупка токенов
# -----------------------------------------------------------------------------
@router.post("/payments/tokens")
async def buy_tokens(
    payload: TokenPurchaseRequest,
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    """
    Фиксированный пакет (tokens) или произвольная сумма (amount_usd).
    Pending-транзакция фиксируется до возврата ссылки.
    """
    if payload.tokens is not None:
        package = pricing.get_token_package(payload.tokens)
    elif payload.amount_usd is not None:
        package = pricing.custom_token_package(payload.amount_usd)
    else:
        raise ValidationError("tokens", "Choose a token package or enter an amount.")

    link = await initiate_payment(db, account.id, package)
    await db.commit()
    return TokenPurchaseResponse(
        external_id=link.external_id,
        payment_link=link.pay_link,
        tokens=package.tokens,
        amount_usd=package.price_usd,
    ).model_dump(by_alias=True)


# -----------------------------------------------------------------------------
# Баланс / журнал
# -----------------------------------------------------------------------------
@router.get("/user/balance", response_model=BalanceResponse)
async def get_balance(
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    return BalanceResponse(
        account_id=account.id,
        telegram_id=account.telegram_id,
        token_balance=await ledger.balance(db, account.id),
        has_subscription=await subscriptions.has_active_subscription(db, account.id),
    )


@router.get("/user/transactions", response_model=List[TransactionOut])
async def get_transactions(
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    return await ledger.list_transactions(db, account.id, limit)


# -----------------------------------------------------------------------------
# Профили клиентов
# -----------------------------------------------------------------------------
@router.get("/user/profiles", response_model=List[ProfileOut])
async def get_profiles(
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    return await profiles.list_profiles(db, account.id)


@router.post("/user/profiles", response_model=ProfileOut)
async def add_profile(
    payload: ProfileCreate,
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    """Те же правила, что и у анкеты в чате: каждое поле проходит validate_field."""
    data = payload.model_dump()
    draft = {}
    for name, value in data.items():
        field_name = "credential" if name == "password" else name
        if value is None or value == "":
            draft[field_name] = None
            continue
        draft[field_name] = validate_field(field_name, value)

    profile = await profiles.create_profile(db, account.id, draft)
    await db.commit()
    return profile


@router.delete("/user/profiles/{profile_id}")
async def remove_profile(
    profile_id: int,
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    await profiles.delete_profile(db, account.id, profile_id)
    await db.commit()
    return {"ok": True}


# -----------------------------------------------------------------------------
# Пакеты и заказы
# -----------------------------------------------------------------------------
@router.get("/user/packages", response_model=List[PackageOut])
async def get_packages(
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    subscriber = await subscriptions.has_active_subscription(db, account.id)
    return [
        PackageOut(
            sites=p.sites,
            base_tokens=p.base_tokens,
            subscriber_tokens=p.subscriber_tokens,
            price=p.price_for(subscriber),
        )
        for p in await pricing.list_service_packages(db)
    ]


@router.post("/user/orders", response_model=OrderOut)
async def place_order(
    payload: OrderCreate,
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    order = await orders.create_order(
        db, account.id, payload.profile_id, payload.sites,
        with_email_confirmation=payload.with_email_confirmation,
    )
    await db.commit()
    return order


@router.get("/user/orders", response_model=List[OrderOut])
async def get_orders(
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    return await orders.list_orders(db, account.id, limit)


@router.post("/user/orders/{order_id}/rerun", response_model=OrderOut)
async def rerun_order(
    order_id: int,
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    order = await orders.rerun(db, account.id, order_id)
    await db.commit()
    return order


# -----------------------------------------------------------------------------
# Подписки
# -----------------------------------------------------------------------------
@router.post("/user/subscriptions", response_model=SubscriptionOut)
async def subscribe(
    payload: SubscriptionCreate,
    db: AsyncSession = Depends(get_session),
    account: Account = Depends(current_account),
):
    sub = await subscriptions.purchase_subscription(db, account.id, payload.tier)
    await db.commit()
    return sub
