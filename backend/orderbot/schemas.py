# 📂 backend/orderbot/schemas.py — Pydantic-схемы API KPR Order Bot
# --------------------------------------------------------
# Контракты FastAPI:
# - Баланс и журнал токенов
# - Профили клиентов, заказы, подписки
# - Платежи: инициирование, webhook-ответ, ручное одобрение, зависшие платежи
# - Админ-операции с заказами и балансом

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ======================
# ⚖️ Баланс / журнал
# ======================
class BalanceResponse(BaseModel):
    account_id: int
    telegram_id: int
    token_balance: int
    has_subscription: bool = False


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    amount: int
    balance_after: Optional[int] = None
    external_payment_id: Optional[str] = None
    payment_status: str
    payment_method: Optional[str] = None
    description: Optional[str] = None
    order_id: Optional[int] = None
    created_at: datetime
    settled_at: Optional[datetime] = None


class LedgerCheckResponse(BaseModel):
    account_id: int
    cached_balance: int
    journal_sum: int
    consistent: bool


class AdjustBalanceRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Количество токенов (> 0)")
    description: Optional[str] = Field(None, max_length=500)


class AdjustBalanceResponse(BaseModel):
    account_id: int
    new_balance: int


# ======================
# 👤 Профили клиентов
# ======================
class ProfileCreate(BaseModel):
    first_name: str
    middle_name: Optional[str] = None
    last_name: str
    phone: str
    email: str
    gender: str
    dob: str = Field(..., description="MM-DD-YYYY или MM/DD/YYYY")
    address: str
    apartment: Optional[str] = None
    city: str
    state: str
    postal: str
    password: Optional[str] = Field(None, description="Пароль для email-услуг (хранится зашифрованным)")


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    middle_name: Optional[str] = None
    last_name: str
    phone: str
    email: str
    gender: str
    dob: date
    address: str
    apartment: Optional[str] = None
    city: str
    state: str
    postal: str
    has_credential: bool = False
    created_at: datetime


# ======================
# 📦 Заказы
# ======================
class OrderCreate(BaseModel):
    profile_id: int
    sites: int = Field(..., gt=0, description="Ключ пакета — количество сайтов")
    with_email_confirmation: bool = False


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    profile_id: Optional[int] = None
    package_key: int
    product_name: str
    token_cost: int
    status: str
    queue_position: int
    is_priority: bool
    rerun_of_id: Optional[int] = None
    with_email_confirmation: bool = False
    subscriber_discount_applied: bool = False
    assigned_to: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class OrderStatusUpdate(BaseModel):
    new_status: str = Field(..., alias="newStatus")
    notes: Optional[str] = Field(None, max_length=2000)

    model_config = ConfigDict(populate_by_name=True)


class OrderAssignRequest(BaseModel):
    operator_id: Optional[int] = Field(None, description="Telegram ID оператора (по умолчанию — текущий админ)")
    notes: Optional[str] = Field(None, max_length=2000)


class OrderStatusResponse(BaseModel):
    order: OrderOut
    notification_emitted: bool = Field(..., serialization_alias="notificationEmitted")


class PackageOut(BaseModel):
    sites: int
    base_tokens: int
    subscriber_tokens: int
    price: int


class PackagePricingItem(BaseModel):
    sites: int = Field(..., gt=0)
    baseTokens: int = Field(..., gt=0)
    subscriberTokens: int = Field(..., gt=0)


# ======================
# ⭐ Подписки
# ======================
class SubscriptionCreate(BaseModel):
    tier: str


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tier: str
    token_cost: int
    started_at: datetime
    expires_at: datetime
    status: str


# ======================
# 💳 Платежи
# ======================
class TokenPurchaseRequest(BaseModel):
    tokens: Optional[int] = Field(None, description="Ключ фиксированного пакета (100, 250, 550, 1000, 1500)")
    amount_usd: Optional[Decimal] = Field(None, description="Произвольная сумма в USD (мин. $25)")


class TokenPurchaseResponse(BaseModel):
    external_id: str = Field(..., serialization_alias="externalId")
    payment_link: str = Field(..., serialization_alias="paymentLink")
    tokens: int
    amount_usd: Decimal


class WebhookResponse(BaseModel):
    success: bool
    result: str


class ManualApprovalRequest(BaseModel):
    external_id: str = Field(..., alias="externalId")
    note: Optional[str] = Field(None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class ManualApprovalResponse(BaseModel):
    result: str
    balance: Optional[int] = None


class StuckPaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    external_id: str
    account_id: int
    amount: int
    description: Optional[str] = None
    created_at: datetime
    age_minutes: int
    gateway_status: Optional[str] = None


class StuckPaymentsResponse(BaseModel):
    timeout_minutes: int
    items: List[StuckPaymentOut]


class PaymentSummaryResponse(BaseModel):
    counts: Dict[str, int]
