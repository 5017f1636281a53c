# 📂 backend/orderbot/models.py — SQLAlchemy ORM-модели ядра
# -----------------------------------------------------------------------------
# Назначение:
#   • Единый набор ORM-моделей ядра KPR Order Bot (схема kpr_core по умолчанию):
#     аккаунты (владельцы токенов), профили клиентов, заказы, журнал токенов,
#     подписки, счётчик очереди, хранилище настроек (цены пакетов/добавок).
#
# Бизнес-правила:
#   • Токены — целые числа. accounts.token_balance — кэш, который всегда равен
#     сумме amount по ЗАВЕРШЁННЫМ (payment_status='completed') транзакциям аккаунта.
#   • Баланс не может уйти в минус (CHECK token_balance >= 0 + проверка в ledger).
#   • token_transactions — append-only. Меняется только payment_status
#     (pending → completed/failed, один раз), settled_at и balance_after при расчёте.
#   • external_payment_id уникален: один внешний платёж = максимум одно зачисление.
#   • Позиция в очереди (orders.queue_position) берётся из queue_counters и никогда
#     не переиспользуется. Порядок выборки: is_priority DESC, queue_position ASC.
#   • Профиль клиента принадлежит ровно одному аккаунту; менять/удалять может только владелец.
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from .config import get_settings

# -----------------------------------------------------------------------------
# Общая база ORM и имя схемы
# -----------------------------------------------------------------------------
Base = declarative_base()

settings = get_settings()
SCHEMA = settings.DB_SCHEMA_CORE

# BIGINT в Postgres; INTEGER в SQLite (там автоинкремент работает только для INTEGER PRIMARY KEY)
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Справочники статусов / типов
# =============================================================================
class OrderStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    ALL = (PENDING, PROCESSING, ASSIGNED, COMPLETED, CANCELLED, REFUNDED)
    QUEUED = (PENDING, PROCESSING)


class TxType:
    PURCHASE = "purchase"
    SPEND = "spend"
    ADMIN_CREDIT = "admin_credit"
    ADMIN_DEBIT = "admin_debit"
    REFUND = "refund"

    ALL = (PURCHASE, SPEND, ADMIN_CREDIT, ADMIN_DEBIT, REFUND)
    CREDITS = (PURCHASE, ADMIN_CREDIT, REFUND)
    DEBITS = (SPEND, ADMIN_DEBIT)


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, COMPLETED, FAILED)


class SubscriptionStatus:
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    ALL = (ACTIVE, EXPIRED, CANCELLED)


def _in_check(column: str, values) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


# =============================================================================
# Аккаунты
# =============================================================================
class Account(Base):
    """
    Владелец токенов (пользователь Telegram).
    telegram_id — идентичность в чате; id — внутренний ключ.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("token_balance >= 0", name="ck_accounts_balance_non_negative"),
        {"schema": SCHEMA},
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, nullable=False, unique=True, index=True)
    username = Column(String(64), nullable=True)
    full_name = Column(String(256), nullable=True)
    token_balance = Column(Integer, nullable=False, default=0)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    profiles = relationship("CustomerProfile", back_populates="account")
    transactions = relationship("TokenTransaction", back_populates="account")


class CustomerProfile(Base):
    """
    Профиль клиента, собранный анкетой. credential_encrypted — необязательный
    пароль для email-услуг (Fernet, см. utils.encrypt_credential).
    """
    __tablename__ = "customer_profiles"
    __table_args__ = (
        Index("ix_customer_profiles_account", "account_id"),
        {"schema": SCHEMA},
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    account_id = Column(BigInteger, ForeignKey(f"{SCHEMA}.accounts.id", ondelete="CASCADE"), nullable=False)
    first_name = Column(String(128), nullable=False)
    middle_name = Column(String(128), nullable=True)
    last_name = Column(String(128), nullable=False)
    phone = Column(String(32), nullable=False)
    email = Column(String(256), nullable=False)
    gender = Column(String(32), nullable=False)
    dob = Column(Date, nullable=False)
    address = Column(String(256), nullable=False)
    apartment = Column(String(64), nullable=True)
    city = Column(String(128), nullable=False)
    state = Column(String(2), nullable=False)
    postal = Column(String(10), nullable=False)
    credential_encrypted = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    account = relationship("Account", back_populates="profiles")

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def has_credential(self) -> bool:
        return bool(self.credential_encrypted)


# =============================================================================
# Журнал токенов
# =============================================================================
class TokenTransaction(Base):
    """
    Запись журнала токенов (append-only).
      • amount — со знаком: + для purchase/admin_credit/refund, − для spend/admin_debit.
      • balance_after — баланс после операции; у pending-покупки заполняется при расчёте.
      • external_payment_id — ключ идемпотентности зачисления (UNIQUE).
    """
    __tablename__ = "token_transactions"
    __table_args__ = (
        CheckConstraint(_in_check("type", TxType.ALL), name="ck_token_tx_type"),
        CheckConstraint(_in_check("payment_status", PaymentStatus.ALL), name="ck_token_tx_payment_status"),
        Index("ix_token_tx_account_created", "account_id", "created_at"),
        Index("ix_token_tx_status_created", "payment_status", "created_at"),
        {"schema": SCHEMA},
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    account_id = Column(BigInteger, ForeignKey(f"{SCHEMA}.accounts.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(16), nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)
    external_payment_id = Column(String(128), nullable=True, unique=True)
    payment_status = Column(String(16), nullable=False, default=PaymentStatus.COMPLETED)
    payment_method = Column(String(32), nullable=True)
    description = Column(Text, nullable=True)
    order_id = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", back_populates="transactions")


# =============================================================================
# Заказы
# =============================================================================
class Order(Base):
    """
    Заказ пакета услуг. Стоимость фиксируется при создании и списывается
    атомарно вместе со вставкой строки.
    package_key — стабильный идентификатор пакета (кол-во сайтов), не индекс массива.
    """
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(_in_check("status", OrderStatus.ALL), name="ck_orders_status"),
        CheckConstraint("token_cost >= 0", name="ck_orders_cost_non_negative"),
        Index("ix_orders_queue", "status", "is_priority", "queue_position"),
        Index("ix_orders_account", "account_id", "created_at"),
        {"schema": SCHEMA},
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    account_id = Column(BigInteger, ForeignKey(f"{SCHEMA}.accounts.id", ondelete="CASCADE"), nullable=False)
    profile_id = Column(BigInteger, ForeignKey(f"{SCHEMA}.customer_profiles.id", ondelete="SET NULL"), nullable=True)
    package_key = Column(Integer, nullable=False)
    product_name = Column(String(256), nullable=False)
    token_cost = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default=OrderStatus.PENDING)
    queue_position = Column(BigInteger, nullable=False, unique=True)
    is_priority = Column(Boolean, nullable=False, default=False)
    rerun_of_id = Column(BigInteger, ForeignKey(f"{SCHEMA}.orders.id", ondelete="SET NULL"), nullable=True)
    with_email_confirmation = Column(Boolean, nullable=False, default=False)
    subscriber_discount_applied = Column(Boolean, nullable=False, default=False)
    debit_transaction_id = Column(BigInteger, nullable=True)
    refund_transaction_id = Column(BigInteger, nullable=True)
    assigned_to = Column(BigInteger, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class QueueCounter(Base):
    """
    Монотонный счётчик позиций очереди. Одна строка на имя очереди ('orders').
    Инкремент — под блокировкой строки (SELECT ... FOR UPDATE).
    """
    __tablename__ = "queue_counters"
    __table_args__ = (
        {"schema": SCHEMA},
    )

    name = Column(String(32), primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)


# =============================================================================
# Подписки
# =============================================================================
class Subscription(Base):
    """
    Подписка даёт цены подписчика, пока status='active' и expires_at > now.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint(_in_check("status", SubscriptionStatus.ALL), name="ck_subscriptions_status"),
        Index("ix_subscriptions_account_status", "account_id", "status"),
        {"schema": SCHEMA},
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    account_id = Column(BigInteger, ForeignKey(f"{SCHEMA}.accounts.id", ondelete="CASCADE"), nullable=False)
    tier = Column(String(32), nullable=False)
    token_cost = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default=SubscriptionStatus.ACTIVE)


# =============================================================================
# Настройки (key-value)
# =============================================================================
class Setting(Base):
    """
    Хранилище настроек: package_pricing (JSON), email_confirmation_price и т.п.
    """
    __tablename__ = "settings"
    __table_args__ = (
        {"schema": SCHEMA},
    )

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
