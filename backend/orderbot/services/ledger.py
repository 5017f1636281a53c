# 📂 backend/orderbot/services/ledger.py — журнал токенов (Token Ledger)
# -----------------------------------------------------------------------------
# Основные правила:
#   1. Баланс аккаунта (accounts.token_balance) меняется ТОЛЬКО через этот модуль.
#   2. Каждая операция, меняющая баланс, добавляет ровно одну строку в
#      token_transactions с balance_after — в той же транзакции БД, что и
#      обновление баланса. Строка аккаунта при этом заблокирована (FOR UPDATE).
#   3. Баланс не уходит в минус: debit при нехватке → InsufficientBalance,
#      частичных списаний нет.
#   4. Внешний id платежа (external_payment_id) — ключ идемпотентности.
#      Все пути зачисления по внешнему платежу (webhook, ручное одобрение)
#      идут через credit_idempotent().
#   5. Инвариант: token_balance == SUM(amount) по completed-транзакциям аккаунта.
# -----------------------------------------------------------------------------

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import atomic
from ..errors import AccountNotFound, IdempotencyNoop, InsufficientBalance, UnmatchedPayment
from ..models import Account, PaymentStatus, TokenTransaction, TxType
from ..utils import get_logger, utcnow

logger = get_logger("orderbot.ledger")

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"


@dataclass
class CreditOutcome:
    """Результат credit_idempotent: applied | already_applied."""
    result: str
    transaction: TokenTransaction
    balance: int

    @property
    def applied(self) -> bool:
        return self.result == APPLIED


# ==============================
# 🔹 Аккаунты
# ==============================

def dialect_insert(db: AsyncSession):
    """insert() с поддержкой ON CONFLICT для текущего диалекта (postgresql / sqlite)."""
    if db.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


async def ensure_account(
    db: AsyncSession,
    telegram_id: int,
    username: Optional[str] = None,
    full_name: Optional[str] = None,
) -> Account:
    """
    Idempotent-регистрация: INSERT ... ON CONFLICT (telegram_id) DO NOTHING,
    затем возвращаем строку. Имя/ник обновляем, если пришли новые.
    """
    insert = dialect_insert(db)
    stmt = (
        insert(Account)
        .values(telegram_id=telegram_id, username=username, full_name=full_name,
                token_balance=0, is_admin=False, created_at=utcnow(), updated_at=utcnow())
        .on_conflict_do_nothing(index_elements=["telegram_id"])
    )
    await db.execute(stmt)
    res = await db.execute(
        select(Account).where(Account.telegram_id == telegram_id).execution_options(populate_existing=True)
    )
    account = res.scalar_one()
    if username and account.username != username:
        account.username = username
    if full_name and account.full_name != full_name:
        account.full_name = full_name
    return account


async def get_account(db: AsyncSession, account_id: int, *, lock: bool = False) -> Account:
    stmt = select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    account = res.scalar_one_or_none()
    if account is None:
        raise AccountNotFound(f"account_id={account_id}")
    return account


async def get_account_by_telegram(db: AsyncSession, telegram_id: int) -> Optional[Account]:
    res = await db.execute(select(Account).where(Account.telegram_id == telegram_id))
    return res.scalar_one_or_none()


# ==============================
# 🔹 Чтение
# ==============================

async def balance(db: AsyncSession, account_id: int) -> int:
    """Текущий баланс аккаунта (неотрицательный)."""
    account = await get_account(db, account_id)
    return int(account.token_balance or 0)


async def settled_sum(db: AsyncSession, account_id: int) -> int:
    """SUM(amount) по завершённым транзакциям аккаунта."""
    res = await db.execute(
        select(func.coalesce(func.sum(TokenTransaction.amount), 0)).where(
            TokenTransaction.account_id == account_id,
            TokenTransaction.payment_status == PaymentStatus.COMPLETED,
        )
    )
    return int(res.scalar_one())


async def verify_balance(db: AsyncSession, account_id: int) -> Tuple[int, int]:
    """
    Сверка инварианта: (кэш баланса, сумма по журналу). Должны совпадать.
    """
    cached = await balance(db, account_id)
    computed = await settled_sum(db, account_id)
    if cached != computed:
        logger.error("[Ledger] balance mismatch account=%s cached=%s journal=%s", account_id, cached, computed)
    return cached, computed


async def list_transactions(db: AsyncSession, account_id: int, limit: int = 20) -> List[TokenTransaction]:
    res = await db.execute(
        select(TokenTransaction)
        .where(TokenTransaction.account_id == account_id)
        .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id.desc())
        .limit(limit)
    )
    return list(res.scalars().all())


async def get_payment(db: AsyncSession, external_payment_id: str, *, lock: bool = False) -> Optional[TokenTransaction]:
    stmt = (
        select(TokenTransaction)
        .where(TokenTransaction.external_payment_id == external_payment_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    return res.scalar_one_or_none()


# ==============================
# 🔹 Изменение баланса
# ==============================

def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")
    return amount


async def credit_entry(
    db: AsyncSession,
    account_id: int,
    amount: int,
    type_: str = TxType.ADMIN_CREDIT,
    description: str = "",
    *,
    order_id: Optional[int] = None,
    payment_method: Optional[str] = None,
) -> TokenTransaction:
    """
    Зачисление без внешнего id. Возвращает созданную строку журнала.
    """
    _check_amount(amount)
    if type_ not in TxType.CREDITS:
        raise ValueError(f"not a credit type: {type_}")

    async with atomic(db):
        account = await get_account(db, account_id, lock=True)
        account.token_balance = int(account.token_balance or 0) + amount
        tx = TokenTransaction(
            account_id=account.id,
            type=type_,
            amount=amount,
            balance_after=account.token_balance,
            payment_status=PaymentStatus.COMPLETED,
            payment_method=payment_method,
            description=description,
            order_id=order_id,
            created_at=utcnow(),
            settled_at=utcnow(),
        )
        db.add(tx)
        await db.flush()

    logger.info("[Ledger] credit account=%s amount=%s type=%s balance=%s", account_id, amount, type_, tx.balance_after)
    return tx


async def credit(
    db: AsyncSession,
    account_id: int,
    amount: int,
    type_: str = TxType.ADMIN_CREDIT,
    description: str = "",
    external_payment_id: Optional[str] = None,
) -> int:
    """
    Зачисление. Возвращает новый баланс.
    С external_payment_id идёт через credit_idempotent(); повтор → IdempotencyNoop.
    """
    if external_payment_id:
        outcome = await credit_idempotent(
            db, external_payment_id, amount, description, account_id=account_id, type_=type_,
        )
        if not outcome.applied:
            raise IdempotencyNoop(external_payment_id)
        return outcome.balance

    tx = await credit_entry(db, account_id, amount, type_, description)
    return int(tx.balance_after)


async def debit_entry(
    db: AsyncSession,
    account_id: int,
    amount: int,
    description: str = "",
    type_: str = TxType.SPEND,
    *,
    order_id: Optional[int] = None,
) -> TokenTransaction:
    """
    Списание. Нехватка средств → InsufficientBalance, баланс не меняется.
    """
    _check_amount(amount)
    if type_ not in TxType.DEBITS:
        raise ValueError(f"not a debit type: {type_}")

    async with atomic(db):
        account = await get_account(db, account_id, lock=True)
        current = int(account.token_balance or 0)
        if amount > current:
            logger.info("[Ledger] insufficient balance account=%s required=%s available=%s", account_id, amount, current)
            raise InsufficientBalance(account_id, amount, current)
        account.token_balance = current - amount
        tx = TokenTransaction(
            account_id=account.id,
            type=type_,
            amount=-amount,
            balance_after=account.token_balance,
            payment_status=PaymentStatus.COMPLETED,
            description=description,
            order_id=order_id,
            created_at=utcnow(),
            settled_at=utcnow(),
        )
        db.add(tx)
        await db.flush()

    logger.info("[Ledger] debit account=%s amount=%s type=%s balance=%s", account_id, amount, type_, tx.balance_after)
    return tx


async def debit(db: AsyncSession, account_id: int, amount: int, description: str = "", type_: str = TxType.SPEND) -> int:
    """Списание. Возвращает новый баланс."""
    tx = await debit_entry(db, account_id, amount, description, type_)
    return int(tx.balance_after)


# ==============================
# 🔹 Внешние платежи
# ==============================

async def record_pending_payment(
    db: AsyncSession,
    account_id: int,
    external_payment_id: str,
    amount: int,
    description: str,
    payment_method: str = "OxaPay",
) -> TokenTransaction:
    """
    Фиксирует ожидающую покупку при создании счёта у шлюза (до любого webhook).
    Баланс не меняется: pending-строка не входит в сумму инварианта.
    """
    _check_amount(amount)
    async with atomic(db):
        await get_account(db, account_id)
        if await get_payment(db, external_payment_id) is not None:
            raise IdempotencyNoop(external_payment_id)
        tx = TokenTransaction(
            account_id=account_id,
            type=TxType.PURCHASE,
            amount=amount,
            balance_after=None,
            external_payment_id=external_payment_id,
            payment_status=PaymentStatus.PENDING,
            payment_method=payment_method,
            description=description,
            created_at=utcnow(),
        )
        db.add(tx)
        await db.flush()

    logger.info("[Ledger] pending payment recorded account=%s external_id=%s amount=%s", account_id, external_payment_id, amount)
    return tx


async def credit_idempotent(
    db: AsyncSession,
    external_payment_id: str,
    amount: int,
    description: Optional[str] = None,
    *,
    account_id: Optional[int] = None,
    type_: str = TxType.PURCHASE,
) -> CreditOutcome:
    """
    Единственная точка зачисления по внешнему платежу.
      • Строка уже completed → already_applied, баланс не трогаем.
      • Строка pending → расчёт на месте: баланс += записанная сумма строки
        (amount события только сверяется), status=completed, balance_after, settled_at.
      • Строки нет → нужна account_id (иначе UnmatchedPayment); добавляем
        новую completed-строку.
      • Строка failed — терминальна → UnmatchedPayment.
    Строка платежа и строка аккаунта блокируются до конца транзакции,
    поэтому второй писатель (поздний webhook / повторное одобрение) видит
    completed и получает already_applied.
    """
    _check_amount(amount)

    async with atomic(db):
        tx = await get_payment(db, external_payment_id, lock=True)

        if tx is not None and tx.payment_status == PaymentStatus.COMPLETED:
            logger.info("[Ledger] external_id=%s already applied (tx=%s)", external_payment_id, tx.id)
            return CreditOutcome(ALREADY_APPLIED, tx, int(tx.balance_after or 0))

        if tx is not None and tx.payment_status == PaymentStatus.FAILED:
            logger.warning("[Ledger] external_id=%s is failed, refusing to credit", external_payment_id)
            raise UnmatchedPayment(external_payment_id, f"transaction for external_id={external_payment_id} already failed")

        if tx is None:
            if account_id is None:
                raise UnmatchedPayment(external_payment_id)
            account = await get_account(db, account_id, lock=True)
            account.token_balance = int(account.token_balance or 0) + amount
            tx = TokenTransaction(
                account_id=account.id,
                type=type_,
                amount=amount,
                balance_after=account.token_balance,
                external_payment_id=external_payment_id,
                payment_status=PaymentStatus.COMPLETED,
                description=description,
                created_at=utcnow(),
                settled_at=utcnow(),
            )
            db.add(tx)
        else:
            account = await get_account(db, tx.account_id, lock=True)
            if int(tx.amount) != amount:
                logger.warning(
                    "[Ledger] external_id=%s amount differs: pending=%s event=%s; crediting recorded amount",
                    external_payment_id, tx.amount, amount,
                )
            account.token_balance = int(account.token_balance or 0) + int(tx.amount)
            tx.payment_status = PaymentStatus.COMPLETED
            tx.balance_after = account.token_balance
            tx.settled_at = utcnow()
            if description:
                tx.description = description

        await db.flush()

    logger.info(
        "[Ledger] external_id=%s applied account=%s amount=%s balance=%s",
        external_payment_id, tx.account_id, tx.amount, tx.balance_after,
    )
    return CreditOutcome(APPLIED, tx, int(tx.balance_after))


async def mark_payment_failed(db: AsyncSession, external_payment_id: str, note: Optional[str] = None) -> bool:
    """
    pending → failed (один раз). Баланс не меняется.
    True — статус изменён; False — строки нет или она уже в терминальном статусе.
    """
    async with atomic(db):
        tx = await get_payment(db, external_payment_id, lock=True)
        if tx is None:
            logger.warning("[Ledger] mark failed: external_id=%s not found", external_payment_id)
            return False
        if tx.payment_status != PaymentStatus.PENDING:
            logger.info("[Ledger] mark failed: external_id=%s is %s, unchanged", external_payment_id, tx.payment_status)
            return False
        tx.payment_status = PaymentStatus.FAILED
        tx.settled_at = utcnow()
        if note:
            tx.description = f"{tx.description or ''} ({note})".strip()
        await db.flush()

    logger.info("[Ledger] external_id=%s marked failed", external_payment_id)
    return True
