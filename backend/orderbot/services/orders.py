# 📂 backend/orderbot/services/orders.py — машина состояний заказов (Order State Machine)
# -----------------------------------------------------------------------------
# Что делает:
#   • create_order(): цена пакета (обычная / для подписчика) + добавка email
#     confirmation → списание через ledger + вставка заказа со статусом pending
#     и следующей позицией очереди. Всё одной транзакцией: при нехватке токенов
#     заказа нет и баланс не меняется.
#   • transition(): переходы только по графу LEGAL_TRANSITIONS, иначе
#     IllegalTransition (заказ не меняется). cancelled/refunded возвращают
#     стоимость одним refund-зачислением (ровно один раз).
#   • rerun(): повтор завершённого заказа за RERUN_COST_PERCENT% стоимости.
#   • list_queue(): pending/processing, сортировка is_priority DESC, queue_position ASC.
#
# Каждый успешный переход возвращает NotificationEvent; отправкой занимается
# вызывающая сторона (bot_notify.Notifier).
# -----------------------------------------------------------------------------

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..bot_notify import ORDER_STATUS, NotificationEvent
from ..config import get_settings
from ..database import atomic
from ..errors import IllegalTransition, OrderNotFound, ValidationError
from ..models import Order, OrderStatus, QueueCounter, TxType
from ..utils import get_logger, utcnow
from . import ledger
from .pricing import email_confirmation_price, get_service_package
from .profiles import get_owned_profile, has_credential
from .subscriptions import has_active_subscription

logger = get_logger("orderbot.orders")
settings = get_settings()

ORDER_QUEUE = "orders"

LEGAL_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.ASSIGNED, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.ASSIGNED, OrderStatus.CANCELLED}),
    OrderStatus.ASSIGNED: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

REFUNDING_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)


@dataclass
class TransitionResult:
    order: Order
    event: NotificationEvent


def can_transition(current: str, requested: str) -> bool:
    return requested in LEGAL_TRANSITIONS.get(current, frozenset())


def rerun_cost(token_cost: int, percent: Optional[int] = None) -> int:
    """Стоимость повтора: percent% от исходной, вверх до целого, минимум 1."""
    percent = settings.RERUN_COST_PERCENT if percent is None else percent
    return max(1, math.ceil(int(token_cost) * percent / 100))


# =============================================================================
# Очередь
# =============================================================================
async def next_queue_position(db: AsyncSession, name: str = ORDER_QUEUE) -> int:
    """
    Следующая позиция очереди: инкремент строки queue_counters под FOR UPDATE.
    Инкремент откатывается вместе с транзакцией заказа, поэтому одна позиция
    никогда не достаётся двум заказам.
    """
    stmt = (
        select(QueueCounter)
        .where(QueueCounter.name == name)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    counter = (await db.execute(stmt)).scalar_one_or_none()
    if counter is None:
        insert = ledger.dialect_insert(db)
        await db.execute(insert(QueueCounter).values(name=name, value=0).on_conflict_do_nothing(index_elements=["name"]))
        counter = (await db.execute(stmt)).scalar_one()
    counter.value = int(counter.value or 0) + 1
    await db.flush()
    return int(counter.value)


async def list_queue(db: AsyncSession, limit: int = 100) -> List[Order]:
    res = await db.execute(
        select(Order)
        .where(Order.status.in_(OrderStatus.QUEUED))
        .order_by(Order.is_priority.desc(), Order.queue_position.asc())
        .limit(limit)
    )
    return list(res.scalars().all())


# =============================================================================
# Чтение
# =============================================================================
async def get_order(db: AsyncSession, order_id: int, *, lock: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    order = (await db.execute(stmt)).scalar_one_or_none()
    if order is None:
        raise OrderNotFound(f"order={order_id}")
    return order


async def get_owned_order(db: AsyncSession, account_id: int, order_id: int, *, lock: bool = False) -> Order:
    order = await get_order(db, order_id, lock=lock)
    if order.account_id != account_id:
        raise OrderNotFound(f"order={order_id} account={account_id}")
    return order


async def list_orders(db: AsyncSession, account_id: int, limit: int = 20) -> List[Order]:
    res = await db.execute(
        select(Order)
        .where(Order.account_id == account_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
    )
    return list(res.scalars().all())


# =============================================================================
# Создание
# =============================================================================
async def _insert_debited_order(
    db: AsyncSession,
    *,
    account_id: int,
    profile_id: Optional[int],
    package_key: int,
    product_name: str,
    cost: int,
    is_priority: bool,
    with_email_confirmation: bool = False,
    subscriber_discount_applied: bool = False,
    rerun_of_id: Optional[int] = None,
) -> Order:
    """Списание → позиция очереди → вставка заказа. Вызывать внутри atomic()."""
    tx = await ledger.debit_entry(db, account_id, cost, f"Order: {product_name}", TxType.SPEND)
    position = await next_queue_position(db)
    now = utcnow()
    order = Order(
        account_id=account_id,
        profile_id=profile_id,
        package_key=package_key,
        product_name=product_name,
        token_cost=cost,
        status=OrderStatus.PENDING,
        queue_position=position,
        is_priority=is_priority,
        rerun_of_id=rerun_of_id,
        with_email_confirmation=with_email_confirmation,
        subscriber_discount_applied=subscriber_discount_applied,
        debit_transaction_id=tx.id,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    await db.flush()
    tx.order_id = order.id
    await db.flush()
    return order


async def create_order(
    db: AsyncSession,
    account_id: int,
    profile_id: int,
    package_key: int,
    *,
    with_email_confirmation: bool = False,
    priority: bool = False,
) -> Order:
    """
    Заказ пакета package_key (кол-во сайтов) для профиля profile_id.
    InsufficientBalance → заказа нет, баланс не изменён.
    """
    async with atomic(db):
        profile = await get_owned_profile(db, account_id, profile_id)
        if with_email_confirmation and not has_credential(profile):
            raise ValidationError(
                "with_email_confirmation",
                "Email confirmation requires a customer password. Please add one to the customer profile first.",
            )
        package = await get_service_package(db, package_key)
        subscriber = await has_active_subscription(db, account_id)

        cost = package.price_for(subscriber)
        if with_email_confirmation:
            cost += await email_confirmation_price(db, subscriber)

        order = await _insert_debited_order(
            db,
            account_id=account_id,
            profile_id=profile.id,
            package_key=package.sites,
            product_name=package.product_name(with_email_confirmation),
            cost=cost,
            is_priority=bool(priority or subscriber),
            with_email_confirmation=with_email_confirmation,
            subscriber_discount_applied=subscriber,
        )

    logger.info(
        "Order created id=%s account=%s package=%s cost=%s queue=%s",
        order.id, account_id, package_key, cost, order.queue_position,
    )
    return order


async def rerun(db: AsyncSession, account_id: int, order_id: int) -> Order:
    """
    Повтор завершённого заказа по сниженной цене (то же правило «списание + вставка»).
    """
    async with atomic(db):
        original = await get_owned_order(db, account_id, order_id)
        if original.status != OrderStatus.COMPLETED:
            raise IllegalTransition(original.id, original.status, "rerun")
        subscriber = await has_active_subscription(db, account_id)
        cost = rerun_cost(original.token_cost)
        order = await _insert_debited_order(
            db,
            account_id=account_id,
            profile_id=original.profile_id,
            package_key=original.package_key,
            product_name=f"{original.product_name} (Rerun)",
            cost=cost,
            is_priority=bool(original.is_priority or subscriber),
            with_email_confirmation=bool(original.with_email_confirmation),
            subscriber_discount_applied=bool(original.subscriber_discount_applied),
            rerun_of_id=original.id,
        )

    logger.info("Order rerun id=%s of=%s cost=%s", order.id, order_id, cost)
    return order


# =============================================================================
# Переходы
# =============================================================================
async def transition(
    db: AsyncSession,
    order_id: int,
    new_status: str,
    notes: Optional[str] = None,
    *,
    actor_id: Optional[int] = None,
) -> TransitionResult:
    """
    Меняет статус заказа по графу. Недопустимый переход → IllegalTransition.
    """
    async with atomic(db):
        order = await get_order(db, order_id, lock=True)
        old_status = order.status
        if not can_transition(old_status, new_status):
            logger.info("Illegal transition order=%s %s -> %s", order_id, old_status, new_status)
            raise IllegalTransition(order_id, old_status, new_status)

        now = utcnow()
        order.status = new_status
        order.updated_at = now
        if notes:
            order.notes = notes
        if new_status == OrderStatus.ASSIGNED:
            order.assigned_at = now
            if actor_id is not None:
                order.assigned_to = actor_id
        elif new_status == OrderStatus.COMPLETED:
            order.completed_at = now

        refunded = 0
        if new_status in REFUNDING_STATUSES and order.debit_transaction_id and not order.refund_transaction_id:
            tx = await ledger.credit_entry(
                db, order.account_id, int(order.token_cost), TxType.REFUND,
                f"Refund for order #{order.id}: {order.product_name}", order_id=order.id,
            )
            order.refund_transaction_id = tx.id
            refunded = int(order.token_cost)

        account = await ledger.get_account(db, order.account_id)
        await db.flush()

    logger.info("Order %s: %s -> %s (refunded=%s)", order_id, old_status, new_status, refunded)
    event = NotificationEvent(
        kind=ORDER_STATUS,
        account_id=order.account_id,
        chat_id=account.telegram_id,
        payload={
            "order_id": order.id,
            "product_name": order.product_name,
            "token_cost": order.token_cost,
            "old_status": old_status,
            "new_status": new_status,
            "notes": notes,
            "refunded_tokens": refunded,
        },
    )
    return TransitionResult(order=order, event=event)


async def assign(db: AsyncSession, order_id: int, operator_id: int, notes: Optional[str] = None) -> TransitionResult:
    return await transition(db, order_id, OrderStatus.ASSIGNED, notes, actor_id=operator_id)
