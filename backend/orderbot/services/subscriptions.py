# 📂 backend/orderbot/services/subscriptions.py — подписки (цены подписчика + приоритет)
# -----------------------------------------------------------------------------
# • Активная подписка: status='active' и expires_at > now.
# • Покупка: списание token_cost через ledger (тип spend) + вставка подписки —
#   одной транзакцией. Если активная подписка уже есть, новый срок
#   продлевает её от текущего expires_at.
# • expire_subscriptions() — ежедневная задача планировщика.
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import atomic
from ..models import Subscription, SubscriptionStatus, TxType
from ..utils import as_utc, get_logger, utcnow
from . import ledger
from .pricing import get_subscription_plan

logger = get_logger("orderbot.subscriptions")


async def get_active_subscription(db: AsyncSession, account_id: int, now: Optional[datetime] = None) -> Optional[Subscription]:
    now = now or utcnow()
    res = await db.execute(
        select(Subscription)
        .where(
            Subscription.account_id == account_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.expires_at > now,
        )
        .order_by(Subscription.expires_at.desc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def has_active_subscription(db: AsyncSession, account_id: int, now: Optional[datetime] = None) -> bool:
    return await get_active_subscription(db, account_id, now) is not None


async def purchase_subscription(db: AsyncSession, account_id: int, tier: str) -> Subscription:
    """
    Оплата подписки токенами. InsufficientBalance → ничего не создано.
    """
    plan = get_subscription_plan(tier)
    now = utcnow()

    async with atomic(db):
        current = await get_active_subscription(db, account_id, now)
        starts = as_utc(current.expires_at) if current is not None else now
        await ledger.debit_entry(
            db, account_id, plan["tokens"], f"Subscription: {plan['name']} ({plan['days']} days)", TxType.SPEND,
        )
        sub = Subscription(
            account_id=account_id,
            tier=plan["name"],
            token_cost=plan["tokens"],
            started_at=now,
            expires_at=starts + timedelta(days=plan["days"]),
            status=SubscriptionStatus.ACTIVE,
        )
        db.add(sub)
        await db.flush()

    logger.info("Subscription purchased account=%s tier=%s expires=%s", account_id, sub.tier, sub.expires_at)
    return sub


async def expire_subscriptions(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """active + expires_at <= now → expired. Возвращает число изменённых строк."""
    now = now or utcnow()
    async with atomic(db):
        res = await db.execute(
            update(Subscription)
            .where(Subscription.status == SubscriptionStatus.ACTIVE, Subscription.expires_at <= now)
            .values(status=SubscriptionStatus.EXPIRED)
        )
    return int(res.rowcount or 0)
