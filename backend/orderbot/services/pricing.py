# 📂 backend/orderbot/services/pricing.py — каталог пакетов и цен (settings store)
# -----------------------------------------------------------------------------
# Что делает:
#   • Пакеты услуг (регистрация на N сайтах) читаются из таблицы settings,
#     ключ 'package_pricing' — JSON-список {sites, baseTokens, subscriberTokens}.
#     Пакет ищется по стабильному ключу sites, а не по индексу в списке.
#   • Цена добавки «Email Confirmation»: ключи email_confirmation_price /
#     email_confirmation_price_subscriber (по умолчанию из config: 50 / 30).
#   • Пакеты токенов для покупки (фиксированные) и произвольная сумма
#     ($0.10 за токен, минимум $25).
#   • Планы подписки из settings.SUBSCRIPTION_PLANS.
#
# Цены читаются при каждом создании заказа (админ может поменять их в любой момент).
# -----------------------------------------------------------------------------

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..errors import PackageNotFound, ValidationError
from ..models import Setting
from ..utils import get_logger, utcnow

logger = get_logger("orderbot.pricing")
settings = get_settings()

USD = Decimal("0.01")

PACKAGE_PRICING_KEY = "package_pricing"
EMAIL_PRICE_KEY = "email_confirmation_price"
EMAIL_PRICE_SUBSCRIBER_KEY = "email_confirmation_price_subscriber"


@dataclass(frozen=True)
class ServicePackage:
    sites: int
    base_tokens: int
    subscriber_tokens: int

    def price_for(self, subscriber: bool) -> int:
        return self.subscriber_tokens if subscriber else self.base_tokens

    def product_name(self, with_email_confirmation: bool = False) -> str:
        name = f"{self.sites} Sites Registration"
        if with_email_confirmation:
            name += " + Email Confirmation"
        return name

    def as_setting(self) -> Dict[str, int]:
        return {"sites": self.sites, "baseTokens": self.base_tokens, "subscriberTokens": self.subscriber_tokens}


@dataclass(frozen=True)
class TokenPackage:
    tokens: int
    price_usd: Decimal
    label: str

    @property
    def description(self) -> str:
        """Описание платежа у шлюза: из него webhook потом извлекает количество токенов."""
        return f"{self.tokens} tokens - {self.label}"


# Пакеты по умолчанию (если в settings ещё нет package_pricing)
DEFAULT_SERVICE_PACKAGES: List[ServicePackage] = [
    ServicePackage(100, 100, 60),
    ServicePackage(250, 200, 100),
    ServicePackage(550, 550, 350),
    ServicePackage(650, 600, 400),
    ServicePackage(850, 800, 600),
    ServicePackage(1000, 850, 650),
    ServicePackage(1200, 1200, 1000),
    ServicePackage(1350, 1300, 1100),
    ServicePackage(1500, 1500, 1200),
]

TOKEN_PACKAGES: List[TokenPackage] = [
    TokenPackage(100, Decimal("10"), "Starter Pack"),
    TokenPackage(250, Decimal("25"), "Small Pack"),
    TokenPackage(550, Decimal("55"), "Medium Pack"),
    TokenPackage(1000, Decimal("100"), "Large Pack"),
    TokenPackage(1500, Decimal("155"), "Mega Pack"),
]


# =============================================================================
# Settings store
# =============================================================================
async def get_setting(db: AsyncSession, key: str) -> Optional[str]:
    res = await db.execute(select(Setting.value).where(Setting.key == key))
    return res.scalar_one_or_none()


async def set_setting(db: AsyncSession, key: str, value: str) -> None:
    row = await db.get(Setting, key)
    if row is None:
        db.add(Setting(key=key, value=value, updated_at=utcnow()))
    else:
        row.value = value
        row.updated_at = utcnow()
    await db.flush()


def _parse_packages(raw: Any) -> List[ServicePackage]:
    items = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(items, list):
        raise ValueError("package pricing must be a list")
    packages: List[ServicePackage] = []
    for item in items:
        pkg = ServicePackage(
            sites=int(item["sites"]),
            base_tokens=int(item["baseTokens"]),
            subscriber_tokens=int(item["subscriberTokens"]),
        )
        if pkg.sites <= 0 or pkg.base_tokens <= 0 or pkg.subscriber_tokens <= 0:
            raise ValueError(f"package values must be positive: {item!r}")
        if pkg.subscriber_tokens > pkg.base_tokens:
            raise ValueError(f"subscriber price cannot be higher than base price: {item!r}")
        packages.append(pkg)
    return packages


async def list_service_packages(db: AsyncSession) -> List[ServicePackage]:
    raw = await get_setting(db, PACKAGE_PRICING_KEY)
    if raw:
        try:
            packages = _parse_packages(raw)
            if packages:
                return sorted(packages, key=lambda p: p.sites)
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Invalid package_pricing setting, using defaults: %s", e)
    return list(DEFAULT_SERVICE_PACKAGES)


async def get_service_package(db: AsyncSession, sites: int) -> ServicePackage:
    for pkg in await list_service_packages(db):
        if pkg.sites == sites:
            return pkg
    raise PackageNotFound(f"sites={sites}")


async def save_service_packages(db: AsyncSession, items: List[Dict[str, Any]]) -> List[ServicePackage]:
    """Проверяет и сохраняет таблицу цен (админ). Ошибка формата → ValidationError."""
    try:
        packages = _parse_packages(items)
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError("package_pricing", f"Invalid package pricing: {e}")
    if len({p.sites for p in packages}) != len(packages):
        raise ValidationError("package_pricing", "Each package must have a unique sites value")
    await set_setting(db, PACKAGE_PRICING_KEY, json.dumps([p.as_setting() for p in packages]))
    logger.info("Package pricing updated: %d packages", len(packages))
    return packages


async def email_confirmation_price(db: AsyncSession, subscriber: bool) -> int:
    key = EMAIL_PRICE_SUBSCRIBER_KEY if subscriber else EMAIL_PRICE_KEY
    raw = await get_setting(db, key)
    if raw:
        try:
            return int(raw)
        except ValueError:
            logger.error("Invalid %s setting %r, using default", key, raw)
    return settings.EMAIL_CONFIRMATION_PRICE_SUBSCRIBER if subscriber else settings.EMAIL_CONFIRMATION_PRICE


# =============================================================================
# Пакеты токенов
# =============================================================================
def get_token_package(tokens: int) -> TokenPackage:
    for pkg in TOKEN_PACKAGES:
        if pkg.tokens == tokens:
            return pkg
    raise PackageNotFound(f"token package {tokens}")


def custom_token_package(amount_usd) -> TokenPackage:
    """
    Произвольная сумма: токены = floor(amount / TOKEN_USD_RATE), минимум CUSTOM_PURCHASE_MIN_USD.
    """
    try:
        amount = Decimal(str(amount_usd)).quantize(USD, rounding=ROUND_HALF_UP)
    except ArithmeticError:
        raise ValidationError("amount", "❌ Invalid amount. Please enter a valid amount.")
    minimum = Decimal(str(settings.CUSTOM_PURCHASE_MIN_USD))
    if amount < minimum:
        raise ValidationError("amount", f"❌ Invalid amount. Minimum: ${minimum:.2f}")
    rate = Decimal(str(settings.TOKEN_USD_RATE))
    tokens = int((amount / rate).to_integral_value(rounding=ROUND_DOWN))
    return TokenPackage(tokens, amount, "Custom Amount")


# =============================================================================
# Подписки
# =============================================================================
def get_subscription_plan(tier: str) -> Dict[str, Any]:
    """{"name", "days", "tokens"} по имени тарифа (без учёта регистра)."""
    for name, plan in settings.SUBSCRIPTION_PLANS.items():
        if name.lower() == (tier or "").lower():
            return {"name": name, "days": int(plan["duration_days"]), "tokens": int(plan["token_cost"])}
    raise PackageNotFound(f"subscription tier {tier}")
