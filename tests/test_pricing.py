from decimal import Decimal

import pytest

from backend.orderbot.errors import PackageNotFound, ValidationError
from backend.orderbot.services import pricing


@pytest.mark.asyncio
async def test_defaults_without_settings(db):
    packages = await pricing.list_service_packages(db)
    assert [p.sites for p in packages] == [100, 250, 550, 650, 850, 1000, 1200, 1350, 1500]
    pkg = await pricing.get_service_package(db, 250)
    assert pkg.price_for(subscriber=False) == 200
    assert pkg.price_for(subscriber=True) == 100
    assert await pricing.email_confirmation_price(db, False) == 50
    assert await pricing.email_confirmation_price(db, True) == 30


@pytest.mark.asyncio
async def test_saved_pricing_is_read_by_key(db):
    await pricing.save_service_packages(db, [
        {"sites": 500, "baseTokens": 400, "subscriberTokens": 300},
        {"sites": 50, "baseTokens": 60, "subscriberTokens": 40},
    ])
    await pricing.set_setting(db, pricing.EMAIL_PRICE_KEY, "75")
    await db.commit()

    assert [p.sites for p in await pricing.list_service_packages(db)] == [50, 500]
    assert (await pricing.get_service_package(db, 500)).base_tokens == 400
    assert await pricing.email_confirmation_price(db, False) == 75
    with pytest.raises(PackageNotFound):
        await pricing.get_service_package(db, 100)


@pytest.mark.asyncio
async def test_invalid_saved_pricing_falls_back_to_defaults(db):
    await pricing.set_setting(db, pricing.PACKAGE_PRICING_KEY, "{not json")
    await pricing.set_setting(db, pricing.EMAIL_PRICE_SUBSCRIBER_KEY, "cheap")
    await db.commit()

    assert len(await pricing.list_service_packages(db)) == len(pricing.DEFAULT_SERVICE_PACKAGES)
    assert await pricing.email_confirmation_price(db, True) == 30


@pytest.mark.asyncio
@pytest.mark.parametrize("items", [
    [{"sites": 100, "baseTokens": 50, "subscriberTokens": 60}],
    [{"sites": 100, "baseTokens": 0, "subscriberTokens": 0}],
    [{"sites": 100, "baseTokens": 100}],
    [{"sites": 100, "baseTokens": 100, "subscriberTokens": 60}, {"sites": 100, "baseTokens": 90, "subscriberTokens": 50}],
])
async def test_save_rejects_bad_pricing(db, items):
    with pytest.raises(ValidationError):
        await pricing.save_service_packages(db, items)


def test_token_packages():
    pkg = pricing.get_token_package(550)
    assert pkg.price_usd == Decimal("55")
    assert pkg.description == "550 tokens - Medium Pack"
    with pytest.raises(PackageNotFound):
        pricing.get_token_package(123)


def test_custom_amount():
    pkg = pricing.custom_token_package("30.55")
    assert pkg.tokens == 305
    assert pkg.price_usd == Decimal("30.55")
    assert pkg.description == "305 tokens - Custom Amount"
    assert pricing.custom_token_package(25).tokens == 250

    with pytest.raises(ValidationError):
        pricing.custom_token_package("24.99")
    with pytest.raises(ValidationError):
        pricing.custom_token_package("lots")


def test_subscription_plans():
    assert pricing.get_subscription_plan("basic") == {"name": "Basic", "days": 90, "tokens": 500}
    assert pricing.get_subscription_plan("Business")["tokens"] == 1000
    with pytest.raises(PackageNotFound):
        pricing.get_subscription_plan("Gold")
