"""
Bot command dispatch: replies and keyboards for the chat flows, without Telegram.
"""

import pytest
import pytest_asyncio

from backend.orderbot import bot
from backend.orderbot.commands import (
    BuyTokens,
    CancelForm,
    ChooseOption,
    ConfirmOrder,
    ListCustomers,
    SelectPackage,
    ShowBalance,
    SkipField,
    StartRegistration,
)
from backend.orderbot.database import run_in_session
from backend.orderbot.services import ledger, profiles

TEXT_ANSWERS = ["John", None, "Smith", "+1-555-123-4567", "john.smith@email.com", "female",
                "03-15-1990", "123 Main Street", None, "New York", "NY", "10001"]


def labels(reply):
    return [label for row in reply.buttons for label, _ in row]


@pytest_asyncio.fixture(autouse=True)
async def clean_sessions():
    bot.session_store._sessions.clear()
    yield
    bot.session_store._sessions.clear()


@pytest.mark.asyncio
async def test_balance_reply_offers_subscriptions(make_account):
    account_id = (await make_account(balance=120)).id
    reply = await bot.dispatch_command(account_id, ShowBalance())
    assert "120 tokens" in reply.text
    assert labels(reply)[0] == "🪙 Buy Tokens"
    assert len(reply.buttons) == 1 + 3


@pytest.mark.asyncio
async def test_registration_through_chat(db, make_account):
    account_id = (await make_account()).id

    reply = await bot.dispatch_command(account_id, StartRegistration())
    assert reply.text.startswith("Step 1 of 15")
    assert labels(reply) == ["❌ Cancel"]

    for answer in TEXT_ANSWERS:
        if answer is None:
            reply = await bot.dispatch_command(account_id, SkipField())
        else:
            reply = bot.step_reply(await bot.intake.submit(account_id, answer))
        assert not reply.text.startswith("Please"), reply.text

    assert labels(reply) == ["🔐 Add Password", "⏭️ Skip Password", "❌ Cancel"]
    done = await bot.dispatch_command(account_id, ChooseOption("skip"))
    assert "Customer saved" in done.text
    assert "John Smith" in done.text

    saved = await profiles.list_profiles(db, account_id)
    assert [p.display_name for p in saved] == ["John Smith"]
    assert saved[0].state == "NY"

    customers = await bot.dispatch_command(account_id, ListCustomers())
    assert "John Smith" in customers.text


@pytest.mark.asyncio
async def test_validation_error_repeats_question(make_account):
    account_id = (await make_account()).id
    await bot.dispatch_command(account_id, StartRegistration())
    for answer in ("John", "skip", "Smith"):
        await bot.intake.submit(account_id, answer)

    reply = bot.step_reply(await bot.intake.submit(account_id, "abc"))
    assert reply.text.startswith("Please enter a valid phone number:")
    assert "Step 4 of 15" in reply.text

    cancelled = await bot.dispatch_command(account_id, CancelForm())
    assert cancelled.text == "❌ Registration cancelled."
    assert bot.session_store.get(account_id).draft == {}


@pytest.mark.asyncio
async def test_order_flow_and_insufficient_balance(make_account, make_profile):
    account_id = (await make_account(balance=50)).id
    profile_id = (await make_profile(account_id, credential="secret12")).id

    choose = await bot.dispatch_command(account_id, SelectPackage(100))
    assert "100 Sites Registration" in choose.text
    assert labels(choose) == ["👤 John Smith", "+ 📧 Email"]

    poor = await bot.dispatch_command(account_id, ConfirmOrder(100, profile_id))
    assert "Required: 100 tokens" in poor.text
    assert "Available: 50 tokens" in poor.text

    await run_in_session(lambda s: ledger.credit(s, account_id, 100, description="top up"))
    placed = await bot.dispatch_command(account_id, ConfirmOrder(100, profile_id))
    assert "Order placed" in placed.text
    assert "Queue position: 1" in placed.text


@pytest.mark.asyncio
async def test_core_errors_become_generic_replies(make_account):
    account_id = (await make_account()).id
    reply = await bot.dispatch_command(account_id, SelectPackage(101))
    assert reply.text == "❌ This package is not available."


@pytest.mark.asyncio
async def test_buy_tokens_gives_pay_link(make_account, oxapay):
    account_id = (await make_account()).id
    reply = await bot.dispatch_command(account_id, BuyTokens(250))
    assert "250 tokens - Small Pack" in reply.text
    button = reply.markup().inline_keyboard[0][0]
    assert button.url == "https://pay.test/1001"


def test_reply_markup_encodes_commands():
    reply = bot.Reply("menu", bot.main_menu_buttons())
    markup = reply.markup()
    assert markup.inline_keyboard[0][0].callback_data == "reg"
    assert bot.Reply("plain").markup() is None
