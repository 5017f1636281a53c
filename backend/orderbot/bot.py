# 📂 backend/orderbot/bot.py — Telegram-бот KPR Order Bot (aiogram 3)
# -----------------------------------------------------------------------------
# Что делает:
# 1) Поднимает aiogram Dispatcher/Router; Bot создаётся лениво (get_bot()).
# 2) Команды: /start, /balance, /register, /cancel, /help.
# 3) Любой текст (не команда) уходит в анкету (IntakeForm.submit).
# 4) callback_data декодируется в команду (commands.decode_callback) и
#    передаётся в dispatch_command(): анкета / заказы / платежи / профили.
# 5) Режим webhook (BASE_PUBLIC_URL + TELEGRAM_WEBHOOK_PATH) или polling локально.
#
# ВАЖНО:
# - Бот не содержит бизнес-логики: все изменения идут через services/* и
#   reconciliation.py в отдельной сессии БД (run_in_session) с повторами.
# - Пользователь видит только public_message ошибок; детали — в логе.
# -----------------------------------------------------------------------------

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from aiogram import Bot, Dispatcher, F, Router
from aiogram.client.default import DefaultBotProperties
from aiogram.exceptions import TelegramAPIError
from aiogram.filters import Command as CommandFilter
from aiogram.filters import CommandStart
from aiogram.types import BotCommand, CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup, Message
from aiogram.utils.token import TokenValidationError

from .bot_notify import STATUS_EMOJI, get_notifier
from .commands import (
    BuyTokens,
    CancelForm,
    ChooseOption,
    Command,
    ConfirmOrder,
    DeleteProfile,
    EditProfileField,
    ListCustomers,
    ListOrders,
    RerunOrder,
    SelectPackage,
    ShowBalance,
    ShowPackages,
    ShowTokenPackages,
    SkipField,
    StartRegistration,
    Subscribe,
    decode_callback,
    encode_callback,
)
from .config import get_settings
from .database import run_in_session
from .errors import InsufficientBalance, OrderBotError
from .intake_fsm import Completed, IntakeForm, NoActiveForm, Prompt, StepResult, ValidationFailed
from .models import OrderStatus
from .reconciliation import initiate_payment
from .services import ledger, orders, pricing, profiles, subscriptions
from .session_store import session_store
from .utils import format_date_us, get_logger, short_ref

# -----------------------------------------------------------------------------
# Инициализация конфигурации
# -----------------------------------------------------------------------------
settings = get_settings()
logger = get_logger("orderbot.bot")

# Dispatcher — единая шина маршрутизации апдейтов к хэндлерам
dp = Dispatcher()
router = Router()
dp.include_router(router)

# Bot создаётся при первом обращении: токен проверяется aiogram при создании
_bot: Optional[Bot] = None


def get_bot() -> Bot:
    global _bot
    if _bot is None:
        _bot = Bot(token=settings.TELEGRAM_BOT_TOKEN, default=DefaultBotProperties(parse_mode="HTML"))
    return _bot


def get_dispatcher() -> Dispatcher:
    """Глобальный Dispatcher для webhook-эндпоинта main.py."""
    return dp


# -----------------------------------------------------------------------------
# Анкета: сохранение профиля идёт в отдельной транзакции
# -----------------------------------------------------------------------------
async def _save_profile(account_id: int, draft: Dict[str, Any]):
    return await run_in_session(lambda db: profiles.create_profile(db, account_id, draft), label="save profile")


async def _update_profile(account_id: int, profile_id: int, changes: Dict[str, Any]):
    return await run_in_session(
        lambda db: profiles.update_profile(db, account_id, profile_id, changes), label="update profile",
    )


intake = IntakeForm(session_store, save_profile=_save_profile, update_profile=_update_profile)


# -----------------------------------------------------------------------------
# Ответ бота: текст + inline-клавиатура из команд
# -----------------------------------------------------------------------------
@dataclass
class Reply:
    text: str
    buttons: List[List[Tuple[str, Any]]] = field(default_factory=list)  # (подпись, Command | URL-строка)

    def markup(self) -> Optional[InlineKeyboardMarkup]:
        if not self.buttons:
            return None
        rows = []
        for row in self.buttons:
            kb_row = []
            for label, target in row:
                if isinstance(target, str):
                    kb_row.append(InlineKeyboardButton(text=label, url=target))
                else:
                    kb_row.append(InlineKeyboardButton(text=label, callback_data=encode_callback(target)))
            rows.append(kb_row)
        return InlineKeyboardMarkup(inline_keyboard=rows)


def _chunks(items: Sequence, size: int) -> List[List]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def main_menu_buttons() -> List[List[Tuple[str, Any]]]:
    return [
        [("📝 Register Customer", StartRegistration()), ("👥 My Customers", ListCustomers())],
        [("📦 Order Package", ShowPackages()), ("📋 My Orders", ListOrders())],
        [("💰 Balance", ShowBalance()), ("🪙 Buy Tokens", ShowTokenPackages())],
    ]


def prompt_reply(prompt: Prompt, error: Optional[str] = None) -> Reply:
    text = f"{error}\n\n{prompt.text}" if error else prompt.text
    buttons: List[List[Tuple[str, Any]]] = _chunks(
        [(label, ChooseOption(value)) for label, value in prompt.options], 3,
    )
    tail: List[Tuple[str, Any]] = []
    if prompt.skippable:
        tail.append(("⏭️ Skip", SkipField()))
    tail.append(("❌ Cancel", CancelForm()))
    buttons.append(tail)
    return Reply(text, buttons)


def step_reply(result: StepResult) -> Reply:
    if isinstance(result, Prompt):
        return prompt_reply(result)
    if isinstance(result, ValidationFailed):
        return prompt_reply(result.prompt, error=result.message)
    if isinstance(result, Completed):
        if result.updated:
            return Reply("✅ Customer information updated.", [[("👥 My Customers", ListCustomers())]])
        profile = result.result
        name = getattr(profile, "display_name", "")
        return Reply(
            f"✅ <b>Customer saved!</b>\n\n👤 {name}\n\nYou can now order a package for this customer.",
            [[("📦 Order Package", ShowPackages())], [("👥 My Customers", ListCustomers())]],
        )
    if isinstance(result, NoActiveForm):
        return Reply(result.text, main_menu_buttons())
    raise TypeError(f"unexpected step result {result!r}")


# -----------------------------------------------------------------------------
# Разделы
# -----------------------------------------------------------------------------
async def _balance_reply(account_id: int) -> Reply:
    async def _read(db):
        bal = await ledger.balance(db, account_id)
        sub = await subscriptions.get_active_subscription(db, account_id)
        return bal, sub

    bal, sub = await run_in_session(_read, label="balance")
    lines = [f"💰 <b>Token Balance:</b> {bal} tokens"]
    buttons: List[List[Tuple[str, Any]]] = [[("🪙 Buy Tokens", ShowTokenPackages())]]
    if sub is not None:
        lines.append(f"⭐ <b>Subscription:</b> {sub.tier} (until {format_date_us(sub.expires_at.date().isoformat())})")
    else:
        lines.append("⭐ Subscribe for discounted prices and priority processing:")
        for name, plan in settings.SUBSCRIPTION_PLANS.items():
            buttons.append([(f"⭐ {name} — {plan['token_cost']} tokens / {plan['duration_days']} days", Subscribe(name))])
    return Reply("\n".join(lines), buttons)


async def _packages_reply(account_id: int) -> Reply:
    async def _read(db):
        subscriber = await subscriptions.has_active_subscription(db, account_id)
        return subscriber, await pricing.list_service_packages(db)

    subscriber, packages = await run_in_session(_read, label="packages")
    text = "📦 <b>Choose a package:</b>"
    if subscriber:
        text += "\n⭐ Subscriber pricing applied."
    buttons = [[(f"{p.sites} Sites — {p.price_for(subscriber)} tokens", SelectPackage(p.sites))] for p in packages]
    return Reply(text, buttons)


async def _select_customer_reply(account_id: int, sites: int) -> Reply:
    async def _read(db):
        return await pricing.get_service_package(db, sites), await profiles.list_profiles(db, account_id)

    package, items = await run_in_session(_read, label="select customer")
    if not items:
        return Reply("You have no customers yet. Register one first.", [[("📝 Register Customer", StartRegistration())]])
    buttons: List[List[Tuple[str, Any]]] = []
    for p in items:
        row = [(f"👤 {p.display_name}", ConfirmOrder(sites, p.id, False))]
        if p.has_credential:
            row.append(("+ 📧 Email", ConfirmOrder(sites, p.id, True)))
        buttons.append(row)
    return Reply(f"📦 <b>{package.product_name()}</b>\n\nSelect the customer for this order:", buttons)


async def _confirm_order_reply(account_id: int, cmd: ConfirmOrder) -> Reply:
    try:
        order = await run_in_session(
            lambda db: orders.create_order(
                db, account_id, cmd.profile_id, cmd.sites, with_email_confirmation=cmd.email_confirmation,
            ),
            label="create order",
        )
    except InsufficientBalance as e:
        return Reply(
            f"❌ {e.public_message}\n\nRequired: {e.required} tokens\nAvailable: {e.available} tokens",
            [[("🪙 Buy Tokens", ShowTokenPackages())]],
        )
    return Reply(
        "✅ <b>Order placed!</b>\n\n"
        f"📦 Order #{short_ref(order.id)}\n"
        f"🛍️ {order.product_name}\n"
        f"💰 {order.token_cost} tokens\n"
        f"🔢 Queue position: {order.queue_position}" + (" (priority)" if order.is_priority else ""),
        [[("📋 My Orders", ListOrders())]],
    )


def _token_packages_reply() -> Reply:
    buttons = [[(f"{p.tokens} tokens — ${p.price_usd} ({p.label})", BuyTokens(p.tokens))] for p in pricing.TOKEN_PACKAGES]
    return Reply("🪙 <b>Buy Tokens</b>\n\nChoose a package:", buttons)


async def _buy_tokens_reply(account_id: int, tokens: int) -> Reply:
    package = pricing.get_token_package(tokens)
    link = await run_in_session(lambda db: initiate_payment(db, account_id, package), label="initiate payment")
    return Reply(
        f"💳 <b>{package.description}</b>\n\n"
        f"Amount: ${package.price_usd}\n"
        "Tokens are credited automatically once the payment is confirmed.",
        [[("💳 Pay Now", link.pay_link)]],
    )


async def _customers_reply(account_id: int) -> Reply:
    items = await run_in_session(lambda db: profiles.list_profiles(db, account_id), label="list customers")
    if not items:
        return Reply("You have no customers yet.", [[("📝 Register Customer", StartRegistration())]])
    lines = ["👥 <b>Your Customers</b>", ""]
    buttons: List[List[Tuple[str, Any]]] = []
    for p in items:
        lines.append(f"👤 <b>{p.display_name}</b> — {p.email}, {p.city}, {p.state}")
        buttons.append([
            (f"✏️ Email: {p.first_name}", EditProfileField(p.id, "email")),
            (f"✏️ Phone: {p.first_name}", EditProfileField(p.id, "phone")),
            ("🗑", DeleteProfile(p.id)),
        ])
    return Reply("\n".join(lines), buttons)


async def _edit_reply(account_id: int, cmd: EditProfileField) -> Reply:
    await run_in_session(lambda db: profiles.get_owned_profile(db, account_id, cmd.profile_id), label="edit profile")
    return prompt_reply(await intake.begin_edit(account_id, cmd.profile_id, cmd.field))


async def _orders_reply(account_id: int) -> Reply:
    items = await run_in_session(lambda db: orders.list_orders(db, account_id), label="list orders")
    if not items:
        return Reply("You have no orders yet.", [[("📦 Order Package", ShowPackages())]])
    lines = ["📋 <b>Your Orders</b>", ""]
    buttons: List[List[Tuple[str, Any]]] = []
    for o in items:
        lines.append(f"{STATUS_EMOJI.get(o.status, '')} #{short_ref(o.id)} {o.product_name} — {o.status.upper()}")
        if o.status == OrderStatus.COMPLETED:
            buttons.append([(f"🔁 Rerun #{short_ref(o.id)}", RerunOrder(o.id))])
    return Reply("\n".join(lines), buttons)


async def _rerun_reply(account_id: int, order_id: int) -> Reply:
    order = await run_in_session(lambda db: orders.rerun(db, account_id, order_id), label="rerun order")
    return Reply(
        f"🔁 <b>Rerun placed!</b>\n\n🛍️ {order.product_name}\n💰 {order.token_cost} tokens\n"
        f"🔢 Queue position: {order.queue_position}",
        [[("📋 My Orders", ListOrders())]],
    )


async def _subscribe_reply(account_id: int, tier: str) -> Reply:
    sub = await run_in_session(
        lambda db: subscriptions.purchase_subscription(db, account_id, tier), label="purchase subscription",
    )
    return Reply(
        f"⭐ <b>{sub.tier} subscription active!</b>\n\nValid until {format_date_us(sub.expires_at.date().isoformat())}.",
        main_menu_buttons(),
    )


# -----------------------------------------------------------------------------
# Диспетчер команд
# -----------------------------------------------------------------------------
async def dispatch_command(account_id: int, command: Command) -> Reply:
    """
    Выполняет команду пользователя. Ошибки ядра превращаются в public_message.
    """
    try:
        if isinstance(command, StartRegistration):
            return prompt_reply(await intake.start(account_id))
        if isinstance(command, CancelForm):
            await intake.cancel(account_id)
            return Reply("❌ Registration cancelled.", main_menu_buttons())
        if isinstance(command, SkipField):
            return step_reply(await intake.submit(account_id, "skip"))
        if isinstance(command, ChooseOption):
            return step_reply(await intake.submit(account_id, command.value))
        if isinstance(command, ShowBalance):
            return await _balance_reply(account_id)
        if isinstance(command, ShowTokenPackages):
            return _token_packages_reply()
        if isinstance(command, BuyTokens):
            return await _buy_tokens_reply(account_id, command.tokens)
        if isinstance(command, ShowPackages):
            return await _packages_reply(account_id)
        if isinstance(command, SelectPackage):
            return await _select_customer_reply(account_id, command.sites)
        if isinstance(command, ConfirmOrder):
            return await _confirm_order_reply(account_id, command)
        if isinstance(command, ListCustomers):
            return await _customers_reply(account_id)
        if isinstance(command, EditProfileField):
            return await _edit_reply(account_id, command)
        if isinstance(command, DeleteProfile):
            await run_in_session(
                lambda db: profiles.delete_profile(db, account_id, command.profile_id), label="delete profile",
            )
            return Reply("🗑 Customer deleted.", [[("👥 My Customers", ListCustomers())]])
        if isinstance(command, ListOrders):
            return await _orders_reply(account_id)
        if isinstance(command, RerunOrder):
            return await _rerun_reply(account_id, command.order_id)
        if isinstance(command, Subscribe):
            return await _subscribe_reply(account_id, command.tier)
    except OrderBotError as e:
        logger.info("Command %s failed for account=%s: %s", type(command).__name__, account_id, e)
        return Reply(f"❌ {e.public_message}", main_menu_buttons())
    raise TypeError(f"unhandled command {command!r}")


async def _account_id(user) -> int:
    full_name = " ".join(filter(None, [user.first_name, user.last_name])) or None
    account = await run_in_session(
        lambda db: ledger.ensure_account(db, user.id, username=user.username, full_name=full_name),
        label="ensure account",
    )
    return account.id


async def _answer(message: Message, reply: Reply) -> None:
    await message.answer(reply.text, reply_markup=reply.markup())


# -----------------------------------------------------------------------------
# Команды
# -----------------------------------------------------------------------------
@router.message(CommandStart())
async def cmd_start(message: Message):
    """
    /start — регистрация аккаунта (idempotent) и главное меню.
    """
    try:
        await _account_id(message.from_user)
    except OrderBotError as e:
        await message.answer(f"❌ {e.public_message}")
        return
    text = (
        "👋 Welcome to <b>KPR Order Bot</b>!\n\n"
        "Here you can:\n"
        "• Register customers\n"
        "• Buy tokens and order registration packages\n"
        "• Track your orders\n\n"
        "Choose an option below."
    )
    await message.answer(text, reply_markup=Reply(text, main_menu_buttons()).markup())


@router.message(CommandFilter("help"))
async def cmd_help(message: Message):
    await message.answer(
        "ℹ️ Available commands:\n"
        "/start — main menu\n"
        "/register — add a customer\n"
        "/balance — token balance\n"
        "/cancel — cancel the current form\n"
        "/help — help"
    )


async def _run(message: Message, command: Command) -> None:
    try:
        account_id = await _account_id(message.from_user)
    except OrderBotError as e:
        await message.answer(f"❌ {e.public_message}")
        return
    await _answer(message, await dispatch_command(account_id, command))


@router.message(CommandFilter("balance"))
async def cmd_balance(message: Message):
    await _run(message, ShowBalance())


@router.message(CommandFilter("register"))
async def cmd_register(message: Message):
    await _run(message, StartRegistration())


@router.message(CommandFilter("cancel"))
async def cmd_cancel(message: Message):
    await _run(message, CancelForm())


@router.message(F.text & ~F.text.startswith("/"))
async def on_text(message: Message):
    """Текст вне команд — ответ на текущий шаг анкеты."""
    try:
        account_id = await _account_id(message.from_user)
        result = await intake.submit(account_id, message.text)
    except OrderBotError as e:
        await message.answer(f"❌ {e.public_message}")
        return
    await _answer(message, step_reply(result))


@router.callback_query()
async def on_callback(cq: CallbackQuery):
    try:
        command = decode_callback(cq.data or "")
    except ValueError as e:
        logger.warning("Bad callback data %r from %s: %s", cq.data, cq.from_user.id, e)
        await cq.answer("Unknown action", show_alert=False)
        return

    try:
        account_id = await _account_id(cq.from_user)
    except OrderBotError as e:
        await cq.answer(e.public_message, show_alert=True)
        return

    reply = await dispatch_command(account_id, command)
    await cq.answer()
    if cq.message is not None:
        await cq.message.answer(reply.text, reply_markup=reply.markup())


# -----------------------------------------------------------------------------
# Запуск: webhook / polling
# -----------------------------------------------------------------------------
async def _set_bot_commands() -> None:
    await get_bot().set_my_commands([
        BotCommand(command="start", description="Main menu"),
        BotCommand(command="register", description="Add a customer"),
        BotCommand(command="balance", description="Token balance"),
        BotCommand(command="cancel", description="Cancel the current form"),
        BotCommand(command="help", description="Help"),
    ])


async def setup_webhook() -> None:
    """
    Устанавливает webhook бота на {BASE_PUBLIC_URL}{TELEGRAM_WEBHOOK_PATH}.
    secret_token Telegram присылает в заголовке X-Telegram-Bot-Api-Secret-Token.
    Без BASE_PUBLIC_URL webhook не ставится (локальная отладка — polling).
    """
    if not settings.BASE_PUBLIC_URL:
        logger.warning("BASE_PUBLIC_URL is not set, webhook skipped")
        return
    bot = get_bot()
    webhook_url = f"{settings.BASE_PUBLIC_URL.rstrip('/')}{settings.TELEGRAM_WEBHOOK_PATH}"
    try:
        await _set_bot_commands()
        ok = await bot.set_webhook(
            url=webhook_url, drop_pending_updates=True, secret_token=settings.TELEGRAM_WEBHOOK_SECRET,
        )
    except TelegramAPIError as e:
        logger.error("Failed to set webhook: %s", e)
        return
    logger.info("Webhook set to %s (ok=%s, secret=%s)", webhook_url, ok, "yes" if settings.TELEGRAM_WEBHOOK_SECRET else "no")


def attach_notifier() -> None:
    """Подключает Bot к общему Notifier: уведомления ядра уходят в Telegram."""
    try:
        get_notifier().bot = get_bot()
    except TokenValidationError as e:
        logger.warning("Telegram bot token is invalid, notifications stay in outbox: %s", e)


async def start_bot() -> None:
    """Polling для локальной разработки."""
    bot = get_bot()
    attach_notifier()
    await _set_bot_commands()
    await bot.delete_webhook(drop_pending_updates=True)
    logger.info("Starting polling...")
    await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
