# 📂 backend/orderbot/bot_notify.py — уведомления пользователям и админам
# -----------------------------------------------------------------------------
# Что делает:
#   • NotificationEvent — событие, которое возвращает ядро (смена статуса заказа,
#     изменение баланса, подтверждение оплаты). Само ядро ничего не отправляет.
#   • Шаблоны текстов (HTML, как в bot.py).
#   • Notifier.notify(chat_id, template_kind, payload) — доставка через aiogram Bot.
#     Без бота (тесты, API-процесс без токена) сообщения складываются в outbox.
#   • Ошибка доставки не ломает бизнес-операцию: пишем в лог и возвращаем False.
# -----------------------------------------------------------------------------

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from aiogram.exceptions import TelegramAPIError

from .config import get_settings
from .utils import get_logger, short_ref

settings = get_settings()
logger = get_logger("orderbot.notify")

ORDER_STATUS = "order_status"
BALANCE_CHANGE = "balance_change"
PAYMENT_CONFIRMED = "payment_confirmed"
ADMIN_ALERT = "admin_alert"

STATUS_EMOJI = {
    "pending": "⏳",
    "processing": "🔄",
    "assigned": "👤",
    "completed": "✅",
    "cancelled": "❌",
    "refunded": "💸",
}

STATUS_MESSAGES = {
    "pending": "Your order is pending and will be processed soon.",
    "processing": "Great news! Your order is now being processed.",
    "assigned": "Your order has been assigned to an operator.",
    "completed": "🎉 Congratulations! Your order has been completed successfully.",
    "cancelled": "Your order has been cancelled. Please contact support if you need assistance.",
    "refunded": "Your order has been refunded. The tokens have been returned to your account.",
}


@dataclass
class NotificationEvent:
    kind: str
    account_id: int
    chat_id: Optional[int]
    payload: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Шаблоны
# =============================================================================
def render_order_status(p: Dict[str, Any]) -> str:
    old, new = p["old_status"], p["new_status"]
    lines = [
        f"{STATUS_EMOJI.get(new, '')} <b>Order Status Update</b>",
        "",
        f"📦 <b>Order #{short_ref(p['order_id'])}</b>",
        f"🛍️ <b>Product:</b> {p.get('product_name') or 'N/A'}",
        f"💰 <b>Amount:</b> {int(p.get('token_cost') or 0):,} tokens",
        "",
        f"📈 <b>Status Changed:</b> {STATUS_EMOJI.get(old, '')} {old.upper()} → {STATUS_EMOJI.get(new, '')} {new.upper()}",
        "",
        STATUS_MESSAGES.get(new, ""),
    ]
    if p.get("refunded_tokens"):
        lines.append(f"💸 <b>Refunded:</b> {p['refunded_tokens']} tokens")
    if p.get("notes"):
        lines += ["", f"📝 <b>Admin Notes:</b> {p['notes']}"]
    return "\n".join(lines)


def render_balance_change(p: Dict[str, Any]) -> str:
    change = int(p["change"])
    if change > 0:
        head, action, tail = "🎉", "added to", "✨ Enjoy your additional tokens!"
    else:
        head, action, tail = "⚠️", "deducted from", "📝 Please contact support if you have questions about this adjustment."
    return (
        f"{head} <b>Token Balance Update</b>\n\n"
        f"💰 <b>{abs(change)} tokens</b> have been {action} your account\n\n"
        f"📊 <b>New Balance:</b> {p['balance']} tokens\n\n"
        f"{tail}"
    )


def render_payment_confirmed(p: Dict[str, Any]) -> str:
    return (
        "✅ <b>Payment Confirmed!</b>\n\n"
        f"💰 {p['tokens']} tokens have been added to your account.\n"
        f"📊 <b>New Balance:</b> {p['balance']} tokens"
    )


def render_admin_alert(p: Dict[str, Any]) -> str:
    return f"🛠 <b>{p.get('title', 'Admin alert')}</b>\n\n{p.get('message', '')}"


TEMPLATES = {
    ORDER_STATUS: render_order_status,
    BALANCE_CHANGE: render_balance_change,
    PAYMENT_CONFIRMED: render_payment_confirmed,
    ADMIN_ALERT: render_admin_alert,
}


def render(template_kind: str, payload: Dict[str, Any]) -> str:
    try:
        renderer = TEMPLATES[template_kind]
    except KeyError:
        raise ValueError(f"unknown notification template: {template_kind}")
    return renderer(payload)


# =============================================================================
# Доставка
# =============================================================================
class Notifier:
    def __init__(self, bot=None):
        self.bot = bot
        self.outbox: List[Tuple[int, str]] = []

    async def notify(self, chat_id: Optional[int], template_kind: str, payload: Dict[str, Any]) -> bool:
        if not chat_id:
            logger.warning("Notification %s skipped: no chat id", template_kind)
            return False
        text = render(template_kind, payload)
        if self.bot is None:
            self.outbox.append((int(chat_id), text))
            return True
        try:
            await self.bot.send_message(chat_id=int(chat_id), text=text, parse_mode="HTML")
        except TelegramAPIError as e:
            logger.error("Failed to send %s to chat=%s: %s", template_kind, chat_id, e)
            return False
        return True

    async def deliver(self, event: Optional[NotificationEvent]) -> bool:
        if event is None:
            return False
        return await self.notify(event.chat_id, event.kind, event.payload)

    async def notify_admins(self, title: str, message: str) -> int:
        """Рассылает сообщение супер-админам из ADMIN_TELEGRAM_IDS. Возвращает число доставленных."""
        sent = 0
        for admin_id in settings.admin_telegram_ids():
            if await self.notify(admin_id, ADMIN_ALERT, {"title": title, "message": message}):
                sent += 1
        return sent


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    """Общий Notifier процесса; bot.py подставляет в него aiogram Bot при старте."""
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier


def set_notifier(notifier: Notifier) -> None:
    global _notifier
    _notifier = notifier
