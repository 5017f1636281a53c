# 📂 backend/orderbot/errors.py — доменные ошибки ядра (заказы / токены / платежи)
# -----------------------------------------------------------------------------
# Что делает:
#   • Описывает таксономию ошибок ядра: ValidationError, InsufficientBalance,
#     MalformedEvent, UnmatchedPayment, IdempotencyNoop, IllegalTransition,
#     TransientStoreError и вспомогательные (ProfileNotFound, PackageNotFound,
#     PaymentNotEligible, PaymentGatewayError).
#   • У каждой ошибки есть http_status и public_message — обобщённый текст,
#     который можно показать пользователю. Детали (payload, id, стек) пишутся
#     только в лог.
#
# Где используется:
#   • services/* и reconciliation.py — бросают ошибки.
#   • payment_routes.py / admin_routes.py — превращают их в HTTPException.
#   • bot.py — показывает public_message пользователю.
# -----------------------------------------------------------------------------

from __future__ import annotations

from typing import Optional


class OrderBotError(Exception):
    """
    Базовая ошибка ядра.
    str(err) — внутренняя диагностика (для логов), public_message — для пользователя.
    """

    http_status: int = 400
    public_message: str = "Request could not be processed. Please try again or contact support."

    def __init__(self, message: str = "", *, public_message: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        if public_message is not None:
            self.public_message = public_message


# -----------------------------------------------------------------------------
# Анкета
# -----------------------------------------------------------------------------
class ValidationError(OrderBotError):
    """Некорректный ввод в диалоге: состояние не меняется, тот же вопрос задаётся снова."""

    http_status = 422
    public_message = "Please check your input and try again."

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}", public_message=message)
        self.field = field


# -----------------------------------------------------------------------------
# Токены / заказы
# -----------------------------------------------------------------------------
class InsufficientBalance(OrderBotError):
    http_status = 402
    public_message = "Insufficient tokens. Please purchase more tokens first."

    def __init__(self, account_id: int, required: int, available: int):
        super().__init__(f"account={account_id} required={required} available={available}")
        self.account_id = account_id
        self.required = required
        self.available = available


class IllegalTransition(OrderBotError):
    http_status = 409
    public_message = "This status change is not allowed for the order."

    def __init__(self, order_id: int, current: str, requested: str):
        super().__init__(f"order={order_id} {current} -> {requested}")
        self.order_id = order_id
        self.current = current
        self.requested = requested


class AccountNotFound(OrderBotError):
    http_status = 404
    public_message = "Account not found."


class ProfileNotFound(OrderBotError):
    http_status = 404
    public_message = "Customer not found or you do not have access to it."


class OrderNotFound(OrderBotError):
    http_status = 404
    public_message = "Order not found."


class PackageNotFound(OrderBotError):
    http_status = 404
    public_message = "This package is not available."


# -----------------------------------------------------------------------------
# Платежи
# -----------------------------------------------------------------------------
class MalformedEvent(OrderBotError):
    """В событии шлюза нет ожидаемого количества токенов (или нет обязательных полей)."""

    http_status = 400
    public_message = "Invalid payment event."


class UnmatchedPayment(OrderBotError):
    """Событие ссылается на внешний id, для которого нет ожидающей транзакции."""

    http_status = 404
    public_message = "Payment not found."

    def __init__(self, external_id: str, message: str = ""):
        super().__init__(message or f"no pending transaction for external_id={external_id}")
        self.external_id = external_id


class IdempotencyNoop(OrderBotError):
    """Повтор для уже завершённого внешнего id: успех без повторного зачисления."""

    http_status = 200
    public_message = "Payment already processed."

    def __init__(self, external_id: str):
        super().__init__(f"external_id={external_id} already completed")
        self.external_id = external_id


class PaymentNotEligible(OrderBotError):
    """Ручное одобрение раньше таймаута зависания."""

    http_status = 409
    public_message = "Payment is not eligible for manual approval yet."


class PaymentGatewayError(OrderBotError):
    http_status = 502
    public_message = "Failed to create payment. Please try again later."


# -----------------------------------------------------------------------------
# Хранилище
# -----------------------------------------------------------------------------
class TransientStoreError(OrderBotError):
    """БД недоступна и повторы исчерпаны."""

    http_status = 503
    public_message = "Service is temporarily unavailable. Please try again later."
