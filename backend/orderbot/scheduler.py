# 📂 backend/orderbot/scheduler.py — фоновые задачи KPR Order Bot (APScheduler)
# -----------------------------------------------------------------------------
# Назначение:
#   • Fallback-поллер платежей (каждые PAYMENT_POLL_INTERVAL_MINUTES минут):
#     находит pending-платежи старше PAYMENT_STUCK_TIMEOUT_MINUTES, опрашивает шлюз,
#     Expired/Failed помечает failed, остальные оставляет оператору.
#     Платежи, которые шлюз видит как Paid, попадают в уведомление админам.
#     Авто-зачисления НЕТ: зачисляют только webhook и ручное одобрение.
#   • Очистка простаивающих сессий анкеты (каждые SESSION_PURGE_INTERVAL_MINUTES).
#   • Ежедневно в 00:10 UTC — перевод истёкших подписок в expired.
#
# Интеграция:
#   • main.py на старте вызывает setup_scheduler() и scheduler.start(),
#     на остановке — scheduler.shutdown().
# -----------------------------------------------------------------------------

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .bot_notify import get_notifier
from .config import get_settings
from .database import run_in_session
from .errors import TransientStoreError
from .reconciliation import PollReport, poll_stuck_payments
from .services.subscriptions import expire_subscriptions
from .session_store import session_store
from .utils import get_logger

log = get_logger("orderbot.scheduler")
settings = get_settings()

# external_id, о которых админы уже предупреждены (в пределах процесса)
_alerted_paid: set = set()


# -----------------------------------------------------------------------------
# Fallback-поллер платежей
# -----------------------------------------------------------------------------
async def run_payment_fallback_poll() -> None:
    log.info("[Scheduler] Payment fallback poll started")
    try:
        report: PollReport = await run_in_session(poll_stuck_payments, label="payment fallback poll")
    except TransientStoreError as e:
        log.error("[Scheduler] Payment fallback poll skipped, store unavailable: %s", e)
        return

    fresh = [ext_id for ext_id in report.gateway_paid if ext_id not in _alerted_paid]
    if fresh:
        await get_notifier().notify_admins(
            "Stuck payments need approval",
            "Paid at gateway but not credited:\n" + "\n".join(fresh),
        )
        _alerted_paid.update(fresh)
    # id, которые больше не висят, из памяти убираем
    _alerted_paid.intersection_update(s.external_id for s in report.stuck)
    log.info(
        "[Scheduler] Payment fallback poll done: stuck=%d marked_failed=%d paid_at_gateway=%d",
        len(report.stuck), len(report.marked_failed), len(report.gateway_paid),
    )


# -----------------------------------------------------------------------------
# Сессии анкеты
# -----------------------------------------------------------------------------
async def purge_idle_sessions() -> None:
    removed = session_store.purge_expired()
    log.info("[Scheduler] Idle sessions purged: %d", removed)


# -----------------------------------------------------------------------------
# Подписки
# -----------------------------------------------------------------------------
async def run_subscription_expiry() -> None:
    log.info("[Scheduler] Subscription expiry started")
    try:
        expired = await run_in_session(expire_subscriptions, label="subscription expiry")
    except TransientStoreError as e:
        log.error("[Scheduler] Subscription expiry skipped, store unavailable: %s", e)
        return
    log.info("[Scheduler] Subscription expiry done: expired=%d", expired)


# -----------------------------------------------------------------------------
# Регистрация задач
# -----------------------------------------------------------------------------
def setup_scheduler() -> AsyncIOScheduler:
    """
    Создаёт AsyncIOScheduler с задачами:
      • payments_fallback_poll — interval, PAYMENT_POLL_INTERVAL_MINUTES
      • session_purge          — interval, SESSION_PURGE_INTERVAL_MINUTES
      • subscriptions_expire   — cron 00:10 UTC
    Возвращает готовый scheduler (но НЕ запускает его).
    """
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_payment_fallback_poll, "interval",
        minutes=settings.PAYMENT_POLL_INTERVAL_MINUTES, id="payments_fallback_poll",
        max_instances=1, coalesce=True,
    )
    scheduler.add_job(
        purge_idle_sessions, "interval",
        minutes=settings.SESSION_PURGE_INTERVAL_MINUTES, id="session_purge",
    )
    scheduler.add_job(run_subscription_expiry, "cron", hour=0, minute=10, id="subscriptions_expire")
    return scheduler
