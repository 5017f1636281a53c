# 📂 backend/orderbot/main.py — точка входа FastAPI-приложения KPR Order Bot
# -----------------------------------------------------------------------------
# Что делает:
#   • create_app(): FastAPI + CORS + роутеры (пользователь/платежи, админ) с префиксом
#     settings.API_V1_STR, обработчик ошибок ядра, Telegram webhook, / и /healthz.
#   • startup: БД (схема, таблицы, SELECT 1) → планировщик (fallback-поллер,
#     очистка сессий, подписки) → Notifier с aiogram Bot → webhook бота.
#   • shutdown: останов планировщика и закрытие движка БД.
#
# Запуск локально:
#   uvicorn backend.orderbot.main:app --reload
# -----------------------------------------------------------------------------

from __future__ import annotations

from typing import Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import bot as bot_module
from .admin_routes import router as admin_router
from .config import get_settings
from .database import on_shutdown_dispose, on_startup_init_db
from .errors import OrderBotError
from .payment_routes import router as user_router
from .scheduler import setup_scheduler
from .utils import get_logger

settings = get_settings()
logger = get_logger("orderbot.main")


async def orderbot_error_handler(request: Request, exc: OrderBotError) -> JSONResponse:
    """
    Ошибка ядра → {"detail": public_message} с http_status ошибки.
    Внутренние детали (str(exc)) пишутся только в лог.
    """
    logger.info("%s %s -> %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.public_message})


def create_app() -> FastAPI:
    """
    Фабрика FastAPI-приложения:
    - Подключает CORS.
    - Подключает роутеры пользователей/админов с префиксом из settings.API_V1_STR.
    - Определяет Telegram webhook endpoint (POST {TELEGRAM_WEBHOOK_PATH}).
    - Добавляет корневые и healthcheck эндпоинты.
    """
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version="1.0.0",
        description="KPR Order Bot API (FastAPI + PostgreSQL + Aiogram + OxaPay)",
    )

    # -------------------
    # CORS
    # -------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.effective_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------
    # Роуты API
    # -------------------
    app.include_router(user_router, prefix=settings.API_V1_STR, tags=["user"])
    app.include_router(admin_router, prefix=settings.API_V1_STR, tags=["admin"])
    app.add_exception_handler(OrderBotError, orderbot_error_handler)

    # -------------------
    # Telegram webhook endpoint
    # -------------------
    @app.post(settings.TELEGRAM_WEBHOOK_PATH)
    async def telegram_webhook(
        req: Request,
        x_secret: Optional[str] = Header(None, alias="X-Telegram-Bot-Api-Secret-Token"),
    ):
        """
        Эндпоинт, куда Telegram присылает обновления (updates) в режиме webhook.
        Если задан TELEGRAM_WEBHOOK_SECRET — заголовок X-Telegram-Bot-Api-Secret-Token
        должен совпадать, иначе 403.
        """
        if settings.TELEGRAM_WEBHOOK_SECRET and x_secret != settings.TELEGRAM_WEBHOOK_SECRET:
            raise HTTPException(status_code=403, detail="Invalid webhook secret")

        try:
            update = await req.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")

        await bot_module.get_dispatcher().feed_raw_update(bot_module.get_bot(), update)
        return JSONResponse({"ok": True})

    # -------------------
    # Инфо и Healthcheck
    # -------------------
    @app.get("/")
    async def root():
        return {
            "name": settings.PROJECT_NAME,
            "env": settings.ENV,
            "api_prefix": settings.API_V1_STR,
            "webhook_path": settings.TELEGRAM_WEBHOOK_PATH,
            "payment_webhook": f"{settings.API_V1_STR}{settings.PAYMENT_WEBHOOK_PATH}",
        }

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    return app


# -----------------------------------------------------------------------------
# Инициализация приложения (startup/shutdown)
# -----------------------------------------------------------------------------
app = create_app()
scheduler = setup_scheduler()


@app.on_event("startup")
async def on_startup():
    """
    Событие запуска приложения:
      1) БД: схема, таблицы, health-check.
      2) Планировщик: fallback-поллер платежей, очистка сессий, подписки.
      3) Notifier получает aiogram Bot.
      4) Webhook бота (если указан BASE_PUBLIC_URL).
    """
    logger.info("Starting up...")
    await on_startup_init_db()
    logger.info("Database initialized")

    scheduler.start()
    logger.info("Scheduler started")

    bot_module.attach_notifier()
    await bot_module.setup_webhook()


@app.on_event("shutdown")
async def on_shutdown():
    logger.info("Shutting down...")
    if scheduler.running:
        scheduler.shutdown(wait=False)
    await on_shutdown_dispose()
    logger.info("Shutdown complete")


# -----------------------------------------------------------------------------
# Локальный запуск через uvicorn (для отладки)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    uvicorn.run("backend.orderbot.main:app", host="0.0.0.0", port=8000, reload=True)
