# 📂 backend/orderbot/database.py — подключение к БД, пул, сессии, создание схемы
# -----------------------------------------------------------------------------
# Этот модуль отвечает за:
#   • Создание асинхронного движка SQLAlchemy (PostgreSQL) с драйвером asyncpg.
#   • Настройку пула соединений (pool_size, max_overflow, pre_ping).
#   • Инициализацию схемы БД (kpr_core) и таблиц ORM.
#   • Предоставление фабрики сессий и зависимостей для FastAPI:
#       - get_session()         — Depends для роутов.
#       - session_scope()       — контекстный менеджер транзакции (фоновые задачи, бот).
#       - atomic(db)            — единица атомарности для сервисов ядра.
#   • Повтор операций при временной недоступности БД (with_store_retry → TransientStoreError).
#   • Startup/Shutdown hooks: on_startup_init_db(), on_shutdown_dispose().
#
# Взаимосвязи:
#   • config.py — источник: DATABASE_URL, DB_SCHEMA_CORE, пул, параметры повторов.
#   • models.py — декларативные модели с __table_args__={"schema": SCHEMA}.
#   • main.py — вызывает on_startup_init_db() при старте приложения.
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)
from sqlalchemy.orm import sessionmaker

from .config import get_settings
from .errors import TransientStoreError
from .utils import get_logger

log = get_logger("orderbot.db")

T = TypeVar("T")

# -----------------------------------------------------------------------------
# Глобальные синглтоны (создаются один раз на процесс/воркер)
# -----------------------------------------------------------------------------
_engine: Optional[AsyncEngine] = None
_SessionFactory: Optional[sessionmaker] = None


def get_engine() -> AsyncEngine:
    """
    Ленивая инициализация AsyncEngine + фабрики сессий.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        return _engine

    s = get_settings()
    _engine = create_async_engine(
        s.DATABASE_URL,
        echo=s.DB_ECHO,
        pool_pre_ping=True,
        pool_size=s.DB_POOL_SIZE,
        max_overflow=s.DB_MAX_OVERFLOW,
    )
    # expire_on_commit=False — объекты живы после commit (отдаём их в ответы/уведомления)
    _SessionFactory = sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    return _engine


def bind_engine(engine: AsyncEngine) -> None:
    """
    Подменяет движок (тесты / альтернативные DSN). Фабрика сессий пересоздаётся.
    """
    global _engine, _SessionFactory
    _engine = engine
    _SessionFactory = sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


def get_session_factory() -> sessionmaker:
    if _SessionFactory is None:
        get_engine()
    assert _SessionFactory is not None, "Session factory is not initialized"
    return _SessionFactory


async def commit_or_fail(target, label: str = "commit") -> None:
    """
    commit() сессии или транзакции. Временная ошибка на commit → сразу
    TransientStoreError (без повтора): сервер мог уже зафиксировать транзакцию.
    """
    try:
        await target.commit()
    except Exception as e:
        if is_transient_store_error(e):
            log.error("%s outcome unknown, not retrying: %s", label, e)
            raise TransientStoreError(f"{label}: {e}") from e
        raise


async def _safe_rollback(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except Exception as e:
        log.warning("Rollback failed: %s", e)


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """
    Асинхронный контекстный менеджер «сессия как транзакция»:
        async with session_scope() as db:
            ... работа с db ...
    Автоматически выполняет commit/rollback/close.
    """
    session: AsyncSession = get_session_factory()()
    try:
        yield session
        await commit_or_fail(session)
    except Exception:
        await _safe_rollback(session)
        raise
    finally:
        await session.close()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI-зависимость: новая сессия на запрос, commit/rollback/close по завершении.
    """
    session: AsyncSession = get_session_factory()()
    try:
        yield session
        await commit_or_fail(session)
    except Exception:
        await _safe_rollback(session)
        raise
    finally:
        await session.close()


@asynccontextmanager
async def atomic(db: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Единица атомарности для операций ядра (списание + вставка заказа,
    поиск платежа + зачисление и т.п.).
      • Если в сессии ещё нет транзакции — открываем свою (db.begin()) и
        фиксируем её на выходе.
      • Если транзакция уже идёт (роут успел что-то прочитать) — работаем внутри
        неё; commit/rollback выполнит владелец сессии (get_session/session_scope).
      • Сбой самого commit не повторяется (см. commit_or_fail).
    """
    if db.in_transaction():
        yield db
        return

    tx = await db.begin()
    try:
        yield db
    except Exception:
        await tx.rollback()
        raise
    await commit_or_fail(tx)


# -----------------------------------------------------------------------------
# Повтор при временной недоступности БД
# -----------------------------------------------------------------------------
def is_transient_store_error(exc: BaseException) -> bool:
    """
    Временные ошибки: обрыв соединения, недоступный сервер, сериализация/дедлок.
    Нарушения ограничений (IntegrityError) временными не считаются.
    """
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


async def with_store_retry(
    op: Callable[[], Awaitable[T]],
    *,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    label: str = "db operation",
) -> T:
    """
    Выполняет op() с повторами и экспоненциальной паузой при временных ошибках БД.
    op должна сама открывать сессию (каждая попытка — новая транзакция).
    Повторы исчерпаны → TransientStoreError.
    """
    s = get_settings()
    attempts = attempts or s.DB_RETRY_ATTEMPTS
    delay = s.DB_RETRY_BASE_DELAY if base_delay is None else base_delay
    cap = s.DB_RETRY_MAX_DELAY if max_delay is None else max_delay

    for attempt in range(1, attempts + 1):
        try:
            return await op()
        except Exception as e:
            if not is_transient_store_error(e):
                raise
            if attempt >= attempts:
                log.error("%s failed after %d attempts: %s", label, attempts, e)
                raise TransientStoreError(f"{label}: {e}") from e
            log.warning("%s attempt %d failed, retrying in %.2fs: %s", label, attempt, delay, e)
            await asyncio.sleep(delay)
            delay = min(delay * 2, cap)

    raise TransientStoreError(label)


async def run_in_session(fn: Callable[[AsyncSession], Awaitable[T]], *, label: str = "db operation") -> T:
    """
    Адаптер для фоновых задач и бота: fn(db) в отдельной session_scope() с повторами.
    """

    async def _op() -> T:
        async with session_scope() as db:
            return await fn(db)

    return await with_store_retry(_op, label=label)


# -----------------------------------------------------------------------------
# Инициализация схемы / health-check
# -----------------------------------------------------------------------------
async def ensure_schemas(engine: Optional[AsyncEngine] = None) -> None:
    """
    Создаёт схему DB_SCHEMA_CORE в Postgres, если её ещё нет (idempotent).
    """
    s = get_settings()
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{s.DB_SCHEMA_CORE}"'))


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """
    Создаёт таблицы ORM (create_all, idempotent). Миграции в проде — отдельной командой.
    """
    from .models import Base

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """
    Простой health-check (SELECT 1). Возвращает True, если соединение установлено.
    """
    engine = engine or get_engine()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        log.warning("DB health check failed: %s", e)
        return False


async def on_startup_init_db() -> None:
    """
    Вызывается из main.py при старте приложения:
      1) Ленивая инициализация движка/фабрики сессий.
      2) Создание схемы и таблиц (idempotent).
      3) Проверка соединения — исключение при неуспехе.
    """
    engine = get_engine()
    await ensure_schemas(engine)
    await create_tables(engine)
    ok = await check_db_connection(engine)
    if not ok:
        raise RuntimeError("Database connection failed during startup.")


async def on_shutdown_dispose() -> None:
    """
    Корректное закрытие движка при остановке приложения.
    """
    global _engine, _SessionFactory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    _SessionFactory = None
