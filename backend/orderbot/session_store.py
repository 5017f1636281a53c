# 📂 backend/orderbot/session_store.py — хранилище сессий диалога (Session Store)
# -----------------------------------------------------------------------------
# Что делает:
#   • Держит ОДНУ эфемерную сессию на аккаунт: состояние анкеты + собранные поля
#     черновика + цель редактирования (profile_id, поле).
#   • Сессия передаётся явно по account_id; глобального «текущего пользователя» нет.
#   • lock(account_id) сериализует писателей одного аккаунта (asyncio.Lock);
#     разные аккаунты обрабатываются параллельно и ничего не делят.
#   • Простаивающие сессии удаляются purge_expired() (вызывает scheduler.py).
#
# Хранение — в памяти процесса: при рестарте незавершённые анкеты теряются,
# это допустимо (пользователь начинает анкету заново).
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import enum
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Optional

from .config import get_settings
from .utils import get_logger, utcnow

logger = get_logger("orderbot.sessions")
settings = get_settings()


class FormState(str, enum.Enum):
    NONE = "none"
    NAME = "name"
    MIDDLE_NAME = "middle_name"
    LAST_NAME = "last_name"
    PHONE = "phone"
    EMAIL = "email"
    GENDER = "gender"
    DOB = "dob"
    ADDRESS = "address"
    APARTMENT = "apartment"
    CITY = "city"
    STATE = "state"
    POSTAL = "postal"
    PASSWORD_OPTION = "password_option"
    PASSWORD = "password"
    EDITING_FIELD = "editing_field"


@dataclass
class EditTarget:
    """Что редактируем в состоянии EDITING_FIELD."""
    profile_id: int
    field: str


@dataclass
class Session:
    account_id: int
    state: FormState = FormState.NONE
    draft: Dict[str, Any] = field(default_factory=dict)
    editing: Optional[EditTarget] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def active(self) -> bool:
        return self.state != FormState.NONE

    def reset(self) -> None:
        self.state = FormState.NONE
        self.draft = {}
        self.editing = None
        self.updated_at = utcnow()


class SessionStore:
    """
    In-memory хранилище сессий.
    get() возвращает сессию account_id (или новую пустую NONE-сессию);
    новая сессия попадает в хранилище только после save().
    Читать/писать одну сессию нужно под lock().
    """

    def __init__(self, ttl_minutes: Optional[int] = None):
        self._sessions: Dict[int, Session] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        # сколько корутин держат или ждут lock аккаунта
        self._lock_users: Dict[int, int] = {}
        self._ttl = timedelta(minutes=ttl_minutes if ttl_minutes is not None else settings.SESSION_TTL_MINUTES)

    def get(self, account_id: int) -> Session:
        session = self._sessions.get(account_id)
        if session is None:
            session = Session(account_id=account_id)
        return session

    def save(self, session: Session) -> None:
        session.updated_at = utcnow()
        if session.state == FormState.NONE and not session.draft:
            self._sessions.pop(session.account_id, None)
            return
        self._sessions[session.account_id] = session

    def clear(self, account_id: int) -> None:
        self._sessions.pop(account_id, None)

    @asynccontextmanager
    async def lock(self, account_id: int) -> AsyncIterator[None]:
        """Lock живёт, пока его кто-то держит или ждёт; затем удаляется."""
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        self._lock_users[account_id] = self._lock_users.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users[account_id] - 1
            if users:
                self._lock_users[account_id] = users
            else:
                del self._lock_users[account_id]
                self._locks.pop(account_id, None)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Удаляет сессии, которые не менялись дольше TTL. Возвращает количество удалённых.
        Сессию, чей lock сейчас занят, не трогаем.
        """
        now = now or utcnow()
        expired = [
            account_id
            for account_id, s in self._sessions.items()
            if now - s.updated_at > self._ttl
        ]
        removed = 0
        for account_id in expired:
            if account_id in self._lock_users:
                continue
            self._sessions.pop(account_id, None)
            removed += 1
        if removed:
            logger.info("Purged %d idle sessions", removed)
        return removed

    def __len__(self) -> int:
        return len(self._sessions)


# Общий экземпляр процесса (бот + API)
session_store = SessionStore()
