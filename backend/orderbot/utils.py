# 📂 backend/orderbot/utils.py — общие утилиты (логгеры, время, шифрование, форматирование)
# -----------------------------------------------------------------------------
# Здесь:
# - фабрика именованных логгеров orderbot.* (stdout, единый формат),
# - работа со временем в UTC (aware datetime),
# - шифрование поля credential профиля клиента (Fernet),
# - мелкие хелперы форматирования для бота и API.

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import get_settings

settings = get_settings()

LOG_FORMAT = "[%(asctime)s][%(levelname)s] %(name)s: %(message)s"


# =========================
# 📝 Логирование
# =========================
def get_logger(name: str) -> logging.Logger:
    """
    Возвращает логгер с обработчиком в stdout (если у него ещё нет своих).
    Уровень берётся из settings.LOG_LEVEL.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(h)
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    return logger


log = get_logger("orderbot.utils")


# =========================
# 🕒 Время
# =========================
def utcnow() -> datetime:
    """Текущее время в UTC (aware)."""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Приводит datetime к aware UTC (SQLite отдаёт naive значения)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def minutes_between(older: datetime, newer: datetime) -> int:
    """Целое число минут между двумя моментами (вниз)."""
    return int((as_utc(newer) - as_utc(older)).total_seconds() // 60)


# =========================
# 🔐 Шифрование credential
# =========================
_fernet: Optional[Fernet] = None


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        key = settings.CREDENTIAL_ENCRYPTION_KEY
        if not key:
            log.warning("CREDENTIAL_ENCRYPTION_KEY is not set; generated an ephemeral key, stored credentials will not survive a restart")
            key = Fernet.generate_key().decode()
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
    return _fernet


def encrypt_credential(plain: Optional[str]) -> Optional[str]:
    if not plain:
        return None
    return _get_fernet().encrypt(plain.encode("utf-8")).decode("ascii")


def decrypt_credential(token: Optional[str]) -> Optional[str]:
    """None, если значения нет или ключ сменился."""
    if not token:
        return None
    try:
        return _get_fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken:
        log.error("Credential could not be decrypted (key rotated?)")
        return None


# =========================
# 🔤 Форматирование
# =========================
def short_ref(value) -> str:
    """Короткий номер для сообщений: первые 8 символов id."""
    return str(value)[:8]


def format_date_us(iso_date: Optional[str]) -> str:
    """YYYY-MM-DD -> MM-DD-YYYY (как вводил пользователь)."""
    if not iso_date:
        return "N/A"
    year, month, day = str(iso_date).split("-")
    return f"{month}-{day}-{year}"
