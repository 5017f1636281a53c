# 📂 backend/orderbot/services/profiles.py — профили клиентов (CustomerProfile)
# -----------------------------------------------------------------------------
# Профиль принадлежит ровно одному аккаунту. Чтение/правка/удаление — только
# владельцем: чужой или несуществующий id → ProfileNotFound (одинаково, чтобы
# не раскрывать существование чужих записей).
# Пароль для email-услуг хранится зашифрованным (utils.encrypt_credential).
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import atomic
from ..errors import ProfileNotFound, ValidationError
from ..models import CustomerProfile
from ..utils import decrypt_credential, encrypt_credential, get_logger, utcnow

logger = get_logger("orderbot.profiles")

REQUIRED_FIELDS = (
    "first_name", "last_name", "phone", "email", "gender", "dob", "address", "city", "state", "postal",
)
OPTIONAL_FIELDS = ("middle_name", "apartment", "credential")


def _as_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError("dob", "Please enter a valid birth date (must be in the past):")


def _apply(profile: CustomerProfile, data: Dict[str, Any]) -> None:
    for key, value in data.items():
        if key == "credential":
            profile.credential_encrypted = encrypt_credential(value)
        elif key == "dob":
            profile.dob = _as_date(value)
        elif key in REQUIRED_FIELDS or key in OPTIONAL_FIELDS:
            setattr(profile, key, value)


async def create_profile(db: AsyncSession, account_id: int, draft: Dict[str, Any]) -> CustomerProfile:
    """Сохраняет завершённый черновик анкеты."""
    missing = [f for f in REQUIRED_FIELDS if not draft.get(f)]
    if missing:
        raise ValidationError(missing[0], "Customer information is incomplete.")

    async with atomic(db):
        profile = CustomerProfile(account_id=account_id, created_at=utcnow(), updated_at=utcnow())
        _apply(profile, draft)
        db.add(profile)
        await db.flush()

    logger.info("Profile created id=%s account=%s", profile.id, account_id)
    return profile


async def get_owned_profile(db: AsyncSession, account_id: int, profile_id: int) -> CustomerProfile:
    res = await db.execute(
        select(CustomerProfile).where(CustomerProfile.id == profile_id, CustomerProfile.account_id == account_id)
    )
    profile = res.scalar_one_or_none()
    if profile is None:
        raise ProfileNotFound(f"profile={profile_id} account={account_id}")
    return profile


async def list_profiles(db: AsyncSession, account_id: int) -> List[CustomerProfile]:
    res = await db.execute(
        select(CustomerProfile)
        .where(CustomerProfile.account_id == account_id)
        .order_by(CustomerProfile.created_at.desc(), CustomerProfile.id.desc())
    )
    return list(res.scalars().all())


async def update_profile(db: AsyncSession, account_id: int, profile_id: int, changes: Dict[str, Any]) -> CustomerProfile:
    async with atomic(db):
        profile = await get_owned_profile(db, account_id, profile_id)
        _apply(profile, changes)
        profile.updated_at = utcnow()
        await db.flush()
    logger.info("Profile updated id=%s fields=%s", profile_id, ",".join(sorted(changes)))
    return profile


async def delete_profile(db: AsyncSession, account_id: int, profile_id: int) -> None:
    async with atomic(db):
        profile = await get_owned_profile(db, account_id, profile_id)
        await db.delete(profile)
        await db.flush()
    logger.info("Profile deleted id=%s account=%s", profile_id, account_id)


def has_credential(profile: Optional[CustomerProfile]) -> bool:
    return bool(profile is not None and profile.credential_encrypted)


def reveal_credential(profile: CustomerProfile) -> Optional[str]:
    """Пароль в открытом виде для исполнителя заказа с email-подтверждением."""
    return decrypt_credential(profile.credential_encrypted)
