# 📂 backend/orderbot/commands.py — команды пользователя (tagged variants)
# -----------------------------------------------------------------------------
# Что делает:
#   • Описывает каждое действие пользователя отдельным dataclass-вариантом
#     (вместо сравнения строк callback_data в хэндлерах).
#   • encode_callback()/decode_callback() — компактная строка "tag:arg:arg"
#     только на границе Telegram (callback_data ≤ 64 байт).
#   • bot.py декодирует callback → команда → dispatch в анкету / заказы / платежи.
# -----------------------------------------------------------------------------

from __future__ import annotations

from dataclasses import MISSING, astuple, dataclass, fields
from typing import Dict, Type, Union

MAX_CALLBACK_BYTES = 64


@dataclass(frozen=True)
class StartRegistration:
    tag = "reg"


@dataclass(frozen=True)
class CancelForm:
    tag = "cancel"


@dataclass(frozen=True)
class SkipField:
    tag = "skip"


@dataclass(frozen=True)
class ChooseOption:
    """Выбор варианта в анкете (пол, штат, пароль: add/skip)."""
    value: str
    tag = "opt"


@dataclass(frozen=True)
class ShowBalance:
    tag = "bal"


@dataclass(frozen=True)
class ShowTokenPackages:
    tag = "tokens"


@dataclass(frozen=True)
class BuyTokens:
    """Покупка пакета токенов; tokens — стабильный ключ пакета (кол-во токенов)."""
    tokens: int
    tag = "buy"


@dataclass(frozen=True)
class ShowPackages:
    tag = "pkgs"


@dataclass(frozen=True)
class SelectPackage:
    """Выбор пакета услуг; sites — стабильный ключ пакета (кол-во сайтов)."""
    sites: int
    tag = "pkg"


@dataclass(frozen=True)
class ConfirmOrder:
    sites: int
    profile_id: int
    email_confirmation: bool = False
    tag = "ord"


@dataclass(frozen=True)
class ListCustomers:
    tag = "custs"


@dataclass(frozen=True)
class EditProfileField:
    profile_id: int
    field: str
    tag = "edit"


@dataclass(frozen=True)
class DeleteProfile:
    profile_id: int
    tag = "del"


@dataclass(frozen=True)
class ListOrders:
    tag = "orders"


@dataclass(frozen=True)
class RerunOrder:
    order_id: int
    tag = "rerun"


@dataclass(frozen=True)
class Subscribe:
    tier: str
    tag = "sub"


Command = Union[
    StartRegistration, CancelForm, SkipField, ChooseOption, ShowBalance, ShowTokenPackages,
    BuyTokens, ShowPackages, SelectPackage, ConfirmOrder, ListCustomers, EditProfileField,
    DeleteProfile, ListOrders, RerunOrder, Subscribe,
]

_REGISTRY: Dict[str, Type] = {
    cls.tag: cls
    for cls in (
        StartRegistration, CancelForm, SkipField, ChooseOption, ShowBalance, ShowTokenPackages,
        BuyTokens, ShowPackages, SelectPackage, ConfirmOrder, ListCustomers, EditProfileField,
        DeleteProfile, ListOrders, RerunOrder, Subscribe,
    )
}


def _encode_value(value) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    text = str(value)
    if ":" in text:
        raise ValueError(f"callback argument must not contain ':' ({text!r})")
    return text


def _decode_value(raw: str, type_name: str):
    if type_name == "int":
        return int(raw)
    if type_name == "bool":
        if raw not in ("0", "1"):
            raise ValueError(f"bad bool flag {raw!r}")
        return raw == "1"
    return raw


def encode_callback(command: Command) -> str:
    parts = [command.tag] + [_encode_value(v) for v in astuple(command)]
    data = ":".join(parts)
    if len(data.encode("utf-8")) > MAX_CALLBACK_BYTES:
        raise ValueError(f"callback data too long: {data!r}")
    return data


def decode_callback(data: str) -> Command:
    """
    "tag:arg:arg" → команда. Неизвестный tag или неверные аргументы → ValueError.
    """
    if not data:
        raise ValueError("empty callback data")
    tag, *args = data.split(":")
    cls = _REGISTRY.get(tag)
    if cls is None:
        raise ValueError(f"unknown command tag {tag!r}")
    params = fields(cls)
    required = [p for p in params if p.default is MISSING]
    if not (len(required) <= len(args) <= len(params)):
        raise ValueError(f"wrong number of arguments for {tag!r}: {args!r}")
    values = {}
    for p, raw in zip(params, args):
        values[p.name] = _decode_value(raw, p.type if isinstance(p.type, str) else p.type.__name__)
    return cls(**values)
