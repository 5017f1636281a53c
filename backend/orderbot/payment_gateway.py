# 📂 backend/orderbot/payment_gateway.py — клиент платёжного шлюза (OxaPay merchant API)
# -----------------------------------------------------------------------------
# Что делает:
#   • create_payment(amount_usd, description, reference_id, callback_url) →
#     PaymentLink(external_id=trackId, pay_link). Ответ result != 100 → PaymentGatewayError.
#   • inquire(external_id) → GatewayPaymentStatus (текущий статус счёта у шлюза),
#     используется fallback-поллером.
#   • verify_webhook_signature() — HMAC-SHA512 сырого тела колбэка (заголовок HMAC).
#
# HTTP — httpx.AsyncClient с таймаутом из настроек; для тестов можно передать
# transport (httpx.MockTransport).
# -----------------------------------------------------------------------------

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from .config import get_settings
from .errors import PaymentGatewayError
from .utils import get_logger

settings = get_settings()
logger = get_logger("orderbot.gateway")

RESULT_OK = 100


class GatewayStatus:
    """Статусы платежа у шлюза (значения как в колбэке)."""
    WAITING = "Waiting"
    CONFIRMING = "Confirming"
    PAID = "Paid"
    EXPIRED = "Expired"
    FAILED = "Failed"

    ALL = (WAITING, CONFIRMING, PAID, EXPIRED, FAILED)
    TERMINAL_FAILURE = (EXPIRED, FAILED)

    @classmethod
    def normalize(cls, value: Optional[str]) -> str:
        """'paid' / 'PAID' → 'Paid'; неизвестное значение возвращается как есть."""
        raw = (value or "").strip()
        for known in cls.ALL:
            if known.lower() == raw.lower():
                return known
        return raw


@dataclass
class PaymentLink:
    external_id: str
    pay_link: str


@dataclass
class GatewayPaymentStatus:
    external_id: str
    status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class OxaPayClient:
    def __init__(
        self,
        merchant: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.merchant = merchant or settings.OXAPAY_MERCHANT
        self.api_base = (api_base or settings.OXAPAY_API_BASE).rstrip("/")
        self.timeout = timeout or settings.OXAPAY_TIMEOUT_SECONDS
        self.transport = transport

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(base_url=self.api_base, timeout=self.timeout, transport=self.transport) as client:
                r = await client.post(path, json=payload)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPError as e:
            logger.error("Gateway request %s failed: %s", path, e)
            raise PaymentGatewayError(f"{path}: {e}") from e
        except ValueError as e:
            logger.error("Gateway request %s returned non-JSON body: %s", path, e)
            raise PaymentGatewayError(f"{path}: invalid JSON") from e

        if not isinstance(data, dict) or data.get("result") != RESULT_OK:
            message = data.get("message") if isinstance(data, dict) else None
            logger.error("Gateway %s rejected request: result=%s message=%s", path,
                         data.get("result") if isinstance(data, dict) else None, message)
            raise PaymentGatewayError(f"{path}: {message or 'unexpected result'}")
        return data

    async def create_payment(
        self,
        amount_usd: Decimal,
        description: str,
        reference_id: str,
        callback_url: Optional[str],
        return_url: Optional[str] = None,
    ) -> PaymentLink:
        payload = {
            "merchant": self.merchant,
            "amount": float(amount_usd),
            "currency": "USD",
            "lifeTime": settings.PAYMENT_LIFETIME_MINUTES,
            "feePaidByPayer": 1,
            "underPaidCover": 5,
            "callbackUrl": callback_url,
            "returnUrl": return_url,
            "description": description,
            "orderId": reference_id,
        }
        data = await self._post("/merchants/request", payload)
        track_id = data.get("trackId")
        pay_link = data.get("payLink")
        if not track_id or not pay_link:
            logger.error("Gateway response without trackId/payLink: %s", data)
            raise PaymentGatewayError("response without trackId/payLink")
        logger.info("Gateway payment created trackId=%s amount=%s ref=%s", track_id, amount_usd, reference_id)
        return PaymentLink(external_id=str(track_id), pay_link=str(pay_link))

    async def inquire(self, external_id: str) -> GatewayPaymentStatus:
        data = await self._post("/merchants/inquiry", {"merchant": self.merchant, "trackId": external_id})
        amount = data.get("amount")
        return GatewayPaymentStatus(
            external_id=str(external_id),
            status=GatewayStatus.normalize(data.get("status")),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=data.get("currency"),
            raw=data,
        )


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """
    HMAC-SHA512(raw_body, secret) == signature. Если секрет не настроен — проверка выключена.
    """
    secret = secret if secret is not None else settings.OXAPAY_MERCHANT_API_KEY
    if not secret:
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


_client: Optional[OxaPayClient] = None


def get_gateway() -> OxaPayClient:
    global _client
    if _client is None:
        _client = OxaPayClient()
    return _client


def set_gateway(client: Optional[OxaPayClient]) -> None:
    global _client
    _client = client
