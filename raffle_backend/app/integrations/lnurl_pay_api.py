# -*- coding: utf-8 -*-
# raffle_backend/app/integrations/lnurl_pay_api.py
# =============================================================================
# Block Raffle: клиент Lightning address (LNURL-pay, LUD-06/LUD-16)
# -----------------------------------------------------------------------------
# Назначение:
#   • Разрешить `user@domain` в https://domain/.well-known/lnurlp/user.
#   • Запросить BOLT11-инвойс на сумму у callback payRequest.
#
# Канон/инварианты:
#   • По сети суммы идут в миллисатоши; модуль оперирует сатоши.
#   • Тело {"status": "ERROR"} это ошибка даже при HTTP 200.
#
# Запреты:
#   • Никакой оплаты: оплата полученного инвойса это дело payment_service.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)


class LnurlPayError(RuntimeError):
    """Lightning address не разрешился или отказался выдать инвойс."""


@dataclass(slots=True)
class PayRequest:
    callback: str
    min_sendable_msat: int
    max_sendable_msat: int
    metadata: str
    domain: str

    @property
    def min_sats(self) -> int:
        return -(-self.min_sendable_msat // 1000)

    @property
    def max_sats(self) -> int:
        return self.max_sendable_msat // 1000


def lightning_address_url(address: str) -> str:
    if not address or address.count("@") != 1:
        raise LnurlPayError("Invalid Lightning Address format. Expected user@domain.com")
    user, domain = address.strip().split("@")
    if not user or not domain:
        raise LnurlPayError("Invalid Lightning Address format. Expected user@domain.com")
    return f"https://{domain.lower()}/.well-known/lnurlp/{user.lower()}"


class LnurlPayClient:
    def __init__(
        self,
        *,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else get_settings().LNURL_TIMEOUT_SEC
        )
        self._transport = transport

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = await client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise LnurlPayError(f"LNURL request failed: {exc}") from exc
        if response.status_code != 200:
            raise LnurlPayError(f"LNURL endpoint answered {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise LnurlPayError("LNURL endpoint returned invalid JSON") from exc
        if str(data.get("status", "")).upper() == "ERROR":
            raise LnurlPayError(f"LNURL error: {data.get('reason')}")
        return data

    async def resolve(self, address: str) -> PayRequest:
        url = lightning_address_url(address)
        logger.info("[LNURL-pay] resolving lightning address", extra={"url": url})
        data = await self._get_json(url)
        if data.get("tag") != "payRequest":
            raise LnurlPayError(f"Unexpected LNURL tag: {data.get('tag')}")
        return PayRequest(
            callback=str(data["callback"]),
            min_sendable_msat=int(data.get("minSendable") or 0),
            max_sendable_msat=int(data.get("maxSendable") or 0),
            metadata=str(data.get("metadata") or ""),
            domain=url.split("/")[2],
        )

    async def request_invoice(self, pay_request: PayRequest, amount_sats: int, comment: str = "") -> str:
        """Возвращает BOLT11-инвойс (`pr`) на `amount_sats`."""

        params: Dict[str, Any] = {"amount": int(amount_sats) * 1000}
        if comment:
            params["comment"] = comment
        data = await self._get_json(pay_request.callback, params)
        invoice = data.get("pr")
        if not invoice:
            raise LnurlPayError("LNURL callback returned no invoice")
        return str(invoice)


__all__ = ["LnurlPayClient", "LnurlPayError", "PayRequest", "lightning_address_url"]
