# -*- coding: utf-8 -*-
# raffle_backend/app/integrations/lnd_api.py
# =============================================================================
# Block Raffle: REST-клиент LND
# -----------------------------------------------------------------------------
# Назначение:
#   • Аутентифицированные вызовы ноды LND (заголовок Grpc-Metadata-macaroon):
#     getinfo, баланс каналов, декодирование payreq, синхронная отправка.
#   • На входе и выходе сырой JSON: интерпретация (payment_error, суммы)
#     лежит на payment_service.
#
# Канон/инварианты:
#   • Каждый вызов ограничен LND_TIMEOUT_SEC.
#   • Ответ не 2xx даёт LndAPIError("LND API error (<status>): <body>")
#     с телом ноды без изменений.
#   • Сбой соединения даёт LndAPIError (запрос не ушёл). Любой более поздний
#     транспортный сбой (таймаут чтения, обрыв) даёт LndTransportError:
#     вызывающий не знает, выполнила ли нода запрос.
#   • Без повторов: платёж отправляется не более одного раза за вызов.
#
# Защиты:
#   • Без URL или macaroon сразу LightningUnavailableError, до сети.
#   • Macaroon не попадает в логи (RedactingFilter тоже его маскирует).
# =============================================================================
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.errors_core import LightningUnavailableError
from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)


class LndAPIError(RuntimeError):
    """LND ответил статусом ошибки или недоступен; текст дословный."""


class LndTransportError(LndAPIError):
    """Ответа от LND нет (таймаут, обрыв после соединения). Запрос мог быть выполнен."""


class LndRestClient:
    """Тонкий async-клиент поверх REST-прокси LND."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        macaroon: Optional[str] = None,
        tls_verify: Optional[bool] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.LND_REST_URL or "").rstrip("/")
        self.macaroon = macaroon or settings.LND_MACAROON
        self.tls_verify = settings.LND_TLS_VERIFY if tls_verify is None else tls_verify
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.LND_TIMEOUT_SEC
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.macaroon)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.configured:
            raise LightningUnavailableError(
                "LND node not configured. Set LND_REST_URL and LND_MACAROON.",
            )

        headers = {
            "Grpc-Metadata-macaroon": str(self.macaroon),
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                verify=self.tls_verify,
                transport=self._transport,
            ) as client:
                response = await client.request(method, f"{self.base_url}{path}", headers=headers, json=json_body)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise LndAPIError(f"LND unreachable: {exc!r}") from exc
        except httpx.HTTPError as exc:
            logger.warning("[LND] transport error", extra={"method": method, "error": repr(exc)})
            raise LndTransportError(f"LND request failed: {exc!r}") from exc

        if response.status_code >= 400:
            raise LndAPIError(f"LND API error ({response.status_code}): {response.text}")
        return response.json()

    # ------------------------------------------------------------------
    # Нода
    # ------------------------------------------------------------------
    async def get_info(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/getinfo")

    async def channel_balance(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/balance/channels")

    # ------------------------------------------------------------------
    # Платежи
    # ------------------------------------------------------------------
    async def decode_payreq(self, payment_request: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/payreq/{payment_request}")

    async def send_payment_sync(
        self,
        payment_request: str,
        *,
        fee_limit_sats: int,
        amount_sats: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        POST /v1/channels/transactions. Ошибки маршрутизации нода сообщает в
        теле (`payment_error`) при HTTP 200; вызывающий обязан его проверить.
        """

        body: Dict[str, Any] = {
            "payment_request": payment_request,
            "fee_limit": {"fixed": str(int(fee_limit_sats))},
        }
        if amount_sats:
            body["amt"] = str(int(amount_sats))
        return await self._request("POST", "/v1/channels/transactions", json_body=body)


__all__ = ["LndAPIError", "LndTransportError", "LndRestClient"]
