# -*- coding: utf-8 -*-
# raffle_backend/app/services/payment_service.py
# =============================================================================
# Block Raffle: исполнитель платежей поверх LND
# -----------------------------------------------------------------------------
# Назначение:
#   • decode(): сумма / хэш / описание BOLT11-инвойса.
#   • pay(): одна синхронная отправка с фиксированным потолком комиссии.
#   • pay_lightning_address(): resolve → инвойс → проверка суммы → оплата.
#   • node_status(): взгляд оператора на ноду.
#
# Канон/инварианты:
#   • Без повторов: каждый pay() это ровно одна попытка отправки.
#   • Отказы приходят как PaymentError с дословным текстом ноды:
#       - непустой `payment_error` в теле HTTP 200,
#       - тела HTTP-ошибок ("LND API error (<status>): <body>").
#   • Отправка без ответа (таймаут, обрыв соединения) даёт
#     PaymentOutcomeUnknownError: нода ещё может провести платёж.
#   • Хэши возвращаются в hex нижнего регистра (LND REST шлёт base64).
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.errors_core import LightningUnavailableError, PaymentError, PaymentOutcomeUnknownError
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import b64_to_hex
from raffle_backend.app.integrations.lnd_api import LndAPIError, LndRestClient, LndTransportError
from raffle_backend.app.integrations.lnurl_pay_api import LnurlPayClient, LnurlPayError

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class DecodedInvoice:
    amount_sats: int
    payment_hash: str
    description: str = ""
    destination: str = ""


@dataclass(frozen=True, slots=True)
class PaymentResult:
    payment_hash: Optional[str]
    preimage: Optional[str]


class PaymentExecutor(Protocol):
    async def decode(self, bolt11: str) -> DecodedInvoice: ...

    async def pay(self, bolt11: str) -> PaymentResult: ...

    async def pay_lightning_address(self, address: str, amount_sats: int, comment: str = "") -> PaymentResult: ...


class LndPaymentService:
    """PaymentExecutor поверх LND REST."""

    def __init__(
        self,
        client: Optional[LndRestClient] = None,
        *,
        lnurl_client: Optional[LnurlPayClient] = None,
        fee_limit_sats: Optional[int] = None,
    ) -> None:
        self.client = client or LndRestClient()
        self.lnurl = lnurl_client or LnurlPayClient()
        self.fee_limit_sats = get_settings().LN_FEE_LIMIT_SATS if fee_limit_sats is None else fee_limit_sats

    async def decode(self, bolt11: str) -> DecodedInvoice:
        try:
            raw = await self.client.decode_payreq(bolt11)
        except LndAPIError as exc:
            raise PaymentError(str(exc)) from exc
        amount = int(raw.get("num_satoshis") or 0)
        if not amount and raw.get("num_msat"):
            amount = int(raw["num_msat"]) // 1000
        return DecodedInvoice(
            amount_sats=amount,
            payment_hash=str(raw.get("payment_hash") or ""),
            description=str(raw.get("description") or ""),
            destination=str(raw.get("destination") or ""),
        )

    async def pay(self, bolt11: str) -> PaymentResult:
        try:
            raw: Dict[str, Any] = await self.client.send_payment_sync(bolt11, fee_limit_sats=self.fee_limit_sats)
        except LndTransportError as exc:
            logger.error("[PAY] no answer from node, outcome unknown", extra={"error": str(exc)})
            raise PaymentOutcomeUnknownError(str(exc)) from exc
        except LndAPIError as exc:
            logger.warning("[PAY] node call failed", extra={"error": str(exc)})
            raise PaymentError(str(exc)) from exc

        payment_error = raw.get("payment_error")
        if payment_error:
            logger.warning("[PAY] payment rejected by node", extra={"error": str(payment_error)})
            raise PaymentError(str(payment_error))

        result = PaymentResult(
            payment_hash=b64_to_hex(raw.get("payment_hash")),
            preimage=b64_to_hex(raw.get("payment_preimage")),
        )
        logger.info("[PAY] payment sent", extra={"payment_hash": result.payment_hash})
        return result

    async def pay_lightning_address(self, address: str, amount_sats: int, comment: str = "") -> PaymentResult:
        """Старый путь автовыплаты для оператора (POST /api/admin/raffle/{id}/pay)."""

        if amount_sats <= 0:
            raise PaymentError("Prize amount is zero; nothing to pay.")
        try:
            pay_request = await self.lnurl.resolve(address)
            if amount_sats < pay_request.min_sats:
                raise PaymentError(f"Amount {amount_sats} sats is below minimum {pay_request.min_sats} sats")
            if amount_sats > pay_request.max_sats:
                raise PaymentError(f"Amount {amount_sats} sats exceeds maximum {pay_request.max_sats} sats")
            invoice = await self.lnurl.request_invoice(pay_request, amount_sats, comment)
        except LnurlPayError as exc:
            raise PaymentError(str(exc)) from exc

        decoded = await self.decode(invoice)
        if decoded.amount_sats != amount_sats:
            raise PaymentError(
                f"Invoice amount {decoded.amount_sats} sats does not match requested {amount_sats} sats",
            )
        logger.info("[PAY] paying lightning address", extra={"address": address, "amount_sats": amount_sats})
        return await self.pay(invoice)

    async def node_status(self) -> Dict[str, Any]:
        if not self.client.configured:
            return {"configured": False, "reason": "LND_REST_URL or LND_MACAROON not set"}
        try:
            info = await self.client.get_info()
            balance = await self.client.channel_balance()
        except (LndAPIError, LightningUnavailableError) as exc:
            return {"configured": False, "reason": str(exc)}
        local = balance.get("local_balance") or {}
        remote = balance.get("remote_balance") or {}
        return {
            "configured": True,
            "alias": info.get("alias"),
            "pubkey": info.get("identity_pubkey"),
            "synced": bool(info.get("synced_to_chain")),
            "blockHeight": info.get("block_height"),
            "channelBalanceSats": int(local.get("sat") or balance.get("balance") or 0),
            "remoteBalanceSats": int(remote.get("sat") or 0),
        }


__all__ = [
    "DecodedInvoice",
    "PaymentResult",
    "PaymentExecutor",
    "LndPaymentService",
]
