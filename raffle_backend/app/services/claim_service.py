# -*- coding: utf-8 -*-
# raffle_backend/app/services/claim_service.py
# =============================================================================
# Block Raffle: claim-токены и поток LNURL-withdraw (LUD-03)
# -----------------------------------------------------------------------------
# Назначение:
#   • issue(): новый секрет claim + срок действия для новой строки Raffle.
#   • withdraw_request(): шаг 1 LUD-03 (описание withdrawRequest).
#   • withdraw_callback(): шаг 2 LUD-03 (проверка инвойса, резерв, оплата).
#   • status(): состояние claim только на чтение, для опроса страницы claim.
#   • expire_stale(): массовый перевод просроченных pending → expired.
#   • mark_paid() / reopen_claim() / pay_to_lightning_address(): расчёт
#     оператором.
#
# Канон/инварианты:
#   • pending → claimed не более одного раза: один условный UPDATE с
#     ветвлением по rowcount, ДО любой попытки оплаты.
#   • Определённый отказ платежа (ошибка в теле ответа ноды, HTTP-ошибка)
#     возвращает claim в pending с текстом ноды; победитель может повторить.
#   • Отправка без ответа (таймаут, обрыв соединения) оставляет claim
#     зарезервированным, пишет ошибку и шлёт срочный алерт; снять блокировку
#     может только reopen_claim() или mark_paid().
#   • Нарушения протокола дают LnurlError до любых изменений.
#   • status() ничего не пишет.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.core.config_core import Settings, get_settings
from raffle_backend.app.core.errors_core import (
    ConflictError,
    LnurlError,
    NotFoundError,
    PaymentOutcomeUnknownError,
    RaffleError,
    ValidationError,
)
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.security_core import new_claim_token, secrets_equal
from raffle_backend.app.core.system_locks import assert_row_present
from raffle_backend.app.core.utils_core import as_utc, isoformat_or_none, utcnow
from raffle_backend.app.crud.raffles_crud import RafflesCRUD
from raffle_backend.app.crud.tickets_crud import TicketsCRUD
from raffle_backend.app.models import Raffle
from raffle_backend.app.services import message_templates as tpl
from raffle_backend.app.services.notification_service import KIND_PAYMENT_FAILED, NotificationService
from raffle_backend.app.services.payment_service import PaymentExecutor

logger = get_logger(__name__)

REASON_NOT_FOUND = "Claim not found"
REASON_CLAIMED = "Prize already claimed"
REASON_EXPIRED = "Claim expired"
REASON_BAD_K1 = "Invalid k1"
REASON_NO_INVOICE = "Missing invoice"
REASON_NO_AMOUNT = "Invoice must specify an amount"
REASON_OVER_PRIZE = "Invoice amount exceeds prize"
REASON_UNRESOLVED = "Payment outcome unknown; the claim is locked until the operator reconciles it"


@dataclass(frozen=True, slots=True)
class ClaimTicket:
    token: str
    expires_at: datetime


def issue(*, now: Optional[datetime] = None, ttl_days: Optional[int] = None) -> ClaimTicket:
    """Новый секрет claim; прикрепляется к строке Raffle при вставке."""
    now = now or utcnow()
    days = ttl_days if ttl_days is not None else get_settings().CLAIM_TTL_DAYS
    return ClaimTicket(token=new_claim_token(), expires_at=now + timedelta(days=days))


def lnurlw_link(token: str, settings: Optional[Settings] = None) -> str:
    """Форма withdraw-URL по LUD-17: lnurlw://host/path."""
    url = (settings or get_settings()).lnurl_withdraw_url(token)
    return "lnurlw://" + url.split("://", 1)[1]


class ClaimService:
    def __init__(
        self,
        session: AsyncSession,
        payments: PaymentExecutor,
        notifications: Optional[NotificationService] = None,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.payments = payments
        self.notifications = notifications
        self.settings = settings or get_settings()
        self.raffles = RafflesCRUD(session)

    # ------------------------------------------------------------------
    # Общая проверка для обоих шагов LNURL
    # ------------------------------------------------------------------
    async def _claimable(self, token: str, now: datetime) -> Raffle:
        raffle = await self.raffles.get_by_token(token)
        if raffle is None:
            raise LnurlError(REASON_NOT_FOUND)
        if raffle.claim_status == "claimed" or raffle.payment_status == "paid":
            raise LnurlError(REASON_CLAIMED)
        if raffle.claim_status == "expired":
            raise LnurlError(REASON_EXPIRED)
        if now > as_utc(raffle.claim_expires_at):
            if await self.raffles.mark_expired(token, now=now):
                logger.info("[LNURL] claim expired on access", extra={"raffle_id": raffle.id})
            await self.session.commit()
            raise LnurlError(REASON_EXPIRED)
        return raffle

    # ------------------------------------------------------------------
    # LUD-03, шаг 1
    # ------------------------------------------------------------------
    async def withdraw_request(self, token: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        raffle = await self._claimable(token, now)
        amount_msat = int(raffle.prize_amount_sats) * 1000
        return {
            "tag": "withdrawRequest",
            "callback": self.settings.lnurl_callback_url(token),
            "k1": token,
            "minWithdrawable": amount_msat,
            "maxWithdrawable": amount_msat,
            "defaultWithdrawable": amount_msat,
            "defaultDescription": f"{self.settings.PROJECT_NAME} prize, block #{raffle.block_height}",
        }

    # ------------------------------------------------------------------
    # LUD-03, шаг 2
    # ------------------------------------------------------------------
    async def withdraw_callback(
        self,
        token: str,
        *,
        k1: Optional[str],
        pr: Optional[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        if not secrets_equal(token, k1):
            raise LnurlError(REASON_BAD_K1)
        if not pr or not pr.strip():
            raise LnurlError(REASON_NO_INVOICE)
        invoice = pr.strip()

        raffle = await self._claimable(token, now)
        prize = int(raffle.prize_amount_sats)
        raffle_id, block_height = raffle.id, raffle.block_height

        try:
            decoded = await self.payments.decode(invoice)
        except RaffleError as exc:
            raise LnurlError(exc.message) from exc
        if decoded.amount_sats <= 0:
            raise LnurlError(REASON_NO_AMOUNT)
        if decoded.amount_sats > prize:
            raise LnurlError(REASON_OVER_PRIZE)

        reserved = await self.raffles.reserve_claim(token, now=now)
        await self.session.commit()
        if not reserved:
            raise LnurlError(REASON_CLAIMED)
        logger.info("[LNURL] claim reserved, paying", extra={"raffle_id": raffle_id, "amount_sats": decoded.amount_sats})

        try:
            result = await self.payments.pay(invoice)
        except PaymentOutcomeUnknownError as exc:
            await self._hold_unresolved(token, raffle_id, block_height, prize, exc.message, where="LNURL-withdraw")
            raise LnurlError(REASON_UNRESOLVED) from exc
        except RaffleError as exc:
            error = exc.message
            await self.raffles.release_claim(token, error=error)
            await self.session.commit()
            logger.warning("[LNURL] payment failed, claim released", extra={"raffle_id": raffle_id, "error": error})
            if self.notifications is not None:
                await self.notifications.deliver(
                    KIND_PAYMENT_FAILED,
                    tpl.payment_failed(block_height=block_height, prize_sats=prize, error=error, where="LNURL-withdraw"),
                )
            raise LnurlError(error) from exc

        await self.raffles.complete_claim(token, payment_hash=result.payment_hash or decoded.payment_hash, now=utcnow())
        await self.session.commit()
        logger.info("[LNURL] prize paid", extra={"raffle_id": raffle_id, "payment_hash": result.payment_hash})
        return {"status": "OK"}

    async def _hold_unresolved(
        self,
        token: str,
        raffle_id: int,
        block_height: int,
        prize: int,
        error: str,
        *,
        where: str,
    ) -> None:
        # нода ещё может провести первый HTLC: здесь claim не открываем
        await self.raffles.hold_claim(token, error=error)
        await self.session.commit()
        logger.error(
            "[CLAIM] payment outcome unknown, claim held",
            extra={"raffle_id": raffle_id, "error": error, "path": where},
        )
        if self.notifications is not None:
            await self.notifications.alert_urgent(
                tpl.payment_unresolved(
                    raffle_id=raffle_id,
                    block_height=block_height,
                    prize_sats=prize,
                    error=error,
                    where=where,
                )
            )

    # ------------------------------------------------------------------
    # Опрос страницы claim / обслуживание
    # ------------------------------------------------------------------
    async def status(self, token: str, *, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        now = now or utcnow()
        raffle = await self.raffles.get_by_token(token)
        if raffle is None:
            return None
        state = raffle.claim_status
        if state == "pending" and now > as_utc(raffle.claim_expires_at):
            state = "expired"
        return {
            "status": state,
            "claimedAt": isoformat_or_none(raffle.claimed_at),
            "prizeSats": int(raffle.prize_amount_sats),
            "expiresAt": isoformat_or_none(raffle.claim_expires_at),
            "blockHeight": int(raffle.block_height),
            "lnurl": lnurlw_link(token, self.settings),
        }

    async def expire_stale(self, *, now: Optional[datetime] = None) -> int:
        expired = await self.raffles.expire_stale(now=now or utcnow())
        await self.session.commit()
        if expired:
            logger.info("[CLAIM] stale claims expired", extra={"count": expired})
        return expired

    # ------------------------------------------------------------------
    # Расчёт оператором
    # ------------------------------------------------------------------
    async def _get_unpaid(self, raffle_id: int) -> Raffle:
        raffle = await self.raffles.get(raffle_id)
        if raffle is None:
            raise NotFoundError("Raffle not found", details={"raffleId": raffle_id})
        if raffle.payment_status == "paid":
            raise ConflictError("Raffle already paid", details={"raffleId": raffle_id})
        return raffle

    async def mark_paid(
        self,
        raffle_id: int,
        *,
        payment_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Raffle:
        """Фиксирует приз, выплаченный вне движка (например, вручную с ноды)."""
        await self._get_unpaid(raffle_id)
        updated = await self.raffles.mark_paid(raffle_id, payment_hash=payment_hash, now=now or utcnow())
        await self.session.commit()
        if not updated:
            raise ConflictError("Raffle already paid", details={"raffleId": raffle_id})
        logger.info("[CLAIM] raffle marked paid by operator", extra={"raffle_id": raffle_id})
        return assert_row_present(await self.raffles.get(raffle_id), what=f"Raffle {raffle_id}")

    async def reopen_claim(self, raffle_id: int) -> Raffle:
        """
        Возвращает удержанный claim в pending, после того как оператор
        убедился на ноде, что прежний платёж не прошёл.
        """
        raffle = await self._get_unpaid(raffle_id)
        if raffle.claim_status != "claimed" or not raffle.payment_error:
            raise ConflictError(
                "Claim is not held (not reserved, or a payment is still in flight)",
                details={"raffleId": raffle_id, "claimStatus": raffle.claim_status},
            )
        reopened = await self.raffles.release_claim(raffle.claim_token, error=raffle.payment_error)
        await self.session.commit()
        if not reopened:
            raise ConflictError("Claim changed concurrently", details={"raffleId": raffle_id})
        logger.info("[CLAIM] held claim reopened by operator", extra={"raffle_id": raffle_id})
        return assert_row_present(await self.raffles.get(raffle_id), what=f"Raffle {raffle_id}")

    async def pay_to_lightning_address(self, raffle_id: int) -> Raffle:
        """
        Платит приз на lightning address выигрышного билета. Сначала claim
        резервируется, чтобы путь LNURL не оплатил тот же приз; при отказе
        claim освобождается, а розыгрыш помечается failed для ручного разбора.
        """
        raffle = await self._get_unpaid(raffle_id)
        ticket = await TicketsCRUD(self.session).get(raffle.winning_ticket_id) if raffle.winning_ticket_id else None
        address = ticket.lightning_address if ticket is not None else None
        if not address:
            raise ValidationError("Winner has no lightning address", details={"raffleId": raffle_id})

        token, prize, block_height = raffle.claim_token, int(raffle.prize_amount_sats), raffle.block_height
        reserved = await self.raffles.reserve_manual_payment(raffle_id)
        await self.session.commit()
        if not reserved:
            raise ConflictError(
                "Claim is not pending (already claimed, expired or in flight)",
                details={"raffleId": raffle_id, "claimStatus": raffle.claim_status},
            )

        try:
            result = await self.payments.pay_lightning_address(
                address,
                prize,
                f"{self.settings.PROJECT_NAME} prize, block #{block_height}",
            )
        except PaymentOutcomeUnknownError as exc:
            await self._hold_unresolved(token, raffle_id, block_height, prize, exc.message, where="lightning address")
            raise
        except RaffleError as exc:
            await self.raffles.release_claim(token, error=exc.message)
            await self.raffles.mark_payment_failed(raffle_id, error=exc.message)
            await self.session.commit()
            logger.warning("[CLAIM] lightning address payout failed", extra={"raffle_id": raffle_id, "error": exc.message})
            if self.notifications is not None:
                await self.notifications.deliver(
                    KIND_PAYMENT_FAILED,
                    tpl.payment_failed(block_height=block_height, prize_sats=prize, error=exc.message, where="lightning address"),
                )
            raise

        await self.raffles.complete_claim(token, payment_hash=result.payment_hash, now=utcnow())
        await self.session.commit()
        logger.info("[CLAIM] prize paid to lightning address", extra={"raffle_id": raffle_id, "payment_hash": result.payment_hash})
        return assert_row_present(await self.raffles.get(raffle_id), what=f"Raffle {raffle_id}")


__all__ = [
    "ClaimTicket",
    "ClaimService",
    "issue",
    "lnurlw_link",
    "REASON_NOT_FOUND",
    "REASON_CLAIMED",
    "REASON_EXPIRED",
    "REASON_BAD_K1",
    "REASON_NO_INVOICE",
    "REASON_NO_AMOUNT",
    "REASON_OVER_PRIZE",
    "REASON_UNRESOLVED",
]
