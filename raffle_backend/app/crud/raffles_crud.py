# -*- coding: utf-8 -*-
# raffle_backend/app/crud/raffles_crud.py
# =============================================================================
# Назначение:
#   • Хранение рассчитанных розыгрышей и под-состояния их claim.
#   • Условные переходы claim (pending → claimed → paid, pending → expired)
#     одиночными UPDATE ... WHERE.
#
# Канон/инварианты:
#   • insert() опирается на UNIQUE(block_height): дубликат даёт
#     IntegrityError, и вызывающий откатывает транзакцию.
#   • Каждый переход claim возвращает ответ rowcount базы; действовать по
#     переходу (платить, уведомлять) может только получивший True.
#   • Резерв claim возможен только в pending И до истечения срока.
#
# Запреты:
#   • Никаких commit: границей транзакции владеют сервисы.
#   • Никаких сетевых вызовов (нода, кошелёк).
# =============================================================================
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.models import Raffle


class RafflesCRUD:
    """Строки розыгрышей и атомарные переходы claim."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Чтение
    # ------------------------------------------------------------------
    async def get(self, raffle_id: int) -> Raffle | None:
        stmt = select(Raffle).where(Raffle.id == int(raffle_id)).execution_options(populate_existing=True)
        return await self.session.scalar(stmt)

    async def get_by_block(self, block_height: int) -> Raffle | None:
        stmt = (
            select(Raffle)
            .where(Raffle.block_height == int(block_height))
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def get_by_token(self, claim_token: str) -> Raffle | None:
        stmt = (
            select(Raffle)
            .where(Raffle.claim_token == claim_token)
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def latest(self) -> Raffle | None:
        stmt = select(Raffle).order_by(Raffle.block_height.desc()).limit(1)
        return await self.session.scalar(stmt)

    async def list_recent_cursor(self, *, limit: int, cursor: Optional[int] = None) -> list[Raffle]:
        """Новые первыми (block_height DESC); cursor это последний увиденный block_height."""

        stmt: Select[tuple[Raffle]] = select(Raffle).order_by(Raffle.block_height.desc()).limit(limit)
        if cursor is not None:
            stmt = stmt.where(Raffle.block_height < int(cursor))
        rows: Iterable[Raffle] = await self.session.scalars(stmt)
        return list(rows)

    # ------------------------------------------------------------------
    # Запись
    # ------------------------------------------------------------------
    async def insert(self, raffle: Raffle) -> Raffle:
        """Добавляет и делает flush; IntegrityError на дубликате цикла пробрасывается."""

        self.session.add(raffle)
        await self.session.flush()
        return raffle

    async def reserve_claim(self, claim_token: str, *, now: datetime) -> bool:
        """pending → claimed. Ровно один из конкурентных вызовов получает True."""

        stmt = (
            update(Raffle)
            .where(
                Raffle.claim_token == claim_token,
                Raffle.claim_status == "pending",
                Raffle.claim_expires_at > now,
                Raffle.payment_status != "paid",
            )
            .values(claim_status="claimed", payment_error=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def complete_claim(
        self,
        claim_token: str,
        *,
        payment_hash: Optional[str],
        now: datetime,
    ) -> bool:
        stmt = (
            update(Raffle)
            .where(Raffle.claim_token == claim_token, Raffle.claim_status == "claimed")
            .values(
                claimed_at=now,
                payment_hash=payment_hash,
                payment_status="paid",
                payment_error=None,
                paid_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def release_claim(self, claim_token: str, *, error: str) -> bool:
        """claimed → pending после неудачного платежа; ошибка сохраняется."""

        stmt = (
            update(Raffle)
            .where(
                Raffle.claim_token == claim_token,
                Raffle.claim_status == "claimed",
                Raffle.payment_status != "paid",
            )
            .values(claim_status="pending", payment_error=error)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def hold_claim(self, claim_token: str, *, error: str) -> bool:
        """Оставляет claim зарезервированным и записывает, почему исход платежа неясен."""

        stmt = (
            update(Raffle)
            .where(
                Raffle.claim_token == claim_token,
                Raffle.claim_status == "claimed",
                Raffle.payment_status != "paid",
            )
            .values(payment_error=error)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def mark_expired(self, claim_token: str, *, now: datetime) -> bool:
        stmt = (
            update(Raffle)
            .where(
                Raffle.claim_token == claim_token,
                Raffle.claim_status == "pending",
                Raffle.claim_expires_at <= now,
            )
            .values(claim_status="expired")
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def expire_stale(self, *, now: datetime) -> int:
        stmt = (
            update(Raffle)
            .where(Raffle.claim_status == "pending", Raffle.claim_expires_at <= now)
            .values(claim_status="expired")
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)

    async def mark_paid(self, raffle_id: int, *, payment_hash: Optional[str], now: datetime) -> bool:
        """Расчёт оператором. Уже оплаченный розыгрыш не перезаписывается."""

        stmt = (
            update(Raffle)
            .where(Raffle.id == int(raffle_id), Raffle.payment_status != "paid")
            .values(payment_status="paid", payment_hash=payment_hash, payment_error=None, paid_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def mark_payment_failed(self, raffle_id: int, *, error: str) -> bool:
        stmt = (
            update(Raffle)
            .where(Raffle.id == int(raffle_id), Raffle.payment_status != "paid")
            .values(payment_status="failed", payment_error=error)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def reserve_manual_payment(self, raffle_id: int) -> bool:
        """
        Блокирует путь LNURL, пока оператор платит на lightning address:
        claim pending → claimed.
        """

        stmt = (
            update(Raffle)
            .where(
                Raffle.id == int(raffle_id),
                Raffle.payment_status != "paid",
                Raffle.claim_status == "pending",
            )
            .values(claim_status="claimed", payment_error=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1


__all__ = ["RafflesCRUD"]
