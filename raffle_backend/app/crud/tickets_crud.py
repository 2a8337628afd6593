# -*- coding: utf-8 -*-
# raffle_backend/app/crud/tickets_crud.py
# =============================================================================
# Назначение:
#   • Чтение билетов для движка: валидные билеты одного цикла в том порядке,
#     который адресует выигрышный индекс (id ASC).
#
# Канон/инварианты:
#   • В цикле участвуют только билеты с is_valid = TRUE.
#   • Порядок всегда id ASC; выигрышный индекс это позиция в этом списке.
#
# Запреты:
#   • Билеты создаёт и проверяет подсистема приёма заявок; движок их не
#     правит. create() существует для оператора и фикстур.
# =============================================================================
from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.models import Ticket


class TicketsCRUD:
    """Хранилище билетов движка розыгрыша."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, ticket_id: int) -> Ticket | None:
        return await self.session.get(Ticket, int(ticket_id))

    async def list_valid_for_block(self, raffle_block: int) -> list[Ticket]:
        """Валидные билеты цикла, id ASC."""

        stmt: Select[tuple[Ticket]] = (
            select(Ticket)
            .where(Ticket.raffle_block == int(raffle_block), Ticket.is_valid.is_(True))
            .order_by(Ticket.id.asc())
        )
        rows: Iterable[Ticket] = await self.session.scalars(stmt)
        return list(rows)

    async def count_valid_for_block(self, raffle_block: int) -> int:
        stmt = select(func.count(Ticket.id)).where(
            Ticket.raffle_block == int(raffle_block),
            Ticket.is_valid.is_(True),
        )
        return int(await self.session.scalar(stmt) or 0)

    async def create(
        self,
        *,
        raffle_block: int,
        owner_ref: Optional[str] = None,
        owner_chat_id: Optional[str] = None,
        lightning_address: Optional[str] = None,
        is_valid: bool = True,
    ) -> Ticket:
        ticket = Ticket(
            raffle_block=int(raffle_block),
            owner_ref=owner_ref,
            owner_chat_id=owner_chat_id,
            lightning_address=lightning_address,
            is_valid=is_valid,
        )
        self.session.add(ticket)
        await self.session.flush()
        return ticket


__all__ = ["TicketsCRUD"]
