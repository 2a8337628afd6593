# -*- coding: utf-8 -*-
# raffle_backend/app/services/raffle_info_service.py
# =============================================================================
# Block Raffle: публичная сводка розыгрыша (/api/raffle-info)
# -----------------------------------------------------------------------------
# Назначение:
#   Высота вершины, текущий/следующий блок розыгрыша, обратный отсчёт, билеты
#   следующего розыгрыша, приз при текущем фонде и последний розыгрыш.
#
# Канон/инварианты:
#   • Высота оракула кэшируется в процессе на RAFFLE_INFO_CACHE_SEC; данные
#     базы читаются всегда заново.
#   • Владельцы показываются замаскированными; claim-токены не раскрываются.
# =============================================================================
from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.core.config_core import Settings, get_settings
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import isoformat_or_none, mask_owner
from raffle_backend.app.crud.raffles_crud import RafflesCRUD
from raffle_backend.app.crud.tickets_crud import TicketsCRUD
from raffle_backend.app.integrations.mempool_api import ChainOracle
from raffle_backend.app.services.fund_service import FundLedger
from raffle_backend.app.services.winner_selector import current_cycle, estimate_time

logger = get_logger(__name__)

# (высота, fetched_at по monotonic)
_HEIGHT_CACHE: Dict[str, Tuple[int, float]] = {}


def reset_cache() -> None:
    _HEIGHT_CACHE.clear()


class RaffleInfoService:
    def __init__(self, session: AsyncSession, oracle: ChainOracle, *, settings: Optional[Settings] = None):
        self.session = session
        self.oracle = oracle
        self.settings = settings or get_settings()

    async def _height(self) -> int:
        ttl = self.settings.RAFFLE_INFO_CACHE_SEC
        cached = _HEIGHT_CACHE.get("tip")
        if cached is not None and time.monotonic() - cached[1] < ttl:
            return cached[0]
        height = await self.oracle.get_height()
        _HEIGHT_CACHE["tip"] = (height, time.monotonic())
        return height

    async def overview(self) -> Dict[str, Any]:
        """OracleUnavailableError пробрасывается (503), если высоты нет в кэше."""
        height = await self._height()
        cycle_blocks = self.settings.RAFFLE_CYCLE_BLOCKS
        current = current_cycle(height, cycle_blocks)
        next_block = current + cycle_blocks
        remaining = next_block - height

        tickets = TicketsCRUD(self.session)
        fund = FundLedger(self.session)
        raffles = RafflesCRUD(self.session)

        latest = await raffles.latest()
        last_raffle: Optional[Dict[str, Any]] = None
        if latest is not None:
            winner = await tickets.get(latest.winning_ticket_id) if latest.winning_ticket_id else None
            last_raffle = {
                "blockHeight": int(latest.block_height),
                "totalTickets": int(latest.total_tickets),
                "winningIndex": int(latest.winning_index),
                "winner": mask_owner(winner.owner_ref) if winner is not None else None,
                "prizeSats": int(latest.prize_amount_sats),
                "paymentStatus": latest.payment_status,
                "claimStatus": latest.claim_status,
                "createdAt": isoformat_or_none(latest.created_at),
            }

        return {
            "currentBlockHeight": height,
            "currentRaffleBlock": current,
            "nextRaffleBlock": next_block,
            "blocksUntilNext": remaining,
            "timeEstimate": estimate_time(remaining),
            "ticketCount": await tickets.count_valid_for_block(next_block),
            "nextPrizeSats": await fund.next_prize(),
            "fundBalanceSats": await fund.balance(),
            "lastRaffle": last_raffle,
        }


__all__ = ["RaffleInfoService", "reset_cache"]
