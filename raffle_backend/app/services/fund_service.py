# -*- coding: utf-8 -*-
# raffle_backend/app/services/fund_service.py
# =============================================================================
# Block Raffle: книга призового фонда
# -----------------------------------------------------------------------------
# Назначение:
#   • Один целый баланс в сатоши (ключ settings raffle_fund_sats).
#   • credit(): подтверждённые депозиты / пополнения оператором.
#   • debit_half(): приз рассчитанного цикла, floor(balance / 2).
#
# Канон/инварианты:
#   • balance ≥ 0 всегда.
#   • prize = floor(before / 2); after = before - prize (то есть 1 → 0 / 1).
#   • Списание привязано к ключу цикла (raffle_fund_last_debit_block);
#     списание за тот же или более старый цикл это InvariantViolation.
#   • debit_half() не коммитит: работает внутри транзакции коммита розыгрыша
#     и откатывается вместе со вставкой Raffle.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.core.errors_core import ValidationError
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.system_locks import (
    assert_debit_not_replayed,
    assert_non_negative_balance,
)
from raffle_backend.app.crud.settings_crud import SettingsCRUD
from raffle_backend.app.services.state_service import KEY_FUND, KEY_FUND_LAST_DEBIT

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class FundDebit:
    cycle_key: int
    prize: int
    balance_before: int
    balance_after: int


def split_prize(balance: int) -> tuple[int, int]:
    """(приз, остаток) для баланса: 10000 → (5000, 5000), 1 → (0, 1)."""
    assert_non_negative_balance(balance)
    prize = balance // 2
    return prize, balance - prize


class FundLedger:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.crud = SettingsCRUD(session)

    async def balance(self) -> int:
        return await self.crud.get_int(KEY_FUND, 0)

    async def next_prize(self) -> int:
        prize, _ = split_prize(await self.balance())
        return prize

    async def last_debited_cycle(self) -> int | None:
        raw = await self.crud.get(KEY_FUND_LAST_DEBIT)
        return int(raw) if raw not in (None, "") else None

    async def lock(self) -> None:
        """Блокировка строки фонда в транзакции вызывающего (на SQLite ничего не делает)."""
        await self.crud.get_for_update(KEY_FUND)

    async def credit(self, amount_sats: int) -> int:
        """Добавляет `amount_sats` (> 0) и коммитит. Возвращает новый баланс."""

        if amount_sats <= 0:
            raise ValidationError("Credit amount must be positive.", details={"amount_sats": amount_sats})
        row = await self.crud.get_for_update(KEY_FUND)
        before = int(row.value) if row is not None else 0
        after = before + int(amount_sats)
        await self.crud.set(KEY_FUND, str(after))
        await self.session.commit()
        logger.info("[FUND] credited", extra={"amount_sats": amount_sats, "before": before, "after": after})
        return after

    async def debit_half(self, cycle_key: int) -> FundDebit:
        """
        Списывает floor(balance / 2) за `cycle_key`. Вызывающий коммитит (или
        откатывает) вместе со строкой Raffle.
        """

        fund_row = await self.crud.get_for_update(KEY_FUND)
        before = int(fund_row.value) if fund_row is not None else 0
        last_row = await self.crud.get_for_update(KEY_FUND_LAST_DEBIT)
        last = int(last_row.value) if last_row is not None and last_row.value else None
        assert_debit_not_replayed(int(cycle_key), last)

        prize, after = split_prize(before)
        assert_non_negative_balance(after)

        await self.crud.set(KEY_FUND, str(after))
        await self.crud.set(KEY_FUND_LAST_DEBIT, str(int(cycle_key)))
        logger.info(
            "[FUND] debited prize",
            extra={"cycle": cycle_key, "prize": prize, "before": before, "after": after},
        )
        return FundDebit(cycle_key=int(cycle_key), prize=prize, balance_before=before, balance_after=after)


__all__ = ["FundDebit", "FundLedger", "split_prize"]
