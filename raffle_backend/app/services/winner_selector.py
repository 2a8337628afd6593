# -*- coding: utf-8 -*-
# raffle_backend/app/services/winner_selector.py
# =============================================================================
# Block Raffle: выбор победителя и арифметика циклов
# -----------------------------------------------------------------------------
# Назначение:
#   • Детерминированный индекс победителя из хэша блока: int(hash, 16) % tickets.
#   • Помощники циклов по периоду сложности в 2016 блоков.
#   • Человеческая оценка времени "блоков до следующего розыгрыша".
#
# Канон/инварианты:
#   • Чистые функции: тот же вход, тот же выход, без I/O.
#   • Произвольная точность: в модуле участвует весь 256-битный хэш.
#   • При нуле билетов результат None, иначе в [0, ticket_count - 1].
# =============================================================================
from __future__ import annotations

import string
from typing import Optional

DEFAULT_CYCLE_BLOCKS = 2016
MINUTES_PER_BLOCK = 10

_HEX = frozenset(string.hexdigits)


def _normalize_hash(block_hash: str) -> str:
    value = (block_hash or "").strip()
    if value[:2].lower() == "0x":
        value = value[2:]
    if not value or not set(value) <= _HEX:
        raise ValueError(f"Block hash is not hex: {block_hash!r}")
    return value


def select_winner_index(block_hash: str, ticket_count: int) -> Optional[int]:
    """
    Индекс выигрышного билета в упорядоченном по id списке валидных билетов.

    >>> select_winner_index("0x" + "0" * 63 + "7", 7)
    0
    >>> select_winner_index("ff", 0) is None
    True
    """
    if ticket_count < 0:
        raise ValueError("ticket_count must not be negative")
    if ticket_count == 0:
        return None
    return int(_normalize_hash(block_hash), 16) % ticket_count


def current_cycle(height: int, cycle_blocks: int = DEFAULT_CYCLE_BLOCKS) -> int:
    """Последняя граница цикла не выше `height`."""
    return (int(height) // cycle_blocks) * cycle_blocks


def next_cycle(height: int, cycle_blocks: int = DEFAULT_CYCLE_BLOCKS) -> int:
    return current_cycle(height, cycle_blocks) + cycle_blocks


def blocks_until_next(height: int, cycle_blocks: int = DEFAULT_CYCLE_BLOCKS) -> int:
    return next_cycle(height, cycle_blocks) - int(height)


def estimate_time(blocks: int) -> str:
    """
    Грубая оценка времени из расчёта десять минут на блок, в наибольшей целой
    единице: "~13 days", "~5 hours", "~40 minutes".
    """
    minutes = max(int(blocks), 0) * MINUTES_PER_BLOCK
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"~{days} days"
    if hours > 0:
        return f"~{hours} hours"
    return f"~{minutes} minutes"


__all__ = [
    "DEFAULT_CYCLE_BLOCKS",
    "select_winner_index",
    "current_cycle",
    "next_cycle",
    "blocks_until_next",
    "estimate_time",
]
