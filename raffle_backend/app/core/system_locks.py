# -*- coding: utf-8 -*-
# raffle_backend/app/core/system_locks.py
# =============================================================================
# Назначение:
#   Жёсткие проверки инвариантов движка розыгрыша. Срабатывание здесь означает
#   ошибку движка (или испорченное состояние), а не ошибку пользователя:
#   • призовой фонд не уходит в минус;
#   • списание из фонда не более одного раза на цикл, по возрастанию;
#   • watermark-и не двигаются назад;
#   • выигрышный индекс лежит внутри диапазона билетов.
#
# Защиты:
#   • Каждая проверка бросает InvariantViolation с понятным текстом.
#   • startup_check() проверяет конфигурацию до старта воркеров.
#
# Запреты:
#   • Никакой бизнес-логики. Только проверки.
# =============================================================================

from __future__ import annotations

from typing import Optional, TypeVar

from raffle_backend.app.core.config_core import Settings
from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class InvariantViolation(RuntimeError):
    """
    Нарушен инвариант движка.

    • Это ошибка ПРОЕКТА, а не пользователя.
    • Верхний слой логирует и алертит; повторять нельзя.
    """


# -----------------------------------------------------------------------------
# Публичные проверки для сервисов
# -----------------------------------------------------------------------------
def assert_non_negative_balance(balance_sats: int, *, where: str = "fund") -> None:
    if balance_sats < 0:
        raise InvariantViolation(
            f"{where} balance would become negative: {balance_sats} sats.",
        )


def assert_debit_not_replayed(
    cycle_key: int,
    last_debited_cycle: Optional[int],
) -> None:
    """
    Списание привязано к циклу, который оно оплачивает. Повторное списание
    за тот же или более старый цикл означает, что коммит прошёл дважды.
    """
    if last_debited_cycle is not None and cycle_key <= last_debited_cycle:
        raise InvariantViolation(
            "Replayed fund debit: "
            f"cycle={cycle_key} last_debited={last_debited_cycle}.",
        )


def assert_watermark_advance(name: str, current: Optional[int], new_value: int) -> None:
    if current is not None and new_value < current:
        raise InvariantViolation(
            f"Watermark {name} cannot move backwards: {current} -> {new_value}.",
        )


def assert_winner_in_range(index: Optional[int], ticket_count: int) -> int:
    if index is None or not 0 <= index < ticket_count:
        raise InvariantViolation(
            f"Winning index {index} outside ticket range 0..{ticket_count - 1}.",
        )
    return index


def assert_row_present(row: Optional[T], *, what: str) -> T:
    """Строка, только что записанная этой транзакцией, обязана читаться обратно."""
    if row is None:
        raise InvariantViolation(f"{what} vanished right after being written.")
    return row


# -----------------------------------------------------------------------------
# Стартовая проверка
# -----------------------------------------------------------------------------
def startup_check(settings_obj: Settings) -> None:
    """
    Проверка конфигурации перед стартом вотчера.

    Окно предупреждения обязано помещаться в цикл, иначе каждый тик оказался бы
    "внутри окна" и семантика warning-watermark сломалась бы.
    """
    if settings_obj.RAFFLE_WARNING_BLOCKS >= settings_obj.RAFFLE_CYCLE_BLOCKS:
        raise InvariantViolation(
            "RAFFLE_WARNING_BLOCKS must be smaller than RAFFLE_CYCLE_BLOCKS "
            f"({settings_obj.RAFFLE_WARNING_BLOCKS} >= {settings_obj.RAFFLE_CYCLE_BLOCKS}).",
        )
    if settings_obj.LN_FEE_LIMIT_SATS < 0:
        raise InvariantViolation("LN_FEE_LIMIT_SATS must not be negative.")
    logger.info(
        "System locks passed",
        extra={
            "cycle_blocks": settings_obj.RAFFLE_CYCLE_BLOCKS,
            "warning_blocks": settings_obj.RAFFLE_WARNING_BLOCKS,
        },
    )


__all__ = [
    "InvariantViolation",
    "assert_non_negative_balance",
    "assert_debit_not_replayed",
    "assert_watermark_advance",
    "assert_winner_in_range",
    "assert_row_present",
    "startup_check",
]
