# -*- coding: utf-8 -*-
# raffle_backend/app/services/state_service.py
# =============================================================================
# Block Raffle: персистентное состояние движка поверх таблицы settings
# -----------------------------------------------------------------------------
# Назначение:
#   • WatermarkStore: неубывающие скаляры (warning / commit watermark).
#   • PendingSlot: не более одного отложенного сообщения, побеждает первый.
#   • Counter: подавленные события "new entry", обнуляются при сбросе.
#   • SkipMarkers: циклы, закрытые без билетов.
#
# Канон/инварианты:
#   • Любое изменение это compare-and-set одной строки settings; True значит,
#     что строку изменил ИМЕННО этот вызов, и из конкурентов идёт дальше один.
#   • Каждое успешное изменение сразу коммитится: следующий вызывающий
#     (другой тик, другой процесс) обязан его увидеть.
#
# Запреты:
#   • Не использовать эти помощники внутри транзакции коммита розыгрыша:
#     они коммитят сессию.
# =============================================================================
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.system_locks import assert_watermark_advance
from raffle_backend.app.core.utils_core import utcnow
from raffle_backend.app.crud.settings_crud import SettingsCRUD

logger = get_logger(__name__)

# -----------------------------------------------------------------------------
# Ключи settings
# -----------------------------------------------------------------------------
KEY_FUND = "raffle_fund_sats"
KEY_FUND_LAST_DEBIT = "raffle_fund_last_debit_block"
KEY_WARNING_WATERMARK = "raffle_warning_block"
KEY_COMMIT_WATERMARK = "raffle_commit_block"
KEY_PENDING_MESSAGE = "notify_pending_message"
KEY_PENDING_ENTRIES = "notify_pending_entries"
KEY_SKIPPED_PREFIX = "raffle_skipped:"
KEY_ADMIN_CHATS = "telegram_admin_chats"

_CAS_ATTEMPTS = 8


@dataclass
class PendingMessage:
    recipients: List[str]
    text: str
    kind: str
    queued_at: str = field(default_factory=lambda: utcnow().isoformat())

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "PendingMessage":
        data: Dict[str, Any] = json.loads(raw)
        return cls(
            recipients=[str(r) for r in data.get("recipients") or []],
            text=str(data.get("text") or ""),
            kind=str(data.get("kind") or "unknown"),
            queued_at=str(data.get("queued_at") or ""),
        )


class WatermarkStore:
    """Неубывающие целочисленные watermark-и, сдвигаемые через compare-and-set."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.crud = SettingsCRUD(session)

    async def get(self, name: str) -> Optional[int]:
        raw = await self.crud.get(name)
        return int(raw) if raw not in (None, "") else None

    async def advance(self, name: str, value: int) -> bool:
        """
        Поднимает `name` до `value`. False, если watermark уже не ниже `value`
        или его первым сдвинул конкурентный вызов.
        """
        current_raw = await self.crud.get(name)
        current = int(current_raw) if current_raw not in (None, "") else None
        if current is not None and current >= value:
            await self.session.commit()
            return False
        assert_watermark_advance(name, current, value)

        changed = await self.crud.compare_and_set(name, current_raw, str(int(value)))
        await self.session.commit()
        if changed:
            logger.info(
                "[STATE] watermark advanced",
                extra={"watermark": name, "from": current, "to": value},
            )
        return changed


class PendingSlot:
    """Одно отложенное сообщение. put_if_empty() не заменяет существующее."""

    def __init__(self, session: AsyncSession, key: str = KEY_PENDING_MESSAGE):
        self.session = session
        self.key = key
        self.crud = SettingsCRUD(session)

    async def peek(self) -> Optional[PendingMessage]:
        raw = await self.crud.get(self.key)
        return PendingMessage.from_json(raw) if raw else None

    async def put_if_empty(self, message: PendingMessage) -> bool:
        stored = await self.crud.insert_if_absent(self.key, message.to_json())
        await self.session.commit()
        return stored

    async def take(self) -> Optional[PendingMessage]:
        """Забирает отложенное сообщение; None, если пусто или его забрал конкурент."""

        raw = await self.crud.get(self.key)
        if not raw:
            await self.session.commit()
            return None
        taken = await self.crud.delete_if_equals(self.key, raw)
        await self.session.commit()
        return PendingMessage.from_json(raw) if taken else None


class Counter:
    """Целочисленный счётчик с атомарным инкрементом и обнулением."""

    def __init__(self, session: AsyncSession, key: str = KEY_PENDING_ENTRIES):
        self.session = session
        self.key = key
        self.crud = SettingsCRUD(session)

    async def get(self) -> int:
        return await self.crud.get_int(self.key, 0)

    async def increment(self, by: int = 1) -> int:
        for _ in range(_CAS_ATTEMPTS):
            raw = await self.crud.get(self.key)
            current = int(raw) if raw not in (None, "") else 0
            if await self.crud.compare_and_set(self.key, raw, str(current + by)):
                await self.session.commit()
                return current + by
            await self.session.rollback()
        raise RuntimeError(f"Counter {self.key}: too much contention")

    async def swap_to_zero(self) -> int:
        """Обнуляет счётчик и возвращает прежнее значение."""

        for _ in range(_CAS_ATTEMPTS):
            raw = await self.crud.get(self.key)
            current = int(raw) if raw not in (None, "") else 0
            if current == 0:
                await self.session.commit()
                return 0
            if await self.crud.compare_and_set(self.key, raw, "0"):
                await self.session.commit()
                return current
            await self.session.rollback()
        raise RuntimeError(f"Counter {self.key}: too much contention")


class SkipMarkers:
    """Циклы, закрытые без подходящих билетов."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.crud = SettingsCRUD(session)

    @staticmethod
    def key_for(cycle: int) -> str:
        return f"{KEY_SKIPPED_PREFIX}{int(cycle)}"

    async def is_skipped(self, cycle: int) -> bool:
        return await self.crud.get(self.key_for(cycle)) is not None

    async def mark(self, cycle: int, *, ticket_count: int = 0) -> bool:
        payload = json.dumps({"tickets": ticket_count, "at": utcnow().isoformat()})
        created = await self.crud.insert_if_absent(self.key_for(cycle), payload)
        await self.session.commit()
        return created

    async def clear(self, cycle: int) -> bool:
        removed = await self.crud.delete(self.key_for(cycle))
        await self.session.commit()
        return removed


__all__ = [
    "KEY_FUND",
    "KEY_FUND_LAST_DEBIT",
    "KEY_WARNING_WATERMARK",
    "KEY_COMMIT_WATERMARK",
    "KEY_PENDING_MESSAGE",
    "KEY_PENDING_ENTRIES",
    "KEY_SKIPPED_PREFIX",
    "KEY_ADMIN_CHATS",
    "PendingMessage",
    "WatermarkStore",
    "PendingSlot",
    "Counter",
    "SkipMarkers",
]
