# -*- coding: utf-8 -*-
# raffle_backend/app/crud/settings_crud.py
# =============================================================================
# Назначение:
#   • Key/value-таблица settings: get, set, insert-if-absent, compare-and-set,
#     условное удаление, список.
#
# Канон/инварианты:
#   • compare_and_set() это ОДИН условный оператор; bool на выходе это ответ
#     самой базы (rowcount == 1), а не догадка "прочитал и записал".
#   • insert_if_absent() никогда не перезаписывает существующее значение.
#
# Запреты:
#   • Никаких commit: границей транзакции владеет вызывающий.
# =============================================================================
from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy import Select, delete, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.core.utils_core import utcnow
from raffle_backend.app.models import Setting


class SettingsCRUD:
    """Хранилище settings с атомарными условными записями."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> Optional[str]:
        return await self.session.scalar(select(Setting.value).where(Setting.key == key))

    async def get_int(self, key: str, default: int = 0) -> int:
        raw = await self.get(key)
        if raw is None or raw == "":
            return default
        return int(raw)

    async def get_for_update(self, key: str) -> Optional[Setting]:
        """Блокировка строки на PostgreSQL; на SQLite обычное чтение (записи там сериализуются)."""

        stmt: Select[tuple[Setting]] = (
            select(Setting)
            .where(Setting.key == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def list_all(self) -> list[Setting]:
        stmt = select(Setting).order_by(Setting.key.asc()).execution_options(populate_existing=True)
        rows: Iterable[Setting] = await self.session.scalars(stmt)
        return list(rows)

    async def set(self, key: str, value: str) -> None:
        """Безусловный upsert."""

        stmt = (
            update(Setting)
            .where(Setting.key == key)
            .values(value=value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 1:
            return
        if not await self.insert_if_absent(key, value):
            # строка появилась между двумя операторами
            await self.session.execute(stmt)

    async def insert_if_absent(self, key: str, value: str) -> bool:
        """
        INSERT ... ON CONFLICT DO NOTHING. True, если строку создал этот вызов.
        Для диалектов без ON CONFLICT обычный INSERT внутри savepoint;
        дубликат ключа откатывает только savepoint.
        """

        values = {"key": key, "value": value, "updated_at": utcnow()}
        dialect = self._dialect_name()
        if dialect == "postgresql":
            stmt = postgresql.insert(Setting).values(**values).on_conflict_do_nothing(index_elements=["key"])
        elif dialect == "sqlite":
            stmt = sqlite.insert(Setting).values(**values).on_conflict_do_nothing(index_elements=["key"])
        else:
            return await self._insert_in_savepoint(values)
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    def _dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    async def _insert_in_savepoint(self, values: dict) -> bool:
        try:
            async with self.session.begin_nested():
                await self.session.execute(insert(Setting).values(**values))
        except IntegrityError:
            return False
        return True

    async def compare_and_set(self, key: str, expected: Optional[str], new_value: str) -> bool:
        """
        Ставит `key` в `new_value`, только если текущее значение равно `expected`
        (None означает "строки нет"). True, если строка изменилась.
        """

        if expected is None:
            return await self.insert_if_absent(key, new_value)
        stmt = (
            update(Setting)
            .where(Setting.key == key, Setting.value == expected)
            .values(value=new_value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        stmt = (
            delete(Setting)
            .where(Setting.key == key, Setting.value == expected)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def delete(self, key: str) -> bool:
        stmt = delete(Setting).where(Setting.key == key).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount == 1


__all__ = ["SettingsCRUD"]
