"""Фасад CRUD розыгрыша.

======================================================================
Назначение:
    • Экспорт CRUD-классов таблиц розыгрыша (tickets, raffles, settings).
    • Без бизнес-логики и без commit: только доступ к базе.

Канон/инварианты:
    • Условные записи отвечают rowcount базы; сервисы действуют только
      при ответе True.
    • Для списков курсоры вместо OFFSET.
======================================================================
"""

from raffle_backend.app.crud.raffles_crud import RafflesCRUD
from raffle_backend.app.crud.settings_crud import SettingsCRUD
from raffle_backend.app.crud.tickets_crud import TicketsCRUD

__all__ = [
    "RafflesCRUD",
    "SettingsCRUD",
    "TicketsCRUD",
]
