# -*- coding: utf-8 -*-
"""Начальная миграция бэкенда розыгрыша.

Назначение:
    • Создать tickets, raffles и settings с ограничениями и индексами
      (UNIQUE ключа цикла, UNIQUE claim-токена, неотрицательные сатоши).

Канон/инварианты:
    • Таблицы берутся из declarative Base, поэтому миграция не расходится
      с моделями, под которые написана.
    • checkfirst=True: повторный запуск на существующей базе ничего не делает.
"""

from __future__ import annotations

from alembic import op

from raffle_backend.app.core.database_core import Base
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.models import MODEL_REGISTRY

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels = None
depends_on = None

logger = get_logger(__name__)


def upgrade() -> None:
    """Создать все зарегистрированные таблицы."""

    logger.info("Creating raffle tables", extra={"models": sorted(MODEL_REGISTRY)})
    Base.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind(), checkfirst=True)
