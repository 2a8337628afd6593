# -*- coding: utf-8 -*-
"""Окружение Alembic бэкенда розыгрыша (async).

Назначение:
    • Запуск миграций через async SQLAlchemy (asyncpg в продакшене).
    • DSN берётся из config_core, metadata из declarative Base, на котором
      регистрируются модели.

Канон/инварианты:
    • DDL живёт в файлах версий; здесь нет create_all/drop_all.
    • compare_type/compare_server_default держат autogenerate честным для
      BIGINT-колонок сатоши и серверных умолчаний.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.database_core import Base
from raffle_backend.app.models import MODEL_REGISTRY  # noqa: F401  (регистрирует таблицы)

config = context.config
if config.config_file_name:
    fileConfig(config.config_file_name)

settings = get_settings()
db_url = settings.database_url_async()
config.set_main_option("sqlalchemy.url", db_url)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Выдать SQL без подключения к базе."""

    context.configure(
        url=db_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section) or {},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
