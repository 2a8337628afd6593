# -*- coding: utf-8 -*-
# raffle_backend/app/core/database_core.py
# =============================================================================
# Назначение:
#   • Единая точка входа в базу розыгрыша (SQLAlchemy 2.0 async).
#   • Создание и настройка AsyncEngine и async_sessionmaker.
#   • Помощники сессий для FastAPI-роутов, сервисов и планировщика.
#   • Health-пинг и мягкий сброс движка.
#
# Канон/инварианты:
#   • Только async-движок (create_async_engine).
#   • DSN берётся из Settings.database_url_async().
#   • Сессии: expire_on_commit=False и autoflush=False.
#   • Размер пула задаётся только для пуловых диалектов (PostgreSQL);
#     у SQLite остаются умолчания SQLAlchemy.
#
# Запреты:
#   • Никакой логики розыгрыша: только соединения, сессии и общий
#     declarative base моделей.
# =============================================================================

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)
settings = get_settings()


class Base(DeclarativeBase):
    """Declarative base всех моделей розыгрыша (alembic читает его metadata)."""


# -----------------------------------------------------------------------------
# Глобальные объекты: движок и фабрика сессий
# -----------------------------------------------------------------------------
_engine: Optional[AsyncEngine] = None
_SessionFactory: Optional[async_sessionmaker[AsyncSession]] = None
_engine_lock = asyncio.Lock()


def _create_engine() -> AsyncEngine:
    """
    Создаёт новый AsyncEngine из текущих настроек.

    • pool_pre_ping рано находит мёртвые соединения.
    • echo следует DEBUG.
    """
    dsn = settings.database_url_async()
    logger.info("Creating async DB engine", extra={"dsn_set": bool(dsn)})
    kwargs: Dict[str, Any] = {"pool_pre_ping": True, "echo": settings.DEBUG}
    if not dsn.startswith("sqlite"):
        kwargs["pool_size"] = settings.DB_POOL_SIZE
        kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
    return create_async_engine(dsn, **kwargs)


def _create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
        class_=AsyncSession,
    )


async def reset_engine() -> None:
    """
    Пересоздаёт движок и фабрику сессий.

    Используется после серьёзных сбоев соединения. Старый движок закрывается,
    чтобы в пуле не оставалось висящих соединений.
    """
    global _engine, _SessionFactory

    async with _engine_lock:
        old_engine = _engine
        try:
            new_engine = _create_engine()
            _SessionFactory = _create_session_factory(new_engine)
            _engine = new_engine
            logger.info("DB engine has been reset successfully")
        except Exception as exc:
            logger.exception("Failed to reset DB engine", extra={"error": str(exc)})
            if old_engine is not None:
                _engine = old_engine
            raise
        else:
            if old_engine is not None:
                try:
                    await old_engine.dispose()
                except (OperationalError, DBAPIError):
                    logger.warning("Error during old engine dispose", exc_info=True)


def get_engine() -> AsyncEngine:
    """Текущий AsyncEngine; создаётся лениво при первом обращении."""
    global _engine, _SessionFactory

    if _engine is None:
        engine = _create_engine()
        _engine = engine
        _SessionFactory = _create_session_factory(engine)
        logger.info("DB engine lazily initialized")
    assert _engine is not None  # для mypy
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _SessionFactory

    if _SessionFactory is None:
        engine = get_engine()
        _SessionFactory = _create_session_factory(engine)
        logger.info("Session factory initialized")
    assert _SessionFactory is not None  # для mypy
    return _SessionFactory


# -----------------------------------------------------------------------------
# Сессии
# -----------------------------------------------------------------------------
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI-зависимость: одна сессия на запрос.

        SessionDep = Annotated[AsyncSession, Depends(get_db)]

    Коммит на вызывающей стороне; ошибки логируются и пробрасываются дальше.
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception as exc:
        logger.exception("DB session error", extra={"error": str(exc)})
        raise
    finally:
        await session.close()


@asynccontextmanager
async def lifespan_session() -> AsyncIterator[AsyncSession]:
    """
    Контекст сессии для кода вне запроса (тики планировщика, фоновые
    уведомления). При ошибке откат, закрывается всегда.
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


# -----------------------------------------------------------------------------
# Health-check / пинг
# -----------------------------------------------------------------------------
async def db_ping() -> bool:
    """
    True, если `SELECT 1` прошёл; False, если база не отвечает.
    Используется /health и планировщиком перед стартом тиков.
    """
    engine = get_engine()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (OperationalError, DBAPIError, OSError) as exc:
        logger.error(
            "DB ping failed: DB is not reachable",
            extra={"error": str(exc)},
        )
        return False


__all__ = [
    "AsyncSession",
    "AsyncEngine",
    "Base",
    "get_engine",
    "get_session_factory",
    "get_db",
    "lifespan_session",
    "db_ping",
    "reset_engine",
]
