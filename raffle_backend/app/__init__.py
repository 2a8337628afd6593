# ==============================================================================
# Block Raffle: фабрика FastAPI-приложения
# ------------------------------------------------------------------------------
# Назначение: собирает HTTP API (LNURL-withdraw, статус claim, сводка
# розыгрыша, API оператора) с корреляционными id и доменными обработчиками ошибок.
#
# Канон/инварианты:
#   • create_app() без побочных эффектов, кроме логов: ни планировщик, ни
#     polling бота внутри HTTP-процесса не запускаются.
#   • Стартовые проверки попадают в отчёт и не роняют процесс: claim
#     работают, пока оператор чинит конфигурацию.
# ==============================================================================
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .core import boot_core, core_health
from .core.config_core import get_settings
from .core.database_core import db_ping
from .core.errors_core import setup_exception_handlers
from .core.logging_core import CorrelationIdMiddleware, get_logger
from .deps import close_clients
from .models import models_health
from .routes import register
from .schemas.raffle_schemas import HealthOut

logger = get_logger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    report = boot_core()
    if not report["locks"]["ok"]:
        logger.error("Start-up invariant check failed: %s", report["locks"]["error"])
    yield
    await close_clients()


def create_app() -> FastAPI:
    """Создаёт FastAPI-приложение с middleware, обработчиками и роутерами."""

    settings = get_settings()
    app = FastAPI(title=settings.PROJECT_NAME, version=settings.APP_VERSION, lifespan=_lifespan)
    app.add_middleware(CorrelationIdMiddleware)
    setup_exception_handlers(app)
    register(app)

    @app.get("/health", response_model=HealthOut, tags=["health"])
    async def health() -> HealthOut:
        """Живость процесса, доступность базы и сводка конфигурации."""

        database = await db_ping()
        core = core_health()
        models = models_health()
        return HealthOut(
            status="ok" if database and models["ok"] else "degraded",
            database=database,
            core=core,
            models={"ok": models["ok"], "missing_tables": models["missing_tables"]},
        )

    logger.info("FastAPI app initialised (env=%s)", settings.env_normalized)
    return app


__all__ = ["create_app"]
