# -*- coding: utf-8 -*-
# raffle_backend/app/core/__init__.py
# =============================================================================
# Назначение:
#   Точка входа ядра: настройки, инициализация логирования, стартовые
#   проверки инвариантов и диагностическая сводка для /health и планировщика.
#
# Канон/инварианты:
#   • config_core.get_settings() единственный источник конфигурации.
#   • Здесь не импортируются логика розыгрыша и тяжёлые слои (CRUD/сервисы).
# =============================================================================

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from .config_core import get_settings
from .logging_core import get_logger
from . import system_locks

CORE_VERSION = "1.0.0"

logger = get_logger(__name__)


def boot_core() -> Dict[str, Any]:
    """
    Выполняет стартовые проверки и возвращает диагностическую сводку:
    timestamp_utc, core_version, health (core_health()) и locks.

    Нарушения инвариантов попадают в отчёт, а не бросаются: HTTP API
    продолжает обслуживать claim, пока оператор чинит конфигурацию.
    """
    ts = datetime.now(timezone.utc).isoformat()
    settings = get_settings()
    logger.info("Raffle core boot: version=%s env=%s", CORE_VERSION, settings.env_normalized)

    health = core_health()
    try:
        system_locks.startup_check(settings)
        locks: Dict[str, Any] = {"ok": True, "error": None}
    except system_locks.InvariantViolation as exc:
        logger.error("System locks did not pass: %s", exc)
        locks = {"ok": False, "error": str(exc)}

    if not health.get("ok"):
        logger.warning("Core health warnings: %s", health.get("errors"))

    return {
        "timestamp_utc": ts,
        "core_version": CORE_VERSION,
        "health": health,
        "locks": locks,
    }


def core_health() -> Dict[str, Any]:
    """
    Быстрый отчёт о конфигурации: { ok, errors, snapshot }.
    В snapshot нет секретов.
    """
    settings = get_settings()
    errors: List[str] = []

    if not settings.DATABASE_URL:
        errors.append("DATABASE_URL must be set.")
    if not settings.MEMPOOL_API_URLS:
        errors.append("MEMPOOL_API_URLS must contain at least one endpoint.")
    if not settings.lightning_configured:
        errors.append("LND_REST_URL and LND_MACAROON must be set to pay prizes.")
    if not settings.ADMIN_API_KEY:
        errors.append("ADMIN_API_KEY must be set for operator routes.")

    return {"ok": not errors, "errors": errors, "snapshot": settings.debug_dump()}


__all__ = [
    "CORE_VERSION",
    "get_settings",
    "logger",
    "boot_core",
    "core_health",
]
