# -*- coding: utf-8 -*-
# raffle_backend/app/routes/__init__.py
# =============================================================================
# Block Raffle: единая точка подключения HTTP-роутеров
# -----------------------------------------------------------------------------
#   • api_router: `router` каждого модуля в фиксированном порядке.
#   • register(app): монтирует api_router в FastAPI-приложение.
#
# Каждый модуль несёт свой префикс ("/lnurl", "/claim", "/api",
# "/api/admin"); здесь только импорт и подключение.
# Модуль, который не импортировался, останавливает старт: LNURL и
# админ-API не опциональны.
# =============================================================================
from __future__ import annotations

from importlib import import_module
from typing import List, Tuple

from fastapi import APIRouter, FastAPI

from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)

ROUTERS_EXPECTED: Tuple[str, ...] = (
    "lnurl_routes",
    "claim_routes",
    "raffle_routes",
    "admin.admin_routes",
)

api_router = APIRouter()
_ATTACHED: List[str] = []


def _include(module_name: str) -> None:
    fqmn = f"raffle_backend.app.routes.{module_name}"
    mod = import_module(fqmn)
    router = getattr(mod, "router", None)
    if not isinstance(router, APIRouter):
        raise RuntimeError(f"{fqmn} does not export router: APIRouter")
    api_router.include_router(router)
    _ATTACHED.append(module_name)


for _name in ROUTERS_EXPECTED:
    _include(_name)


def register(app: FastAPI, prefix: str = "") -> None:
    app.include_router(api_router, prefix=prefix)
    logger.info("routes: registered %s (prefix=%r)", ",".join(_ATTACHED), prefix)


def list_registered_routes() -> List[str]:
    return list(_ATTACHED)


__all__ = ["api_router", "register", "list_registered_routes", "ROUTERS_EXPECTED"]
