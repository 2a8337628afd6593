# -*- coding: utf-8 -*-
# raffle_backend/app/models/__init__.py
# =============================================================================
# Назначение:
#   Точка входа слоя моделей: declarative Base, все классы моделей и реестр
#   с небольшим отчётом о полноте для /health.
#
# Запреты:
#   • Никакого create_all(): изменения схемы идут через alembic.
# =============================================================================

from __future__ import annotations

import inspect
from typing import Dict, List, Optional, Tuple, Type

from ..core.database_core import Base
from . import raffle_models
from .raffle_models import Raffle, Setting, Ticket

REQUIRED_TABLES = ("tickets", "raffles", "settings")


def _collect_model_classes(module) -> Dict[str, Type[Base]]:
    registry: Dict[str, Type[Base]] = {}
    for name, obj in vars(module).items():
        if inspect.isclass(obj) and issubclass(obj, Base) and hasattr(obj, "__tablename__"):
            registry[name] = obj
    return registry


MODEL_REGISTRY: Dict[str, Type[Base]] = _collect_model_classes(raffle_models)


def get_model(name: str) -> Optional[Type[Base]]:
    """Класс модели по имени в Python: get_model("Raffle") → Raffle."""
    return MODEL_REGISTRY.get(name)


def list_models() -> List[Tuple[str, str]]:
    """Пары (ClassName, __tablename__) всех зарегистрированных моделей."""
    return [
        (cls_name, cls.__tablename__)
        for cls_name, cls in sorted(MODEL_REGISTRY.items(), key=lambda kv: kv[0].lower())
    ]


def models_health() -> Dict[str, object]:
    present_tables = {tbl for _, tbl in list_models()}
    missing = [tbl for tbl in REQUIRED_TABLES if tbl not in present_tables]
    return {"ok": not missing, "missing_tables": missing, "present": list_models()}


__all__ = [
    "Base",
    "Ticket",
    "Raffle",
    "Setting",
    "MODEL_REGISTRY",
    "get_model",
    "list_models",
    "models_health",
]
