# -*- coding: utf-8 -*-
# raffle_backend/app/schemas/__init__.py
# =============================================================================
# Фасад Pydantic-схем:
#     from raffle_backend.app.schemas import RaffleOut, TicketIn, ...
# Только декларативные модели; без бизнес-логики и доступа к базе.
# =============================================================================

from __future__ import annotations

from .raffle_schemas import *  # noqa: F401,F403
from .raffle_schemas import __all__ as _raffle_all

__all__ = list(_raffle_all)
