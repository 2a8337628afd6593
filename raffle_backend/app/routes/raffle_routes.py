# -*- coding: utf-8 -*-
# raffle_backend/app/routes/raffle_routes.py
# =============================================================================
# Block Raffle: публичная сводка розыгрыша
#   GET /api/raffle-info
# Недоступность оракула даёт 503 (OracleUnavailableError), если в кэше нет
# свежей высоты.
# =============================================================================
from __future__ import annotations

from fastapi import APIRouter, Depends

from raffle_backend.app.deps import get_raffle_info_service
from raffle_backend.app.schemas.raffle_schemas import RaffleInfoOut
from raffle_backend.app.services.raffle_info_service import RaffleInfoService

router = APIRouter(prefix="/api", tags=["raffle"])


@router.get("/raffle-info", response_model=RaffleInfoOut, summary="Raffle overview")
async def raffle_info(info: RaffleInfoService = Depends(get_raffle_info_service)) -> RaffleInfoOut:
    return RaffleInfoOut(**(await info.overview()))


__all__ = ["router"]
