# -*- coding: utf-8 -*-
# raffle_backend/app/routes/lnurl_routes.py
# =============================================================================
# Block Raffle: эндпоинты LNURL-withdraw (LUD-03) для получения приза
# -----------------------------------------------------------------------------
#   GET /lnurl/withdraw/{token}            → описание withdrawRequest
#   GET /lnurl/withdraw/{token}/callback   → оплата присланного инвойса
#
# Кошельки читают тело, а не статус: любая ошибка протокола это
# HTTP 200 {"status": "ERROR", "reason": ...} (обработчик LnurlError).
# =============================================================================
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.deps import get_claim_service
from raffle_backend.app.services.claim_service import ClaimService

logger = get_logger(__name__)
router = APIRouter(prefix="/lnurl", tags=["lnurl"])


@router.get("/withdraw/{token}", summary="LNURL-withdraw: withdrawRequest")
async def withdraw_request(
    token: str,
    claims: ClaimService = Depends(get_claim_service),
) -> Dict[str, Any]:
    return await claims.withdraw_request(token)


@router.get("/withdraw/{token}/callback", summary="LNURL-withdraw: submit invoice")
async def withdraw_callback(
    token: str,
    k1: Optional[str] = Query(None),
    pr: Optional[str] = Query(None, description="BOLT11 invoice"),
    claims: ClaimService = Depends(get_claim_service),
) -> Dict[str, Any]:
    return await claims.withdraw_callback(token, k1=k1, pr=pr)


__all__ = ["router"]
