# -*- coding: utf-8 -*-
# raffle_backend/app/routes/claim_routes.py
# =============================================================================
# Block Raffle: опрос страницы claim
#   GET /claim/{token}/status → {status, claimedAt, prizeSats, expiresAt, ...}
# Только чтение; неизвестный токен даёт 404.
# =============================================================================
from __future__ import annotations

from fastapi import APIRouter, Depends

from raffle_backend.app.core.errors_core import NotFoundError
from raffle_backend.app.deps import get_claim_service
from raffle_backend.app.schemas.raffle_schemas import ClaimStatusOut
from raffle_backend.app.services.claim_service import ClaimService

router = APIRouter(prefix="/claim", tags=["claim"])


@router.get("/{token}/status", response_model=ClaimStatusOut, summary="Claim status poll")
async def claim_status(token: str, claims: ClaimService = Depends(get_claim_service)) -> ClaimStatusOut:
    payload = await claims.status(token)
    if payload is None:
        raise NotFoundError("Claim not found")
    return ClaimStatusOut(**payload)


__all__ = ["router"]
