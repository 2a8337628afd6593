# -*- coding: utf-8 -*-
# raffle_backend/app/routes/admin/admin_routes.py
# =============================================================================
# Block Raffle: API оператора (/api/admin)
# -----------------------------------------------------------------------------
# Назначение:
#   История розыгрышей и ручное восстановление, расчёт призов (mark-paid,
#   reopen, pay), пополнение фонда, состояние движка, админ-чаты, ручной тик
#   вотчера и регистрация билетов.
#
# Канон/инварианты:
#   • Каждый роут требует X-Admin-Api-Key (сравнение за постоянное время).
#   • Деньги двигаются только через сервисы (FundLedger, ClaimService);
#     роуты не пишут строки розыгрышей и фонда напрямую.
#   • Claim-токены этим API не возвращаются.
# =============================================================================
from __future__ import annotations

from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.core.config_core import Settings
from raffle_backend.app.core.errors_core import ValidationError
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import isoformat_or_none, mask_owner
from raffle_backend.app.crud.raffles_crud import RafflesCRUD
from raffle_backend.app.crud.settings_crud import SettingsCRUD
from raffle_backend.app.crud.tickets_crud import TicketsCRUD
from raffle_backend.app.deps import (
    get_app_settings,
    get_claim_service,
    get_db,
    get_notification_service,
    get_payments,
    get_watcher_service,
    require_admin,
)
from raffle_backend.app.models import Raffle
from raffle_backend.app.schemas.raffle_schemas import (
    AdminChatIn,
    AdminChatsOut,
    CommitOutcomeOut,
    FundCreditIn,
    FundOut,
    LightningStatusOut,
    MarkPaidIn,
    NextRaffleOut,
    PaymentOut,
    RaffleListOut,
    RaffleOut,
    RunRaffleIn,
    SettingOut,
    TicketIn,
    TicketOut,
    TickOut,
)
from raffle_backend.app.services import message_templates as tpl
from raffle_backend.app.services.claim_service import ClaimService
from raffle_backend.app.services.fund_service import FundLedger
from raffle_backend.app.services.notification_service import NotificationService
from raffle_backend.app.services.payment_service import LndPaymentService
from raffle_backend.app.services.state_service import KEY_COMMIT_WATERMARK, KEY_WARNING_WATERMARK, WatermarkStore
from raffle_backend.app.services.watcher_service import WatcherService
from raffle_backend.app.services.winner_selector import current_cycle, estimate_time

logger = get_logger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


async def _raffle_out(db: AsyncSession, raffle: Raffle) -> RaffleOut:
    ticket = await TicketsCRUD(db).get(raffle.winning_ticket_id) if raffle.winning_ticket_id else None
    return RaffleOut.from_row(raffle, ticket.owner_ref if ticket is not None else None)


async def _fund_out(db: AsyncSession) -> FundOut:
    fund = FundLedger(db)
    return FundOut(
        balance_sats=await fund.balance(),
        next_prize_sats=await fund.next_prize(),
        last_debited_cycle=await fund.last_debited_cycle(),
    )


# =============================================================================
# Розыгрыши
# =============================================================================
@router.get("/raffles", response_model=RaffleListOut, summary="Raffle history (newest first)")
async def list_raffles(
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[int] = Query(None, ge=0, description="block_height of the last row seen"),
    db: AsyncSession = Depends(get_db),
) -> RaffleListOut:
    rows = await RafflesCRUD(db).list_recent_cursor(limit=limit, cursor=cursor)
    items = [await _raffle_out(db, r) for r in rows]
    next_cursor = rows[-1].block_height if len(rows) == limit else None
    return RaffleListOut(items=items, next_cursor=next_cursor)


@router.get("/raffle/next", response_model=NextRaffleOut, summary="Next raffle countdown")
async def next_raffle(
    watcher: WatcherService = Depends(get_watcher_service),
    settings: Settings = Depends(get_app_settings),
) -> NextRaffleOut:
    height = await watcher.oracle.get_height()
    next_block = current_cycle(height, settings.RAFFLE_CYCLE_BLOCKS) + settings.RAFFLE_CYCLE_BLOCKS
    remaining = next_block - height
    watermarks = WatermarkStore(watcher.session)
    return NextRaffleOut(
        current_height=height,
        next_raffle_block=next_block,
        blocks_remaining=remaining,
        time_estimate=estimate_time(remaining),
        ticket_count=await watcher.tickets.count_valid_for_block(next_block),
        fund_balance_sats=await watcher.fund.balance(),
        next_prize_sats=await watcher.fund.next_prize(),
        commit_watermark=await watermarks.get(KEY_COMMIT_WATERMARK),
        warning_watermark=await watermarks.get(KEY_WARNING_WATERMARK),
    )


@router.post("/raffle/run", response_model=CommitOutcomeOut, summary="Settle one cycle manually")
async def run_raffle(
    payload: RunRaffleIn,
    watcher: WatcherService = Depends(get_watcher_service),
) -> CommitOutcomeOut:
    logger.info("[ADMIN] manual raffle run requested", extra={"cycle": payload.block_height, "force": payload.force})
    outcome = await watcher.run_manual(payload.block_height, force=payload.force)
    return CommitOutcomeOut(**asdict(outcome))


@router.post("/raffle/{raffle_id}/mark-paid", response_model=RaffleOut, summary="Record an out-of-band payout")
async def mark_paid(
    raffle_id: int,
    payload: MarkPaidIn,
    claims: ClaimService = Depends(get_claim_service),
    db: AsyncSession = Depends(get_db),
) -> RaffleOut:
    raffle = await claims.mark_paid(raffle_id, payment_hash=payload.payment_hash)
    return await _raffle_out(db, raffle)


@router.post("/raffle/{raffle_id}/reopen", response_model=RaffleOut, summary="Reopen a claim whose payment never settled")
async def reopen_claim(
    raffle_id: int,
    claims: ClaimService = Depends(get_claim_service),
    db: AsyncSession = Depends(get_db),
) -> RaffleOut:
    raffle = await claims.reopen_claim(raffle_id)
    return await _raffle_out(db, raffle)


@router.post("/raffle/{raffle_id}/pay", response_model=PaymentOut, summary="Pay the winner's lightning address")
async def pay_raffle(
    raffle_id: int,
    claims: ClaimService = Depends(get_claim_service),
) -> PaymentOut:
    raffle = await claims.pay_to_lightning_address(raffle_id)
    return PaymentOut(
        ok=True,
        raffle_id=raffle.id,
        payment_status=raffle.payment_status,
        payment_hash=raffle.payment_hash,
    )


# =============================================================================
# Lightning / фонд
# =============================================================================
@router.get("/lightning/status", response_model=LightningStatusOut, summary="Lightning node status")
async def lightning_status(payments: LndPaymentService = Depends(get_payments)) -> LightningStatusOut:
    return LightningStatusOut(**(await payments.node_status()))


@router.get("/fund", response_model=FundOut, summary="Prize fund")
async def get_fund(db: AsyncSession = Depends(get_db)) -> FundOut:
    return await _fund_out(db)


@router.post("/fund/credit", response_model=FundOut, summary="Credit the prize fund")
async def credit_fund(payload: FundCreditIn, db: AsyncSession = Depends(get_db)) -> FundOut:
    await FundLedger(db).credit(payload.amount_sats)
    return await _fund_out(db)


# =============================================================================
# Состояние движка
# =============================================================================
@router.get("/settings", response_model=List[SettingOut], summary="Persisted engine state")
async def list_settings(db: AsyncSession = Depends(get_db)) -> List[SettingOut]:
    rows = await SettingsCRUD(db).list_all()
    return [SettingOut(key=r.key, value=r.value, updated_at=isoformat_or_none(r.updated_at)) for r in rows]


@router.post("/watcher/tick", response_model=TickOut, summary="Run one watcher tick now")
async def watcher_tick(watcher: WatcherService = Depends(get_watcher_service)) -> TickOut:
    result = await watcher.tick()
    return TickOut(**asdict(result))


# =============================================================================
# Админ-чаты
# =============================================================================
@router.get("/telegram/chats", response_model=AdminChatsOut, summary="Admin recipients")
async def list_admin_chats(
    notifications: NotificationService = Depends(get_notification_service),
    settings: Settings = Depends(get_app_settings),
) -> AdminChatsOut:
    return AdminChatsOut(configured=list(settings.ADMIN_CHAT_IDS), stored=await notifications.stored_admin_chats())


@router.post("/telegram/chats", response_model=AdminChatsOut, status_code=status.HTTP_201_CREATED, summary="Add admin chat")
async def add_admin_chat(
    payload: AdminChatIn,
    notifications: NotificationService = Depends(get_notification_service),
    settings: Settings = Depends(get_app_settings),
) -> AdminChatsOut:
    stored = await notifications.add_admin_chat(payload.chat_id)
    return AdminChatsOut(configured=list(settings.ADMIN_CHAT_IDS), stored=stored)


@router.delete("/telegram/chats/{chat_id}", response_model=AdminChatsOut, summary="Remove admin chat")
async def remove_admin_chat(
    chat_id: str,
    notifications: NotificationService = Depends(get_notification_service),
    settings: Settings = Depends(get_app_settings),
) -> AdminChatsOut:
    stored = await notifications.remove_admin_chat(chat_id)
    return AdminChatsOut(configured=list(settings.ADMIN_CHAT_IDS), stored=stored)


# =============================================================================
# Билеты
# =============================================================================
@router.post("/tickets", response_model=TicketOut, status_code=status.HTTP_201_CREATED, summary="Register a ticket")
async def create_ticket(
    payload: TicketIn,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
    settings: Settings = Depends(get_app_settings),
) -> TicketOut:
    if payload.raffle_block % settings.RAFFLE_CYCLE_BLOCKS != 0:
        raise ValidationError(
            "raffle_block must be a cycle boundary.",
            details={"cycleBlocks": settings.RAFFLE_CYCLE_BLOCKS},
        )
    ticket = await TicketsCRUD(db).create(
        raffle_block=payload.raffle_block,
        owner_ref=payload.owner_ref,
        owner_chat_id=payload.owner_chat_id,
        lightning_address=payload.lightning_address,
    )
    await db.commit()
    logger.info("[ADMIN] ticket registered", extra={"ticket_id": ticket.id, "raffle_block": ticket.raffle_block})

    outcome = await notifications.notify_new_entry(
        tpl.new_entry(raffle_block=ticket.raffle_block, owner_ref=ticket.owner_ref),
    )
    return TicketOut(
        id=ticket.id,
        raffle_block=ticket.raffle_block,
        owner=mask_owner(ticket.owner_ref),
        is_valid=ticket.is_valid,
        notification=outcome,
    )


__all__ = ["router"]
