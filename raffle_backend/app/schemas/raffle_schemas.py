# -*- coding: utf-8 -*-
# raffle_backend/app/schemas/raffle_schemas.py
# =============================================================================
# Block Raffle: Pydantic DTO HTTP API
# -----------------------------------------------------------------------------
# Публичные ответы сохраняют camelCase-ключи, которые читают кошельки и
# страница claim; админские схемы в snake_case, как весь админ-API.
# Без бизнес-логики: только декларативные модели и валидаторы ввода.
# =============================================================================
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from raffle_backend.app.core.utils_core import isoformat_or_none, mask_owner

_LIGHTNING_ADDRESS = re.compile(r"^[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}$", re.IGNORECASE)


# =============================================================================
# Публичные
# -----------------------------------------------------------------------------
class LastRaffleOut(BaseModel):
    blockHeight: int
    totalTickets: int
    winningIndex: int
    winner: Optional[str] = None
    prizeSats: int
    paymentStatus: str
    claimStatus: str
    createdAt: Optional[str] = None


class RaffleInfoOut(BaseModel):
    currentBlockHeight: int
    currentRaffleBlock: int
    nextRaffleBlock: int
    blocksUntilNext: int
    timeEstimate: str
    ticketCount: int
    nextPrizeSats: int
    fundBalanceSats: int
    lastRaffle: Optional[LastRaffleOut] = None


class ClaimStatusOut(BaseModel):
    status: str
    claimedAt: Optional[str] = None
    prizeSats: int
    expiresAt: Optional[str] = None
    blockHeight: int
    lnurl: str


# =============================================================================
# Админские
# -----------------------------------------------------------------------------
class RaffleOut(BaseModel):
    """Вид одного розыгрыша для оператора (claim-токен не раскрывается)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    block_height: int
    block_hash: str
    total_tickets: int
    winning_index: int
    winning_ticket_id: Optional[int] = None
    winner: Optional[str] = None
    prize_amount_sats: int
    fund_balance_before: int
    payment_status: str
    payment_hash: Optional[str] = None
    payment_error: Optional[str] = None
    paid_at: Optional[str] = None
    claim_status: str
    claim_expires_at: Optional[str] = None
    claimed_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, raffle: Any, owner_ref: Optional[str] = None) -> "RaffleOut":
        return cls(
            id=raffle.id,
            block_height=raffle.block_height,
            block_hash=raffle.block_hash,
            total_tickets=raffle.total_tickets,
            winning_index=raffle.winning_index,
            winning_ticket_id=raffle.winning_ticket_id,
            winner=mask_owner(owner_ref),
            prize_amount_sats=raffle.prize_amount_sats,
            fund_balance_before=raffle.fund_balance_before,
            payment_status=raffle.payment_status,
            payment_hash=raffle.payment_hash,
            payment_error=raffle.payment_error,
            paid_at=isoformat_or_none(raffle.paid_at),
            claim_status=raffle.claim_status,
            claim_expires_at=isoformat_or_none(raffle.claim_expires_at),
            claimed_at=isoformat_or_none(raffle.claimed_at),
            created_at=isoformat_or_none(raffle.created_at),
        )


class RaffleListOut(BaseModel):
    items: List[RaffleOut]
    next_cursor: Optional[int] = Field(None, description="Pass as ?cursor= for the next page")


class NextRaffleOut(BaseModel):
    current_height: int
    next_raffle_block: int
    blocks_remaining: int
    time_estimate: str
    ticket_count: int
    fund_balance_sats: int
    next_prize_sats: int
    commit_watermark: Optional[int] = None
    warning_watermark: Optional[int] = None


class RunRaffleIn(BaseModel):
    block_height: int = Field(..., ge=0, description="Cycle boundary block to settle")
    force: bool = Field(False, description="Re-run a cycle that was skipped")


class CommitOutcomeOut(BaseModel):
    status: str
    block_height: int
    raffle_id: Optional[int] = None
    winning_index: Optional[int] = None
    winning_ticket_id: Optional[int] = None
    prize_sats: Optional[int] = None
    total_tickets: int = 0


class TickOut(BaseModel):
    status: str
    height: Optional[int] = None
    cycle: Optional[int] = None
    next_block: Optional[int] = None
    blocks_remaining: Optional[int] = None
    warning_sent: bool = False
    commit: Optional[CommitOutcomeOut] = None


class MarkPaidIn(BaseModel):
    payment_hash: Optional[str] = Field(None, max_length=128)


class FundCreditIn(BaseModel):
    amount_sats: int = Field(..., gt=0)


class FundOut(BaseModel):
    balance_sats: int
    next_prize_sats: int
    last_debited_cycle: Optional[int] = None


class SettingOut(BaseModel):
    key: str
    value: str
    updated_at: Optional[str] = None


class AdminChatIn(BaseModel):
    chat_id: str = Field(..., min_length=1, max_length=64)

    @field_validator("chat_id")
    @classmethod
    def _v_chat_id(cls, value: str) -> str:
        value = value.strip()
        if not value.lstrip("-").isdigit() and not value.startswith("@"):
            raise ValueError("chat_id must be a numeric id or an @channel name")
        return value


class AdminChatsOut(BaseModel):
    configured: List[str]
    stored: List[str]


class TicketIn(BaseModel):
    raffle_block: int = Field(..., ge=0)
    owner_ref: Optional[str] = Field(None, max_length=255)
    owner_chat_id: Optional[str] = Field(None, max_length=64)
    lightning_address: Optional[str] = Field(None, max_length=255)

    @field_validator("lightning_address")
    @classmethod
    def _v_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        value = value.strip().lower()
        if not _LIGHTNING_ADDRESS.match(value):
            raise ValueError("lightning_address must look like user@domain.tld")
        return value


class TicketOut(BaseModel):
    id: int
    raffle_block: int
    owner: Optional[str] = None
    is_valid: bool
    notification: str


class PaymentOut(BaseModel):
    ok: bool
    raffle_id: int
    payment_status: str
    payment_hash: Optional[str] = None
    error: Optional[str] = None


class LightningStatusOut(BaseModel):
    configured: bool
    reason: Optional[str] = None
    alias: Optional[str] = None
    pubkey: Optional[str] = None
    synced: Optional[bool] = None
    blockHeight: Optional[int] = None
    channelBalanceSats: Optional[int] = None
    remoteBalanceSats: Optional[int] = None


class HealthOut(BaseModel):
    status: str
    database: bool
    core: Dict[str, Any]
    models: Dict[str, Any]


__all__ = [
    "LastRaffleOut",
    "RaffleInfoOut",
    "ClaimStatusOut",
    "RaffleOut",
    "RaffleListOut",
    "NextRaffleOut",
    "RunRaffleIn",
    "CommitOutcomeOut",
    "TickOut",
    "MarkPaidIn",
    "FundCreditIn",
    "FundOut",
    "SettingOut",
    "AdminChatIn",
    "AdminChatsOut",
    "TicketIn",
    "TicketOut",
    "PaymentOut",
    "LightningStatusOut",
    "HealthOut",
]
