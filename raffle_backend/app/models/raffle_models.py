# -*- coding: utf-8 -*-
# raffle_backend/app/models/raffle_models.py
# =============================================================================
# Назначение:
#   SQLAlchemy-модели блочного розыгрыша: билеты, рассчитанные розыгрыши
#   (с под-состоянием claim) и key/value-таблица settings, где лежат баланс
#   фонда, watermark-и и отложенное уведомление.
#
# Канон/инварианты:
#   • Один Raffle на ключ цикла: UNIQUE(block_height).
#   • Claim-токены уникальные секреты: UNIQUE(claim_token).
#   • Суммы в целых сатоши, не отрицательные (CHECK).
#   • Статусные колонки: закрытые строковые enum-ы под CHECK-ограничениями.
#
# Запреты:
#   • Никакой бизнес-логики, только структура.
#   • Только переносимые типы: одна metadata для PostgreSQL и SQLite.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    TIMESTAMP,
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database_core import Base

# -----------------------------------------------------------------------------
# Статусные enum-ы (строковые значения)
# -----------------------------------------------------------------------------
PAYMENT_STATUS_ENUM = ("pending", "paid", "failed")
CLAIM_STATUS_ENUM = ("pending", "claimed", "expired")


class Ticket(Base):
    """
    Билет розыгрыша. Пишется подсистемой приёма заявок; движок только читает
    валидные билеты одного цикла в порядке id (этот порядок и адресует
    выигрышный индекс).
    """

    __tablename__ = "tickets"
    __table_args__ = (
        Index("ix_tickets_block_valid_id", "raffle_block", "is_valid", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # e-mail или lightning address участника, как прислали
    owner_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    owner_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lightning_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    raffle_block: Mapped[int] = mapped_column(Integer, nullable=False)
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    submitted_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class Raffle(Base):
    """
    Рассчитанный цикл. Создаётся один раз при коммите; дальше пишутся только
    метаданные платежа и claim.
    """

    __tablename__ = "raffles"
    __table_args__ = (
        UniqueConstraint("block_height", name="uq_raffles_block_height"),
        UniqueConstraint("claim_token", name="uq_raffles_claim_token"),
        CheckConstraint(f"payment_status IN {PAYMENT_STATUS_ENUM}", name="raffles_payment_status_check"),
        CheckConstraint(f"claim_status IN {CLAIM_STATUS_ENUM}", name="raffles_claim_status_check"),
        CheckConstraint("prize_amount_sats >= 0", name="raffles_prize_nonneg"),
        CheckConstraint("fund_balance_before >= 0", name="raffles_fund_before_nonneg"),
        CheckConstraint("total_tickets > 0", name="raffles_total_tickets_pos"),
        Index("ix_raffles_claim_status_expires", "claim_status", "claim_expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # ключ цикла и данные цепи, из которых выведен победитель
    block_height: Mapped[int] = mapped_column(Integer, nullable=False)
    block_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    winning_index: Mapped[int] = mapped_column(Integer, nullable=False)
    winning_ticket_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tickets.id", ondelete="RESTRICT"), nullable=False
    )

    prize_amount_sats: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fund_balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # платёж
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    payment_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # claim
    claim_token: Mapped[str] = mapped_column(String(64), nullable=False)
    claim_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    claim_expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class Setting(Base):
    """
    Строка key/value. Значения: десятичные целые или небольшие JSON-документы;
    условные UPDATE по `value` дают compare-and-set.
    """

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


__all__ = [
    "PAYMENT_STATUS_ENUM",
    "CLAIM_STATUS_ENUM",
    "Ticket",
    "Raffle",
    "Setting",
]
