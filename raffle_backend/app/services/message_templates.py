# -*- coding: utf-8 -*-
# raffle_backend/app/services/message_templates.py
# =============================================================================
# Block Raffle: тексты сообщений Telegram (HTML parse mode)
# -----------------------------------------------------------------------------
# Любое динамическое значение проходит через html.escape; числа выводятся
# с разделителями тысяч.
# =============================================================================
from __future__ import annotations

from html import escape
from typing import Optional

from raffle_backend.app.core.utils_core import mask_owner


def _owner_display(owner_ref: Optional[str]) -> str:
    masked = mask_owner(owner_ref)
    return escape(masked) if masked else "<i>Anonymous</i>"


def raffle_result(
    *,
    block_height: int,
    total_tickets: int,
    winning_index: int,
    owner_ref: Optional[str],
    prize_sats: int,
    claim_url: str,
    admin_url: str,
) -> str:
    lines = [
        "🎰 <b>Raffle Complete!</b>",
        "",
        f"Block: #{block_height:,}",
        f"Total Tickets: {total_tickets}",
        f"Winning index: {winning_index}",
        f"Winner: {_owner_display(owner_ref)}",
        f"Prize: {prize_sats:,} sats",
        f"Claim link: {escape(claim_url)}",
        "",
        f"Manage at: {escape(admin_url)}",
    ]
    return "\n".join(lines)


def winner_message(*, block_height: int, prize_sats: int, claim_url: str, expires_days: int) -> str:
    return (
        "🏆 <b>You won the block raffle!</b>\n\n"
        f"Block #{block_height:,} picked your ticket.\n"
        f"Prize: {prize_sats:,} sats\n\n"
        f"Open this link with a Lightning wallet to withdraw:\n{escape(claim_url)}\n\n"
        f"The link expires in {expires_days} days."
    )


def raffle_warning(*, next_block: int, blocks_left: int, eta: str, ticket_count: int, next_prize: int) -> str:
    return (
        "⏳ <b>Raffle block approaching</b>\n\n"
        f"Raffle block: #{next_block:,}\n"
        f"Blocks left: {blocks_left} ({escape(eta)})\n"
        f"Tickets so far: {ticket_count}\n"
        f"Prize at current fund: {next_prize:,} sats"
    )


def raffle_skipped(*, block_height: int) -> str:
    return (
        "⚪ <b>Raffle skipped</b>\n\n"
        f"Block #{block_height:,} was mined with no eligible tickets.\n"
        "No raffle was created and the fund is unchanged."
    )


def payment_failed(*, block_height: int, prize_sats: int, error: str, where: str) -> str:
    return (
        "⚠️ <b>Prize payment failed</b>\n\n"
        f"Block: #{block_height:,}\n"
        f"Prize: {prize_sats:,} sats\n"
        f"Path: {escape(where)}\n"
        f"Node said: <code>{escape(error[:500])}</code>\n\n"
        "The claim stays open; the winner may retry."
    )


def payment_unresolved(*, raffle_id: int, block_height: int, prize_sats: int, error: str, where: str) -> str:
    return (
        "🚨 <b>URGENT: prize payment outcome unknown</b>\n\n"
        f"Block: #{block_height:,}\n"
        f"Prize: {prize_sats:,} sats\n"
        f"Path: {escape(where)}\n"
        f"Error: <code>{escape(error[:500])}</code>\n\n"
        "The node gave no answer; the payment may still settle.\n"
        "The claim stays locked. Check the node, then either\n"
        f"POST /api/admin/raffle/{raffle_id}/mark-paid or\n"
        f"POST /api/admin/raffle/{raffle_id}/reopen."
    )


def commit_failed(*, block_height: int, error: str) -> str:
    return (
        "🚨 <b>URGENT: raffle commit failed</b>\n\n"
        f"Cycle block: #{block_height:,}\n"
        f"Error: <code>{escape(error[:500])}</code>\n\n"
        "The commit watermark has advanced; the watcher will NOT retry this cycle.\n"
        "Recover with POST /api/admin/raffle/run."
    )


def entries_summary(count: int) -> str:
    noun = "entry" if count == 1 else "entries"
    return f"📝 <b>{count} new raffle {noun}</b> arrived during quiet hours."


def new_entry(*, raffle_block: int, owner_ref: Optional[str]) -> str:
    return f"🎟 New raffle entry for block #{raffle_block:,} from {_owner_display(owner_ref)}"


__all__ = [
    "raffle_result",
    "winner_message",
    "raffle_warning",
    "raffle_skipped",
    "payment_failed",
    "payment_unresolved",
    "commit_failed",
    "entries_summary",
    "new_entry",
]
