# -*- coding: utf-8 -*-
# raffle_backend/app/services/watcher_service.py
# =============================================================================
# Block Raffle: вотчер розыгрыша (предупреждение + коммит ровно один раз)
# -----------------------------------------------------------------------------
# Назначение:
#   Один тик на интервал планировщика:
#     1) прочитать высоту вершины у chain-оракула;
#     2) один раз предупредить операторов, когда блок розыгрыша близко;
#     3) рассчитать цикл, чья граница только что пройдена: выбрать победителя
#        по хэшу граничного блока, списать половину фонда, сохранить Raffle
#        с новым claim и уведомить операторов и победителя.
#   run_manual(): ручное восстановление одного цикла оператором.
#
# Канон/инварианты:
#   • Не более одного Raffle на ключ цикла (UNIQUE + проверка наличия под
#     блокировкой строки фонда).
#   • Watermark-и сдвигаются через compare-and-set; предупреждение шлёт и
#     коммит запускает только победитель CAS.
#   • Commit-watermark коммитится ДО процедуры коммита и не откатывается:
#     сбой коммита это срочный алерт оператору, а не цикл повторов.
#   • Цикл без валидных билетов получает skip-маркер и ровно один алерт
#     "skipped"; ни строки Raffle, ни списания.
#   • На свежем развёртывании (commit-watermark ещё нет) граница без билетов
#     только инициализирует watermark: без skip-маркера и без алерта.
#
# Защиты:
#   • Сбои оракула (временные) ничего не меняют, повтор на следующем тике.
#   • Хэш блока читается до сдвига watermark, поэтому нестабильный оракул
#     не может "сжечь" цикл.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.core.config_core import Settings, get_settings
from raffle_backend.app.core.errors_core import ConflictError, OracleUnavailableError, ValidationError
from raffle_backend.app.core.logging_core import get_logger, set_request_context
from raffle_backend.app.core.system_locks import assert_winner_in_range
from raffle_backend.app.core.utils_core import utcnow
from raffle_backend.app.crud.raffles_crud import RafflesCRUD
from raffle_backend.app.crud.tickets_crud import TicketsCRUD
from raffle_backend.app.integrations.mempool_api import ChainOracle
from raffle_backend.app.models import Raffle
from raffle_backend.app.services import message_templates as tpl
from raffle_backend.app.services.claim_service import issue as issue_claim
from raffle_backend.app.services.fund_service import FundLedger
from raffle_backend.app.services.notification_service import (
    KIND_RESULT,
    KIND_SKIPPED,
    KIND_WARNING,
    NotificationService,
)
from raffle_backend.app.services.state_service import (
    KEY_COMMIT_WATERMARK,
    KEY_WARNING_WATERMARK,
    SkipMarkers,
    WatermarkStore,
)
from raffle_backend.app.services.winner_selector import (
    current_cycle,
    estimate_time,
    select_winner_index,
)

logger = get_logger(__name__)

# исходы коммита
STATUS_COMMITTED = "committed"
STATUS_SKIPPED = "skipped"
STATUS_ALREADY_SETTLED = "already_settled"
STATUS_UP_TO_DATE = "up_to_date"
STATUS_INITIALISED = "initialised"
STATUS_LOST_RACE = "lost_race"
STATUS_ORACLE_UNAVAILABLE = "oracle_unavailable"
STATUS_FAILED = "failed"


@dataclass
class CommitOutcome:
    status: str
    block_height: int
    raffle_id: Optional[int] = None
    winning_index: Optional[int] = None
    winning_ticket_id: Optional[int] = None
    prize_sats: Optional[int] = None
    total_tickets: int = 0


@dataclass
class TickResult:
    status: str
    height: Optional[int] = None
    cycle: Optional[int] = None
    next_block: Optional[int] = None
    blocks_remaining: Optional[int] = None
    warning_sent: bool = False
    commit: Optional[CommitOutcome] = field(default=None)


class WatcherService:
    def __init__(
        self,
        session: AsyncSession,
        oracle: ChainOracle,
        notifications: NotificationService,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.oracle = oracle
        self.notifications = notifications
        self.settings = settings or get_settings()
        self.tickets = TicketsCRUD(session)
        self.raffles = RafflesCRUD(session)
        self.fund = FundLedger(session)
        self.watermarks = WatermarkStore(session)
        self.skips = SkipMarkers(session)

    # ------------------------------------------------------------------
    # Тик
    # ------------------------------------------------------------------
    async def tick(self, *, now: Optional[datetime] = None) -> TickResult:
        now = now or utcnow()
        try:
            height = await self.oracle.get_height()
        except OracleUnavailableError as exc:
            logger.warning("[WATCHER] oracle unavailable, tick skipped", extra={"error": exc.message})
            return TickResult(status=STATUS_ORACLE_UNAVAILABLE)

        cycle_blocks = self.settings.RAFFLE_CYCLE_BLOCKS
        cycle = current_cycle(height, cycle_blocks)
        next_block = cycle + cycle_blocks
        remaining = next_block - height
        result = TickResult(
            status="ok",
            height=height,
            cycle=cycle,
            next_block=next_block,
            blocks_remaining=remaining,
        )
        logger.debug("[WATCHER] tick", extra={"height": height, "cycle": cycle, "remaining": remaining})

        if remaining <= self.settings.RAFFLE_WARNING_BLOCKS:
            result.warning_sent = await self._maybe_warn(next_block, remaining, now)

        result.commit = await self._maybe_commit(cycle, now)
        return result

    async def _maybe_warn(self, next_block: int, remaining: int, now: datetime) -> bool:
        current = await self.watermarks.get(KEY_WARNING_WATERMARK)
        if current is not None and current >= next_block:
            return False
        if not await self.watermarks.advance(KEY_WARNING_WATERMARK, next_block):
            return False

        ticket_count = await self.tickets.count_valid_for_block(next_block)
        next_prize = await self.fund.next_prize()
        await self.notifications.deliver(
            KIND_WARNING,
            tpl.raffle_warning(
                next_block=next_block,
                blocks_left=remaining,
                eta=estimate_time(remaining),
                ticket_count=ticket_count,
                next_prize=next_prize,
            ),
            now=now,
        )
        logger.info("[WATCHER] advance warning sent", extra={"next_block": next_block, "tickets": ticket_count})
        return True

    async def _maybe_commit(self, cycle: int, now: datetime) -> CommitOutcome:
        current = await self.watermarks.get(KEY_COMMIT_WATERMARK)
        if current is not None and current >= cycle:
            return CommitOutcome(status=STATUS_UP_TO_DATE, block_height=cycle)

        if current is None and await self.tickets.count_valid_for_block(cycle) == 0:
            # свежее развёртывание, у последней границы нет билетов
            if await self.watermarks.advance(KEY_COMMIT_WATERMARK, cycle):
                logger.info("[WATCHER] commit watermark initialised", extra={"cycle": cycle})
            return CommitOutcome(status=STATUS_INITIALISED, block_height=cycle)

        if await self.raffles.get_by_block(cycle) is not None or await self.skips.is_skipped(cycle):
            await self.watermarks.advance(KEY_COMMIT_WATERMARK, cycle)
            return CommitOutcome(status=STATUS_ALREADY_SETTLED, block_height=cycle)

        try:
            block_hash = await self.oracle.get_hash_at(cycle)
        except OracleUnavailableError as exc:
            logger.warning("[WATCHER] block hash unavailable, retry next tick", extra={"cycle": cycle, "error": exc.message})
            return CommitOutcome(status=STATUS_ORACLE_UNAVAILABLE, block_height=cycle)

        if not await self.watermarks.advance(KEY_COMMIT_WATERMARK, cycle):
            logger.info("[WATCHER] another worker owns this cycle", extra={"cycle": cycle})
            return CommitOutcome(status=STATUS_LOST_RACE, block_height=cycle)

        set_request_context(block_height=cycle)
        try:
            return await self.commit_cycle(cycle, block_hash, now=now)
        except Exception as exc:  # noqa: BLE001
            logger.exception("[WATCHER] commit procedure failed", extra={"cycle": cycle})
            await self.session.rollback()
            await self.notifications.alert_urgent(tpl.commit_failed(block_height=cycle, error=f"{type(exc).__name__}: {exc}"))
            return CommitOutcome(status=STATUS_FAILED, block_height=cycle)

    # ------------------------------------------------------------------
    # Процедура коммита
    # ------------------------------------------------------------------
    async def commit_cycle(self, cycle: int, block_hash: str, *, now: Optional[datetime] = None) -> CommitOutcome:
        """
        Рассчитывает `cycle` по `block_hash`. Одна транзакция: списание из
        фонда + вставка Raffle; уведомления уходят только после коммита.
        """
        now = now or utcnow()
        tickets = await self.tickets.list_valid_for_block(cycle)
        if not tickets:
            created = await self.skips.mark(cycle, ticket_count=0)
            if created:
                await self.notifications.deliver(KIND_SKIPPED, tpl.raffle_skipped(block_height=cycle), now=now)
                logger.info("[WATCHER] cycle skipped: no eligible tickets", extra={"cycle": cycle})
            return CommitOutcome(status=STATUS_SKIPPED, block_height=cycle)

        index = assert_winner_in_range(select_winner_index(block_hash, len(tickets)), len(tickets))
        winner = tickets[index]
        winner_owner, winner_chat = winner.owner_ref, winner.owner_chat_id
        claim = issue_claim(now=now, ttl_days=self.settings.CLAIM_TTL_DAYS)

        await self.fund.lock()
        if await self.raffles.get_by_block(cycle) is not None:
            await self.session.rollback()
            return CommitOutcome(status=STATUS_ALREADY_SETTLED, block_height=cycle)

        debit = await self.fund.debit_half(cycle)
        raffle = Raffle(
            block_height=cycle,
            block_hash=block_hash.lower().removeprefix("0x"),
            total_tickets=len(tickets),
            winning_index=index,
            winning_ticket_id=winner.id,
            prize_amount_sats=debit.prize,
            fund_balance_before=debit.balance_before,
            payment_status="pending",
            claim_token=claim.token,
            claim_status="pending",
            claim_expires_at=claim.expires_at,
            created_at=now,
        )
        try:
            await self.raffles.insert(raffle)
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info("[WATCHER] cycle already settled by another worker", extra={"cycle": cycle})
            return CommitOutcome(status=STATUS_ALREADY_SETTLED, block_height=cycle)

        outcome = CommitOutcome(
            status=STATUS_COMMITTED,
            block_height=cycle,
            raffle_id=raffle.id,
            winning_index=index,
            winning_ticket_id=winner.id,
            prize_sats=debit.prize,
            total_tickets=len(tickets),
        )
        logger.info(
            "[WATCHER] raffle committed",
            extra={
                "cycle": cycle,
                "raffle_id": raffle.id,
                "tickets": len(tickets),
                "winning_index": index,
                "prize": debit.prize,
            },
        )

        claim_url = self.settings.claim_page_url(claim.token)
        await self.notifications.deliver(
            KIND_RESULT,
            tpl.raffle_result(
                block_height=cycle,
                total_tickets=len(tickets),
                winning_index=index,
                owner_ref=winner_owner,
                prize_sats=debit.prize,
                claim_url=claim_url,
                admin_url=f"{self.settings.BASE_URL}/api/admin/raffles",
            ),
            now=now,
        )
        if winner_chat:
            await self.notifications.send_direct(
                winner_chat,
                tpl.winner_message(
                    block_height=cycle,
                    prize_sats=debit.prize,
                    claim_url=claim_url,
                    expires_days=self.settings.CLAIM_TTL_DAYS,
                ),
            )
        return outcome

    # ------------------------------------------------------------------
    # Восстановление оператором
    # ------------------------------------------------------------------
    async def run_manual(self, block_height: int, *, force: bool = False) -> CommitOutcome:
        """
        Рассчитывает один цикл по запросу оператора. Отказывает для ещё не
        добытых блоков, рассчитанных циклов и (без force) пропущенных.
        """
        if block_height < 0:
            raise ValidationError("block_height must not be negative.")
        if block_height % self.settings.RAFFLE_CYCLE_BLOCKS != 0:
            raise ValidationError(
                "block_height must be a cycle boundary.",
                details={"cycleBlocks": self.settings.RAFFLE_CYCLE_BLOCKS},
            )
        height = await self.oracle.get_height()
        if block_height > height:
            raise ValidationError(
                f"Block {block_height} has not been mined yet.",
                details={"currentHeight": height, "blocksRemaining": block_height - height},
            )

        existing = await self.raffles.get_by_block(block_height)
        if existing is not None:
            raise ConflictError(
                "Raffle already exists for this block.",
                details={"raffleId": existing.id, "blockHeight": block_height},
            )
        if await self.skips.is_skipped(block_height):
            if not force:
                raise ConflictError(
                    "Cycle was skipped (no eligible tickets). Use force to re-run.",
                    details={"blockHeight": block_height},
                )
            await self.skips.clear(block_height)

        block_hash = await self.oracle.get_hash_at(block_height)
        await self.watermarks.advance(KEY_COMMIT_WATERMARK, block_height)

        set_request_context(block_height=block_height)
        logger.info("[WATCHER] manual run", extra={"cycle": block_height, "force": force})
        try:
            return await self.commit_cycle(block_height, block_hash)
        except Exception:
            await self.session.rollback()
            raise


__all__ = [
    "CommitOutcome",
    "TickResult",
    "WatcherService",
    "STATUS_COMMITTED",
    "STATUS_SKIPPED",
    "STATUS_ALREADY_SETTLED",
    "STATUS_UP_TO_DATE",
    "STATUS_INITIALISED",
    "STATUS_LOST_RACE",
    "STATUS_ORACLE_UNAVAILABLE",
    "STATUS_FAILED",
]
